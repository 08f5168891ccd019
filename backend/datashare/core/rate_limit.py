"""
Per-IP fixed window rate limiting for the public access routes, backed by Redis.

Bearer links carry no account, so the caller address is the only handle for
slowing down token guessing. The address resolved here is also the one
checked against grant IP allow-lists.
"""

from __future__ import annotations

import ipaddress
import time

import redis.asyncio as redis
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from datashare.core.config import get_settings
from datashare.core.logging import get_logger

logger = get_logger(__name__)

_redis: redis.Redis | None = None


def _limiter_redis_url() -> str:
    """Rate-limit counters live in their own database, next to DB 0 by default."""
    settings = get_settings()
    if settings.redis_rate_limit_url:
        return str(settings.redis_rate_limit_url)
    base = str(settings.redis_url)
    return base[:-1] + "1" if base.endswith("/0") else base


async def get_redis() -> redis.Redis | None:
    """Return the shared limiter connection, or None while Redis is unreachable."""
    global _redis
    if _redis is not None:
        return _redis
    url = _limiter_redis_url()
    client = redis.from_url(url, decode_responses=True)  # type: ignore[no-untyped-call]
    try:
        await client.ping()
    except Exception:
        logger.warning("rate_limit_redis_unavailable")
        await client.aclose()
        return None
    _redis = client
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None


def _parse_ip(value: str | None) -> str | None:
    """Canonical text form of an address, or None if *value* is not one."""
    if not value:
        return None
    try:
        return str(ipaddress.ip_address(value.strip()))
    except ValueError:
        return None


def _is_trusted_proxy(remote_ip: str) -> bool:
    """Check whether *remote_ip* falls within a configured trusted proxy CIDR."""
    address = _parse_ip(remote_ip)
    if address is None:
        return False
    parsed = ipaddress.ip_address(address)
    return any(
        parsed in ipaddress.ip_network(cidr, strict=False)
        for cidr in get_settings().trusted_proxy_cidrs
    )


def get_client_ip(request: Request) -> str:
    """Resolve the caller address.

    Proxy headers are read only when the peer is a trusted proxy, and only a
    value that parses as an IP address replaces the peer address.
    """
    peer = request.client.host if request.client else "unknown"
    if peer == "unknown" or not _is_trusted_proxy(peer):
        return peer

    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        # leftmost hop is the original client
        client_ip = _parse_ip(forwarded_for.split(",")[0])
        if client_ip:
            return client_ip

    return _parse_ip(request.headers.get("x-real-ip")) or peer


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Count requests per caller address and minute under ``{prefix}/access``.

    Redis trouble lets the request through: quota and expiry are enforced by
    the grant store regardless, the limiter only slows enumeration down.
    """

    WINDOW_SECONDS = 60

    def _window(self, now: float) -> tuple[int, int]:
        """Current window number and seconds until it closes."""
        window = int(now) // self.WINDOW_SECONDS
        return window, self.WINDOW_SECONDS - int(now) % self.WINDOW_SECONDS

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        settings = get_settings()
        if settings.environment == "development":
            return await call_next(request)
        if not request.url.path.startswith(f"{settings.api_v1_prefix}/access"):
            return await call_next(request)

        r = await get_redis()
        if r is None:
            return await call_next(request)

        client_ip = get_client_ip(request)
        limit = settings.access_rate_limit_per_minute
        window, retry_after = self._window(time.time())
        key = f"rl:access:{client_ip}:{window}"

        try:
            pipe = r.pipeline()
            pipe.incr(key)
            pipe.expire(key, self.WINDOW_SECONDS)
            count = int((await pipe.execute())[0])
        except Exception:
            logger.warning("rate_limit_redis_error", client_ip=client_ip, exc_info=True)
            return await call_next(request)

        if count > limit:
            logger.info("rate_limit_exceeded", client_ip=client_ip, limit=limit)
            return JSONResponse(
                status_code=429,
                content={"detail": "Too many requests"},
                headers={
                    "Retry-After": str(retry_after),
                    "X-RateLimit-Limit": str(limit),
                    "X-RateLimit-Remaining": "0",
                },
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, limit - count))
        return response
