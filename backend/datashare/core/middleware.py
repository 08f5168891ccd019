"""
Response hardening for the gateway.
"""

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from datashare.core.config import get_settings

# The API serves JSON and file bytes only.
_API_CSP = "default-src 'none'; frame-ancestors 'none'"

# FastAPI's Swagger UI pulls its bundle from jsdelivr.
_DOCS_CSP = "; ".join(
    [
        "default-src 'self'",
        "script-src 'self' 'unsafe-inline' https://cdn.jsdelivr.net",
        "style-src 'self' 'unsafe-inline' https://cdn.jsdelivr.net",
        "img-src 'self' data: https://fastapi.tiangolo.com",
        "frame-ancestors 'none'",
    ]
)

_COMMON_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    # Grant tokens travel in the path and must not leak through Referer.
    "Referrer-Policy": "no-referrer",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=()",
}


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses, and no-store to access routes."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)
        settings = get_settings()
        path = request.url.path

        response.headers.update(_COMMON_HEADERS)
        docs = path == f"{settings.api_v1_prefix}/docs"
        response.headers["Content-Security-Policy"] = _DOCS_CSP if docs else _API_CSP

        if path.startswith(f"{settings.api_v1_prefix}/access"):
            response.headers["Cache-Control"] = "private, no-store"
            response.headers["X-Robots-Tag"] = "noindex, nofollow"

        if settings.environment in ("production", "staging"):
            response.headers["Strict-Transport-Security"] = "max-age=63072000; includeSubDomains"

        return response
