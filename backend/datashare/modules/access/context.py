"""Per-request caller context and deadline handling."""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable
from dataclasses import dataclass
from typing import TypeVar

from datashare.modules.access.errors import TransientStoreError

T = TypeVar("T")


@dataclass(frozen=True)
class RequestContext:
    """Caller address, user agent and the absolute deadline for store work."""

    address: str | None
    agent: str | None
    deadline: float

    @classmethod
    def start(
        cls,
        *,
        address: str | None,
        agent: str | None,
        timeout_seconds: float,
    ) -> RequestContext:
        loop = asyncio.get_running_loop()
        return cls(address=address, agent=agent, deadline=loop.time() + timeout_seconds)

    def remaining(self) -> float:
        return max(0.0, self.deadline - asyncio.get_running_loop().time())


async def within_deadline(awaitable: Awaitable[T], context: RequestContext) -> T:
    """Await *awaitable* but give up with ``TransientStoreError`` at the deadline.

    A store call cut off here has either committed in full or not at all;
    every mutation the gateway issues is a single conditional statement.
    """
    remaining = context.remaining()
    if remaining <= 0:
        if inspect.iscoroutine(awaitable):
            awaitable.close()
        raise TransientStoreError("request deadline exceeded")
    try:
        return await asyncio.wait_for(awaitable, timeout=remaining)
    except TimeoutError as exc:
        raise TransientStoreError("store operation timed out") from exc
