"""Bounded waiting for auth operations."""

import asyncio
from typing import Awaitable, Optional, TypeVar

from ..shared.exceptions import OperationTimeoutError

T = TypeVar('T')


def timeout_message(seconds: float) -> str:
    return (
        "Authentication operation timeout - state machine did not complete "
        f"within {int(seconds * 1000)}ms"
    )


async def with_timeout(awaitable: Awaitable[T], seconds: float, message: Optional[str] = None) -> T:
    """
    Await ``awaitable`` for at most ``seconds``.

    Raises:
        OperationTimeoutError: If the timer fires first; the awaitable is
            cancelled
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError as e:
        raise OperationTimeoutError(message or timeout_message(seconds), timeout=seconds) from e
