"""
Per-request deadline tracking.

The HTTP middleware starts a deadline for every request; code that blocks on
the chain (receipt waits) asks for the time it may still spend so the request
answers with its own outcome instead of the generic deadline error.
"""

import time
from contextvars import ContextVar, Token
from typing import Optional, Tuple

from config import Config

# (monotonic expiry, total seconds)
_deadline: ContextVar[Optional[Tuple[float, float]]] = ContextVar("request_deadline", default=None)


def start(seconds: float) -> Token:
    return _deadline.set((time.monotonic() + seconds, seconds))


def reset(token: Token) -> None:
    _deadline.reset(token)


def remaining() -> Optional[float]:
    """Seconds left before the current request's deadline, or None outside a request."""
    current = _deadline.get()
    if current is None:
        return None
    return max(0.0, current[0] - time.monotonic())


def bounded_wait(timeout: float) -> float:
    """
    Clamp a blocking wait so it ends before the request deadline, keeping a
    margin for the response to be written.
    """
    current = _deadline.get()
    if current is None:
        return timeout
    expires_at, total = current
    margin = min(Config.REQUEST_DEADLINE_MARGIN_SECONDS, total * 0.1)
    left = expires_at - time.monotonic() - margin
    return max(0.0, min(timeout, left))
