"""Cooperative cancellation token.

A token is created per run plan (or per chunked run) and passed explicitly
into every stage and fetch call. Nothing is preempted: code checks the
token at its own boundaries (before a work item, before a stage, before a
chunk) and stops there.

Example:
    >>> token = CancellationToken()
    >>> token.cancel("user pressed stop")
    >>> token.cancelled
    True
    >>> token.raise_if_cancelled()
    Traceback (most recent call last):
    ...
    JobCancelledError: Cancelled: user pressed stop
"""

from __future__ import annotations

import asyncio

from category_spine.core.errors import JobCancelledError


class CancellationToken:
    """One-shot cancellation flag with an awaitable event."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "Cancelled by user") -> None:
        """Trip the token. Later calls keep the first reason."""
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()

    def raise_if_cancelled(self) -> None:
        """Raise :class:`JobCancelledError` if the token has been tripped."""
        if self._event.is_set():
            raise JobCancelledError(self._reason or "Cancelled")

    async def wait(self) -> None:
        """Block until the token is tripped."""
        await self._event.wait()

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to *seconds*, waking early on cancellation.

        Returns True if the token was tripped during (or before) the sleep.
        """
        if seconds <= 0:
            return self.cancelled
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except TimeoutError:
            return False
        return True

    def __repr__(self) -> str:
        state = f"cancelled={self._reason!r}" if self.cancelled else "active"
        return f"CancellationToken({state})"


__all__ = ["CancellationToken"]
