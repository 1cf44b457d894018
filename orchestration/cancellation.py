# orchestration/cancellation.py
"""Cooperative cancellation shared between a controller and its owner."""

from __future__ import annotations

import asyncio


class CancellationToken:
    """Write-once stop signal.

    Workers only read ``cancelled``; the owner calls ``cancel()``. The
    token never resets, so every run gets its own: either created by the
    controller or handed in by the job that owns the run.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._event: asyncio.Event | None = None
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str = "stop requested") -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self.reason = reason
        if self._event is not None:
            self._event.set()

    async def sleep(self, delay: float) -> bool:
        """Sleep up to ``delay`` seconds, waking early on cancellation.

        Returns True if the token was cancelled.
        """
        if self._cancelled:
            return True
        if delay <= 0:
            return self._cancelled
        if self._event is None:
            self._event = asyncio.Event()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass
        return self._cancelled
