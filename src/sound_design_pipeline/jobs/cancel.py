from __future__ import annotations

import asyncio
import threading


class JobCancelled(Exception):
    pass


class CancelToken:
    """
    Cooperative cancellation signal for one job.

    Passed by reference through every stage and generation task. Checked at stage
    boundaries and before each external call; it never interrupts a call in flight.
    """

    __slots__ = ("_event", "_reason")

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason = ""

    @classmethod
    def already_cancelled(cls, reason: str = "cancelled") -> CancelToken:
        tok = cls()
        tok.cancel(reason)
        return tok

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self._reason = str(reason)
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise JobCancelled(self._reason or "cancelled")

    async def sleep(self, delay: float) -> None:
        """
        Sleep up to `delay` seconds, waking early (and raising) if cancelled.
        """
        remaining = max(0.0, float(delay))
        step = 0.05
        while remaining > 0:
            self.raise_if_cancelled()
            chunk = min(step, remaining)
            await asyncio.sleep(chunk)
            remaining -= chunk
        self.raise_if_cancelled()
