"""Cooperative cancellation for a single turn."""

import asyncio


class CancellationToken:
    """Shared cancel signal checked at each suspension point of a turn.

    Checking is cooperative: an in-flight tool or network read is not
    interrupted, but no further work is scheduled once the token is set.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "Operation cancelled by user") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()
