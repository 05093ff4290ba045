import asyncio
from typing import Optional

from .exceptions import RunCancelledError


class CancellationToken:
    """Cooperative cancellation flag shared by every suspension point of a run."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled by caller") -> None:
        self.reason = reason
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise RunCancelledError(self.reason or "run cancelled")


async def pause(delay_ms: float, token: Optional[CancellationToken] = None) -> None:
    """Sleep for ``delay_ms`` milliseconds, waking early if ``token`` is cancelled."""
    if token is None:
        if delay_ms > 0:
            await asyncio.sleep(delay_ms / 1000)
        return

    token.raise_if_cancelled()
    if delay_ms <= 0:
        return
    try:
        await asyncio.wait_for(token._event.wait(), timeout=delay_ms / 1000)
    except asyncio.TimeoutError:
        return
    token.raise_if_cancelled()
