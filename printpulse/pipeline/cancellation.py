"""
Cancellation token shared by the long-running stages (mockup batch, video poll).
"""

import asyncio


class CancellationToken:
    """One-shot cancel signal. Restart cancels the token of the run in flight."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self, timeout: float) -> bool:
        """Sleep up to `timeout` seconds, waking early on cancel. Returns True if cancelled."""
        if self.cancelled:
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True
