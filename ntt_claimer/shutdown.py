from __future__ import annotations

import asyncio
import logging
import signal as _signal
from typing import Iterable, Optional

log = logging.getLogger(__name__)

DEFAULT_SIGNALS = (_signal.SIGINT, _signal.SIGTERM)


class CancellationToken:
    """One-way stop switch handed to the polling loop.

    Starts running, is cancelled at most once and never resets.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "") -> bool:
        if self._event.is_set():
            return False
        self.reason = reason or None
        self._event.set()
        return True

    async def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; True if cancelled meanwhile."""
        if self._event.is_set():
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout=max(0.0, timeout))
        except asyncio.TimeoutError:
            return False
        return True


class ShutdownController:
    """Turns SIGINT/SIGTERM into a cancellation of the token.

    Only the token is touched; in-flight balance queries, attestation
    fetches and redeem submissions run to completion.
    """

    def __init__(self, token: CancellationToken, signals: Iterable[_signal.Signals] = DEFAULT_SIGNALS) -> None:
        self.token = token
        self.signals = tuple(signals)
        self._installed: list[_signal.Signals] = []

    def handle(self, signum: _signal.Signals) -> None:
        name = _signal.Signals(signum).name
        if self.token.cancel(reason=name):
            log.info("Received %s, shutting down after current cycle", name)

    def install(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        loop = loop or asyncio.get_running_loop()
        for sig in self.signals:
            try:
                loop.add_signal_handler(sig, self.handle, sig)
            except NotImplementedError:
                # Windows event loops have no add_signal_handler
                _signal.signal(sig, lambda signum, _frame: loop.call_soon_threadsafe(self.handle, signum))
            self._installed.append(sig)

    def uninstall(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        loop = loop or asyncio.get_running_loop()
        for sig in self._installed:
            try:
                loop.remove_signal_handler(sig)
            except NotImplementedError:
                _signal.signal(sig, _signal.SIG_DFL)
        self._installed.clear()
