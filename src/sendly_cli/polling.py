"""
Cancellable periodic polling.

Used where no push channel exists (e.g. `sendly logs tail`). Stops on the
same asyncio.Event the relay uses, so SIGINT/SIGTERM handling is shared.
"""

import asyncio
import signal
from typing import Any, Callable

import structlog

from sendly_cli.errors import SendlyError

logger = structlog.get_logger(__name__)


class PeriodicTask:
    """
    Call `fn` every `interval` seconds until stopped.

    `fn` is a blocking callable (usually an ApiClient call) and runs in a
    worker thread. Its SendlyErrors are logged and the next tick proceeds;
    `on_result` receives every successful return value.

    Example:
        task = PeriodicTask(lambda: client.get("/api/logs"), 2.0, on_result=show)
        asyncio.run(task.run_until_signal())
    """

    def __init__(
        self,
        fn: Callable[[], Any],
        interval: float,
        on_result: Callable[[Any], None] | None = None,
        name: str = "poll",
    ):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.fn = fn
        self.interval = interval
        self.on_result = on_result
        self.ticks = 0
        self.errors = 0
        self._log = logger.bind(task=name, interval=interval)

    async def _tick(self) -> None:
        self.ticks += 1
        try:
            result = await asyncio.to_thread(self.fn)
        except SendlyError as e:
            self.errors += 1
            self._log.debug("Poll failed", error=str(e))
            return
        if self.on_result is not None:
            self.on_result(result)

    async def run(self, stop_event: asyncio.Event) -> None:
        """Poll until `stop_event` is set. The first poll happens after one interval."""
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                await self._tick()
        self._log.debug("Polling stopped", ticks=self.ticks, errors=self.errors)

    async def run_until_signal(self) -> None:
        stop_event = asyncio.Event()
        install_signal_handlers(stop_event)
        await self.run(stop_event)


def install_signal_handlers(stop_event: asyncio.Event) -> None:
    """Make SIGINT/SIGTERM set `stop_event` on the running loop."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no add_signal_handler
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop_event.set))
