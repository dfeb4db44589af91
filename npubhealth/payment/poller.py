"""Interval poller that owns the timer task for one invoice at a time."""

import asyncio
from typing import Awaitable, Callable

from npubhealth.common.config import settings
from npubhealth.common.logging import logger
from npubhealth.common.metrics import payment_active_pollers


class PollHandle:
    """Opaque handle to one running poll loop.

    Only `StatusPoller` creates and stops handles; callers just hold them.
    """

    def __init__(self, invoice_id: str, interval_ms: int) -> None:
        self.invoice_id = invoice_id
        self.interval_ms = interval_ms
        self.ticks = 0
        self._task: asyncio.Task | None = None
        self._inflight: set[asyncio.Task] = set()
        self._stopped = False

    @property
    def active(self) -> bool:
        return not self._stopped

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    def pending_ticks(self) -> list[asyncio.Task]:
        return list(self._inflight)

    def __repr__(self) -> str:
        state = "active" if self.active else "stopped"
        return f"<PollHandle invoice_id={self.invoice_id} interval_ms={self.interval_ms} {state}>"


class StatusPoller:
    """Fires `on_tick` once per interval boundary until stopped.

    Each tick runs as its own task, so a slow status check never delays the
    next boundary. After a suspension the loop resumes with a single tick
    rather than catching up on missed boundaries.
    """

    def __init__(self, service_name: str | None = None) -> None:
        self.service_name = service_name or settings.service_name
        self._active: PollHandle | None = None

    @property
    def active_handle(self) -> PollHandle | None:
        return self._active

    def start(
        self,
        invoice_id: str,
        interval_ms: int,
        on_tick: Callable[[], Awaitable[object]],
    ) -> PollHandle:
        """Start polling; any previously active handle is stopped first."""

        if interval_ms <= 0:
            raise ValueError("interval_ms must be positive")
        if self._active is not None:
            self.stop(self._active)

        handle = PollHandle(invoice_id, interval_ms)
        handle._task = asyncio.get_running_loop().create_task(
            self._run(handle, on_tick), name=f"poll:{invoice_id}"
        )
        self._active = handle
        payment_active_pollers.labels(service=self.service_name).inc()
        logger.debug("poller_started invoice_id=%s interval_ms=%s", invoice_id, interval_ms)
        return handle

    def stop(self, handle: PollHandle | None, cancel_inflight: bool = False) -> None:
        """Stop `handle`. Stopping an absent or stopped handle does nothing.

        In-flight ticks are left to finish unless `cancel_inflight` is set;
        their results are expected to be discarded by the caller.
        """

        if handle is None:
            return
        if cancel_inflight:
            for task in list(handle._inflight):
                task.cancel()
        if handle._stopped:
            return
        handle._stopped = True
        if handle._task is not None:
            handle._task.cancel()
        if self._active is handle:
            self._active = None
        payment_active_pollers.labels(service=self.service_name).dec()
        logger.debug("poller_stopped invoice_id=%s ticks=%s", handle.invoice_id, handle.ticks)

    async def _run(self, handle: PollHandle, on_tick: Callable[[], Awaitable[object]]) -> None:
        interval = handle.interval_ms / 1000
        loop = asyncio.get_running_loop()
        while not handle._stopped:
            await asyncio.sleep(interval)
            if handle._stopped:
                return
            handle.ticks += 1
            tick = loop.create_task(self._tick(handle, on_tick))
            handle._inflight.add(tick)
            tick.add_done_callback(handle._inflight.discard)

    async def _tick(self, handle: PollHandle, on_tick: Callable[[], Awaitable[object]]) -> None:
        try:
            await on_tick()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("poll_tick_failed invoice_id=%s error=%s", handle.invoice_id, exc)
