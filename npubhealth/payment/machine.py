"""Payment lifecycle state machine.

Owns the current `PaymentStatus`, the active `PaymentDetails` and the single
poll handle. Status checks may overlap, but every result is applied in one
synchronous step after its request returns, so comparing against `_status`
and invoking callbacks can never interleave with another check. Each
open/close bumps `_generation`; results carrying an older generation are
dropped without touching state.
"""

import asyncio
import time
from functools import partial
from typing import Protocol
from uuid import uuid4

from npubhealth.common.config import settings
from npubhealth.common.errors import NetworkFailure, UnknownStatusValue
from npubhealth.common.logging import log_context, logger
from npubhealth.common.metrics import (
    payment_flow_seconds,
    payment_stale_responses_total,
    payment_status_checks_total,
    payment_status_transitions_total,
)
from npubhealth.common.state_machine import TERMINAL_STATUSES, PaymentStatus, can_transition
from npubhealth.payment.models import PaymentDetails, PaymentOptions
from npubhealth.payment.poller import PollHandle, StatusPoller


CHECK_FAILED_MESSAGE = "Failed to check payment status"


class StatusSource(Protocol):
    async def fetch_status(self, invoice_id: str) -> PaymentStatus: ...


class PaymentStateMachine:
    """Drives one payment flow at a time from `pending` to a terminal status."""

    def __init__(
        self,
        source: StatusSource,
        options: PaymentOptions | None = None,
        poller: StatusPoller | None = None,
        service_name: str | None = None,
    ) -> None:
        self.source = source
        self.options = options or PaymentOptions()
        self.service_name = service_name or settings.service_name
        self.poller = poller or StatusPoller(self.service_name)
        self._status = PaymentStatus.IDLE
        self._details: PaymentDetails | None = None
        self._error: str | None = None
        self._handle: PollHandle | None = None
        self._generation = 0
        self._flow_id = ""
        self._failures = 0
        self._exhausted = False
        self._success_notified = False
        self._opened_at: float | None = None
        self._background: set[asyncio.Task] = set()
        self._disposed = False

    @property
    def status(self) -> PaymentStatus:
        return self._status

    @property
    def details(self) -> PaymentDetails | None:
        return self._details

    @property
    def error(self) -> str | None:
        return self._error

    @property
    def handle(self) -> PollHandle | None:
        return self._handle

    @property
    def is_polling(self) -> bool:
        return self._handle is not None and self._handle.active

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    def open(self, details: PaymentDetails) -> None:
        """Start a new flow for `details`, superseding any previous one.

        Must be called from inside a running event loop. Ignored once the
        machine has been disposed.
        """

        if self._disposed:
            logger.warning("payment_flow_open_after_dispose invoice_id=%s", details.invoice_id)
            return
        self._stop_polling()
        self._generation += 1
        self._flow_id = uuid4().hex
        self._details = details
        self._status = PaymentStatus.PENDING
        self._error = None
        self._failures = 0
        self._exhausted = False
        self._success_notified = False
        self._opened_at = time.monotonic()
        self._handle = self.poller.start(
            details.invoice_id,
            self.options.polling_interval,
            partial(self._poll_tick, self._generation),
        )
        logger.info(
            "payment_flow_opened flow_id=%s invoice_id=%s interval_ms=%s",
            self._flow_id,
            details.invoice_id,
            self.options.polling_interval,
        )

    async def check_status(self) -> PaymentStatus | None:
        """Run one status check for the active invoice.

        Returns the status after the check, or None when there is no active
        invoice, the check failed, or the flow changed while it was in flight.
        """

        return await self._check(self._generation)

    def close(self) -> None:
        """End the active flow without forcing `status` away from `pending`."""

        details = self._details
        self._stop_polling()
        self._generation += 1
        self._details = None
        if details is None:
            return
        logger.info(
            "payment_flow_closed flow_id=%s invoice_id=%s status=%s",
            self._flow_id,
            details.invoice_id,
            self._status.value,
        )
        if self._status is PaymentStatus.PENDING and self.options.cancel_on_close:
            self._spawn(self._request_cancel(details.invoice_id))

    def set_error(self, message: str) -> None:
        """Expose a failure from outside the polling loop through `error`."""

        self._error = message

    def mark_paid(self) -> None:
        """Record a payment confirmed through another channel."""

        if self._status is PaymentStatus.PAID:
            return
        self._transition(PaymentStatus.PAID, reason="confirmed")

    def dispose(self) -> None:
        """Stop polling unconditionally and drop all in-flight work."""

        if self._disposed:
            return
        self._disposed = True
        self._generation += 1
        self.poller.stop(self._handle, cancel_inflight=True)
        self._handle = None
        for task in list(self._background):
            task.cancel()
        logger.debug("payment_machine_disposed flow_id=%s", self._flow_id)

    async def aclose(self) -> None:
        handle = self._handle
        inflight = handle.pending_ticks() if handle is not None else []
        pending = inflight + list(self._background)
        self.dispose()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _poll_tick(self, generation: int) -> PaymentStatus | None:
        if generation != self._generation or not self.is_polling:
            return None
        return await self._check(generation)

    async def _check(self, generation: int) -> PaymentStatus | None:
        details = self._details
        if self._disposed or generation != self._generation or details is None:
            return None
        invoice_id = details.invoice_id
        with log_context(flow_id=self._flow_id, invoice_id=invoice_id):
            failure = None
            observed = None
            try:
                observed = await self.source.fetch_status(invoice_id)
            except UnknownStatusValue as exc:
                failure = ("unknown_status", str(exc))
            except NetworkFailure as exc:
                failure = ("network_failure", str(exc))
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("payment_status_source_error invoice_id=%s", invoice_id)
                failure = ("network_failure", str(exc))

            if self._is_stale(generation, invoice_id):
                payment_stale_responses_total.labels(service=self.service_name).inc()
                logger.info("stale payment status discarded invoice_id=%s", invoice_id)
                return None
            if failure is not None:
                outcome, detail = failure
                self._record_failure(outcome, detail)
                return None

            payment_status_checks_total.labels(service=self.service_name, outcome="ok").inc()
            self._failures = 0
            self._apply(observed)
            return self._status

    def _is_stale(self, generation: int, invoice_id: str) -> bool:
        if self._disposed or generation != self._generation:
            return True
        return self._details is None or self._details.invoice_id != invoice_id

    def _record_failure(self, outcome: str, detail: str) -> None:
        payment_status_checks_total.labels(service=self.service_name, outcome=outcome).inc()
        self._failures += 1
        if outcome == "unknown_status":
            self._error = detail
        else:
            self._error = CHECK_FAILED_MESSAGE
        logger.warning(
            "payment_status_check_failed outcome=%s consecutive=%s detail=%s",
            outcome,
            self._failures,
            detail,
        )
        limit = self.options.max_consecutive_failures
        if limit and self._failures >= limit and self.is_polling:
            logger.error("payment_status_check_limit_reached consecutive=%s", self._failures)
            self._exhausted = True
            if can_transition(self._status, PaymentStatus.ERROR):
                self._transition(PaymentStatus.ERROR, reason="failure_limit")
            else:
                self._stop_polling()

    def _apply(self, observed: PaymentStatus) -> None:
        current = self._status
        if observed is current:
            return
        # after the failure bound only a final outcome may move the flow
        if not can_transition(current, observed) or (self._exhausted and observed not in TERMINAL_STATUSES):
            logger.info(
                "payment status ignored current=%s observed=%s",
                current.value,
                observed.value,
            )
            return
        self._transition(observed, reason="observed")

    def _transition(self, new: PaymentStatus, reason: str) -> None:
        previous = self._status
        self._status = new
        payment_status_transitions_total.labels(
            service=self.service_name,
            from_status=previous.value,
            to_status=new.value,
        ).inc()
        if new in TERMINAL_STATUSES or reason == "failure_limit":
            self._stop_polling()
            if self._opened_at is not None:
                payment_flow_seconds.labels(
                    service=self.service_name,
                    terminal_status=new.value,
                ).observe(max(0.0, time.monotonic() - self._opened_at))
        logger.info(
            "payment_status_changed from=%s to=%s reason=%s",
            previous.value,
            new.value,
            reason,
        )

        self._invoke(self.options.on_status_change, new)
        if new is PaymentStatus.PAID and not self._success_notified:
            self._success_notified = True
            self._invoke(self.options.on_payment_success)

    def _invoke(self, callback, *args) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception("payment callback failed callback=%s", getattr(callback, "__name__", callback))

    def _stop_polling(self) -> None:
        if self._handle is not None:
            self.poller.stop(self._handle)
            self._handle = None

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _request_cancel(self, invoice_id: str) -> None:
        cancel = getattr(self.source, "cancel_invoice", None)
        if cancel is None:
            return
        try:
            await cancel(invoice_id)
            logger.info("invoice cancellation requested invoice_id=%s", invoice_id)
        except Exception as exc:
            logger.warning("invoice_cancel_failed invoice_id=%s error=%s", invoice_id, exc)
