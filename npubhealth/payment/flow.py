"""Public payment flow used by the dashboard shell.

The shell owns one `PaymentFlowController` per mounted payment view and must
call `dispose()` (or leave its `async with` block) on teardown.
"""

from npubhealth.common.errors import AuthUnavailable, NetworkFailure
from npubhealth.common.logging import logger
from npubhealth.common.state_machine import PaymentStatus
from npubhealth.payment.identity import IdentityBinder
from npubhealth.payment.machine import PaymentStateMachine, StatusSource
from npubhealth.payment.models import PaymentDetails, PaymentOptions, PaymentSnapshot


class PaymentFlowController:
    """Binds modal visibility to the payment state machine."""

    def __init__(
        self,
        source: StatusSource,
        options: PaymentOptions | None = None,
        identity: IdentityBinder | None = None,
        machine: PaymentStateMachine | None = None,
    ) -> None:
        self.machine = machine or PaymentStateMachine(source, options)
        self.identity = identity
        self._source = source
        self._is_modal_open = False

    async def __aenter__(self) -> "PaymentFlowController":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    @property
    def status(self) -> PaymentStatus:
        return self.machine.status

    @property
    def is_modal_open(self) -> bool:
        return self._is_modal_open

    @property
    def snapshot(self) -> PaymentSnapshot:
        return PaymentSnapshot(
            status=self.machine.status,
            payment_details=self.machine.details,
            is_modal_open=self._is_modal_open,
            error=self.machine.error,
        )

    def open_payment_modal(self, details: PaymentDetails) -> None:
        self.machine.open(details)
        self._is_modal_open = self.machine.details is details

    def close_payment_modal(self) -> None:
        self._is_modal_open = False
        self.machine.close()

    async def check_payment_status(self) -> PaymentStatus | None:
        """Manual status check with the same semantics as a poll tick."""

        return await self.machine.check_status()

    def handle_payment_success(self) -> None:
        self.machine.mark_paid()

    async def start_server_payment(
        self, server_name: str, region: str, tier: str
    ) -> PaymentDetails | None:
        """Request an invoice for a new Blossom server and open its flow.

        Raises `AuthUnavailable` when no identity is bound. A failed invoice
        request is reported through `snapshot.error` and returns None.
        """

        if self.identity is None:
            raise AuthUnavailable("No identity bound to the payment flow")
        public_key = await self.identity.require_public_key()
        request_invoice = getattr(self._source, "request_invoice", None)
        if request_invoice is None:
            raise RuntimeError("status source cannot request invoices")
        try:
            details = await request_invoice(server_name, region, tier, public_key)
        except NetworkFailure as exc:
            logger.warning("invoice_request_failed server_name=%s error=%s", server_name, exc)
            self.machine.set_error("Failed to request payment invoice")
            return None
        self.open_payment_modal(details)
        return details

    def dispose(self) -> None:
        self._is_modal_open = False
        self.machine.dispose()

    async def aclose(self) -> None:
        self._is_modal_open = False
        await self.machine.aclose()
