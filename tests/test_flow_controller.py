"""Flow controller: modal binding, snapshots and server payment entrypoint."""

import asyncio

import pytest
from pydantic import ValidationError

from conftest import ScriptedSource, make_details
from npubhealth.common.errors import AuthUnavailable, NetworkFailure
from npubhealth.common.state_machine import PaymentStatus
from npubhealth.payment.flow import PaymentFlowController
from npubhealth.payment.identity import IdentityBinder
from npubhealth.payment.models import PaymentOptions


PUBKEY = "3bf0c63fcb93463407af97a5e5ee64fa883d107ef9e558472c4eb9aaaefa459d"


class InvoiceSource(ScriptedSource):
    def __init__(self, *results, fail=False, **kwargs) -> None:
        super().__init__(*results, **kwargs)
        self.fail = fail
        self.requests = []

    async def request_invoice(self, server_name, region, tier, user_pubkey):
        self.requests.append((server_name, region, tier, user_pubkey))
        if self.fail:
            raise NetworkFailure("POST /api/blossom/payment returned 500")
        return make_details("INV-NEW", serverId="server-new")


class StaticProvider:
    async def get_public_key(self) -> str:
        return PUBKEY


def controller(source, recorder=None, identity=None) -> PaymentFlowController:
    options = PaymentOptions(
        polling_interval=60_000,
        on_status_change=recorder.on_status_change if recorder else None,
        on_payment_success=recorder.on_payment_success if recorder else None,
    )
    return PaymentFlowController(source, options, identity=identity)


@pytest.mark.asyncio
async def test_open_and_close_modal():
    """Closing hides the modal and drops details but keeps the status."""

    flow = controller(ScriptedSource())
    assert flow.snapshot.status is PaymentStatus.IDLE
    assert not flow.is_modal_open

    flow.open_payment_modal(make_details("I1"))
    snap = flow.snapshot
    assert snap.is_modal_open
    assert snap.status is PaymentStatus.PENDING
    assert snap.payment_details.invoice_id == "I1"
    assert snap.error is None

    flow.close_payment_modal()
    snap = flow.snapshot
    assert not snap.is_modal_open
    assert snap.status is PaymentStatus.PENDING
    assert snap.payment_details is None
    assert not flow.machine.is_polling


@pytest.mark.asyncio
async def test_snapshot_is_read_only():
    """Snapshots are frozen views of the controller state."""

    flow = controller(ScriptedSource())
    flow.open_payment_modal(make_details("I1"))

    with pytest.raises(ValidationError):
        flow.snapshot.status = PaymentStatus.PAID
    assert flow.status is PaymentStatus.PENDING
    flow.dispose()


@pytest.mark.asyncio
async def test_reopen_binds_single_poller_to_second_invoice():
    """A second open replaces the poller and checks only the new invoice."""

    source = ScriptedSource()
    flow = controller(source)
    flow.open_payment_modal(make_details("I1"))
    first = flow.machine.handle

    flow.open_payment_modal(make_details("I2"))
    await flow.check_payment_status()

    assert not first.active
    assert flow.machine.poller.active_handle.invoice_id == "I2"
    assert source.calls == ["I2"]
    flow.dispose()


@pytest.mark.asyncio
async def test_manual_check_and_success_handler(recorder):
    """Manual checks and repeated success confirmations fire success once."""

    flow = controller(ScriptedSource(PaymentStatus.PENDING), recorder)
    flow.open_payment_modal(make_details("I1"))

    assert await flow.check_payment_status() is PaymentStatus.PENDING
    flow.handle_payment_success()
    flow.handle_payment_success()

    assert flow.status is PaymentStatus.PAID
    assert recorder.successes == 1
    assert flow.is_modal_open


@pytest.mark.asyncio
async def test_context_manager_tears_down_polling():
    """Leaving the async context stops polling and hides the modal."""

    source = ScriptedSource()
    async with controller(source) as flow:
        flow.open_payment_modal(make_details("I1"))
        poller = flow.machine.poller
        assert flow.machine.is_polling

    assert poller.active_handle is None
    assert not flow.is_modal_open


@pytest.mark.asyncio
async def test_start_server_payment_opens_flow():
    """An invoice request signed by the bound key opens its flow."""

    source = InvoiceSource()
    identity = IdentityBinder(StaticProvider())
    flow = controller(source, identity=identity)

    details = await flow.start_server_payment("my-blossom", "us-east", "basic")

    assert details.invoice_id == "INV-NEW"
    assert source.requests == [("my-blossom", "us-east", "basic", PUBKEY)]
    assert flow.snapshot.payment_details == details
    assert flow.is_modal_open
    flow.dispose()


@pytest.mark.asyncio
async def test_start_server_payment_without_extension_raises():
    """A missing signing extension surfaces as AuthUnavailable."""

    flow = controller(InvoiceSource(), identity=IdentityBinder(None))

    with pytest.raises(AuthUnavailable):
        await flow.start_server_payment("my-blossom", "us-east", "basic")
    assert not flow.is_modal_open


@pytest.mark.asyncio
async def test_start_server_payment_reports_request_failure():
    """A failed invoice request is reported through the snapshot error."""

    flow = controller(InvoiceSource(fail=True), identity=IdentityBinder(StaticProvider()))

    assert await flow.start_server_payment("my-blossom", "us-east", "basic") is None
    snap = flow.snapshot
    assert snap.error == "Failed to request payment invoice"
    assert not snap.is_modal_open
    assert snap.status is PaymentStatus.IDLE


@pytest.mark.asyncio
async def test_polling_reaches_expired_through_controller(recorder):
    """Background polling drives the controller to a terminal status."""

    options = PaymentOptions(
        polling_interval=10,
        on_status_change=recorder.on_status_change,
        on_payment_success=recorder.on_payment_success,
    )
    source = ScriptedSource(PaymentStatus.PENDING, PaymentStatus.EXPIRED)
    flow = PaymentFlowController(source, options)
    flow.open_payment_modal(make_details("I1"))

    for _ in range(100):
        if flow.status is PaymentStatus.EXPIRED:
            break
        await asyncio.sleep(0.01)

    assert recorder.events == [PaymentStatus.EXPIRED]
    assert not flow.machine.is_polling
    assert flow.is_modal_open


@pytest.mark.asyncio
async def test_start_server_payment_without_identity_raises():
    """A controller built without an identity cannot request invoices."""

    flow = controller(InvoiceSource())

    with pytest.raises(AuthUnavailable):
        await flow.start_server_payment("my-blossom", "us-east", "basic")
    assert flow.status is PaymentStatus.IDLE


@pytest.mark.asyncio
async def test_open_after_dispose_is_ignored():
    """A disposed controller stays closed instead of raising on open."""

    source = ScriptedSource()
    flow = controller(source)
    flow.dispose()

    flow.open_payment_modal(make_details("I1"))

    assert not flow.is_modal_open
    assert flow.status is PaymentStatus.IDLE
    assert not flow.machine.is_polling
