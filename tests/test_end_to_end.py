"""Dashboard payment flow against the real payment API over ASGI."""

import asyncio

import httpx
import pytest

from npubhealth.common.state_machine import PaymentStatus
from npubhealth.payment.client import PaymentApiClient
from npubhealth.payment.flow import PaymentFlowController
from npubhealth.payment.identity import IdentityBinder
from npubhealth.payment.models import PaymentOptions
from npubhealth.services.payment_api.main import create_app
from npubhealth.services.payment_api.provider import SimulatedProvider
from npubhealth.services.payment_api.service import PaymentManager


PUBKEY = "3bf0c63fcb93463407af97a5e5ee64fa883d107ef9e558472c4eb9aaaefa459d"


class StaticProvider:
    async def get_public_key(self) -> str:
        return PUBKEY


def wire(recorder, interval=10, **extra):
    provider = SimulatedProvider(webhook_secret="whsec")
    manager = PaymentManager(provider, service_name="test-e2e")
    api = PaymentApiClient(
        base_url="http://testserver",
        transport=httpx.ASGITransport(app=create_app(manager)),
    )
    options = PaymentOptions(
        polling_interval=interval,
        on_status_change=recorder.on_status_change,
        on_payment_success=recorder.on_payment_success,
        **extra,
    )
    flow = PaymentFlowController(api, options, identity=IdentityBinder(StaticProvider()))
    return provider, manager, api, flow


@pytest.mark.asyncio
async def test_server_payment_settles_through_polling(recorder):
    """An invoice settled at the provider reaches the flow through polling."""

    provider, manager, api, flow = wire(recorder)
    async with api, flow:
        details = await flow.start_server_payment("my-blossom", "us-east", "basic")
        assert details.payment_amount == 0.0005
        assert manager.store.get_server(details.server_id).user_pubkey == PUBKEY

        await asyncio.sleep(0.03)
        assert flow.status is PaymentStatus.PENDING
        provider.settle(details.invoice_id)
        await asyncio.wait_for(recorder.paid.wait(), timeout=2)

        assert recorder.events == [PaymentStatus.PAID, "success"]
        assert not flow.machine.is_polling
        assert manager.store.get_server(details.server_id).status == "READY_TO_DEPLOY"


@pytest.mark.asyncio
async def test_unknown_invoice_keeps_pending_with_error(recorder):
    """A 404 from the API is a check failure, not a status change."""

    _, _, api, flow = wire(recorder, interval=60_000)
    async with api, flow:
        details = await flow.start_server_payment("my-blossom", "us-east", "basic")
        flow.open_payment_modal(details.model_copy(update={"invoice_id": "inv_missing"}))

        assert await flow.check_payment_status() is None
        snap = flow.snapshot
        assert snap.status is PaymentStatus.PENDING
        assert snap.error == "Failed to check payment status"
        assert recorder.events == []


@pytest.mark.asyncio
async def test_close_with_cancellation_enabled(recorder):
    """Closing with cancel_on_close cancels the invoice server side."""

    provider, manager, api, flow = wire(recorder, interval=60_000, cancel_on_close=True)
    async with api, flow:
        details = await flow.start_server_payment("my-blossom", "us-east", "enterprise")
        flow.close_payment_modal()
        for _ in range(50):
            if manager.store.get_invoice(details.invoice_id).status == "cancelled":
                break
            await asyncio.sleep(0.01)

        assert manager.store.get_invoice(details.invoice_id).status == "cancelled"
        assert flow.status is PaymentStatus.PENDING
        assert recorder.events == []
