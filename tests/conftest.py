"""Shared fakes for payment flow tests."""

import asyncio

import pytest

from npubhealth.common.state_machine import PaymentStatus
from npubhealth.payment.models import PaymentDetails


class ScriptedSource:
    """Status source returning queued results, then `default` forever."""

    def __init__(self, *results, default=PaymentStatus.PENDING) -> None:
        self.results = list(results)
        self.default = default
        self.calls: list[str] = []
        self.cancelled: list[str] = []

    async def fetch_status(self, invoice_id: str) -> PaymentStatus:
        self.calls.append(invoice_id)
        result = self.results.pop(0) if self.results else self.default
        if isinstance(result, Exception):
            raise result
        return result

    async def cancel_invoice(self, invoice_id: str) -> PaymentStatus:
        self.cancelled.append(invoice_id)
        return PaymentStatus.CANCELLED


class GatedSource:
    """Status source whose replies are held until the test releases them."""

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.started = asyncio.Event()
        self._gate = asyncio.Event()
        self._result = PaymentStatus.PENDING

    async def fetch_status(self, invoice_id: str) -> PaymentStatus:
        self.calls.append(invoice_id)
        self.started.set()
        await self._gate.wait()
        if isinstance(self._result, Exception):
            raise self._result
        return self._result

    def release(self, result) -> None:
        self._result = result
        self._gate.set()


class Recorder:
    """Collects callback invocations in order."""

    def __init__(self) -> None:
        self.events: list = []
        self.paid = asyncio.Event()

    def on_status_change(self, status: PaymentStatus) -> None:
        self.events.append(status)

    def on_payment_success(self) -> None:
        self.events.append("success")
        self.paid.set()

    @property
    def statuses(self) -> list:
        return [e for e in self.events if e != "success"]

    @property
    def successes(self) -> int:
        return self.events.count("success")


def make_details(invoice_id: str = "I1", **overrides) -> PaymentDetails:
    fields = {
        "serverId": "server-1",
        "invoiceId": invoice_id,
        "paymentAmount": 0.0005,
        "paymentAddress": "bc1qexample",
        "paymentUrl": f"https://pay.example/{invoice_id}",
        "expiresAt": "2030-01-01T00:00:00Z",
    }
    fields.update(overrides)
    return PaymentDetails.model_validate(fields)


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()
