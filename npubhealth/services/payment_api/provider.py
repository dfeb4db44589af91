"""Invoice providers: the Bitvora REST API and an in-memory simulation."""

import hashlib
import hmac
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol
from uuid import uuid4

import httpx
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from npubhealth.common.config import settings
from npubhealth.common.errors import ProviderError
from npubhealth.common.logging import logger


BITVORA_MAINNET_URL = "https://api.bitvora.com/v1"
BITVORA_TESTNET_URL = "https://api.testnet.bitvora.com/v1"


class ProviderInvoice(BaseModel):
    """Invoice as reported by the provider."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    id: str
    amount: float
    currency: str = "BTC"
    status: str
    payment_url: str | None = None
    expires_at: datetime
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    btc_address: str | None = None
    lightning_invoice: str | None = None


class InvoiceProvider(Protocol):
    async def create_invoice(
        self,
        amount: float,
        currency: str,
        metadata: dict[str, Any],
        description: str,
        order_id: str,
        expires_in: int,
    ) -> ProviderInvoice: ...

    async def get_invoice(self, invoice_id: str) -> ProviderInvoice: ...

    async def cancel_invoice(self, invoice_id: str) -> ProviderInvoice: ...

    def verify_webhook_signature(self, signature: str, payload: bytes) -> bool: ...


def sign_webhook_payload(secret: str, payload: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_signature(secret: str, signature: str, payload: bytes) -> bool:
    if not secret or not signature:
        return False
    expected = sign_webhook_payload(secret, payload)
    return hmac.compare_digest(expected, signature.strip().lower())


class BitvoraProvider:
    """Bitvora invoice API over `httpx.AsyncClient`."""

    def __init__(
        self,
        api_key: str,
        testnet: bool = False,
        webhook_secret: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.webhook_secret = webhook_secret
        self.base_url = BITVORA_TESTNET_URL if testnet else BITVORA_MAINNET_URL
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=settings.payment_request_timeout_seconds,
            transport=transport,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
        )

    async def _call(self, method: str, path: str, **kwargs) -> dict:
        try:
            resp = await self._client.request(method, path, **kwargs)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as exc:
            message = exc.response.text[:200]
            logger.error("bitvora_error method=%s path=%s status=%s", method, path, exc.response.status_code)
            raise ProviderError(f"Bitvora {method} {path} failed: {message}") from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("bitvora_error method=%s path=%s error=%s", method, path, exc)
            raise ProviderError(f"Bitvora {method} {path} failed: {exc}") from exc

    async def create_invoice(
        self,
        amount: float,
        currency: str,
        metadata: dict[str, Any],
        description: str,
        order_id: str,
        expires_in: int,
    ) -> ProviderInvoice:
        data = await self._call(
            "POST",
            "/invoices",
            json={
                "amount": amount,
                "currency": currency,
                "metadata": metadata,
                "expiresIn": expires_in,
                "orderId": order_id or str(uuid4()),
                "description": description,
            },
        )
        return ProviderInvoice.model_validate(data)

    async def get_invoice(self, invoice_id: str) -> ProviderInvoice:
        return ProviderInvoice.model_validate(await self._call("GET", f"/invoices/{invoice_id}"))

    async def cancel_invoice(self, invoice_id: str) -> ProviderInvoice:
        data = await self._call("POST", f"/invoices/{invoice_id}/cancel", json={})
        return ProviderInvoice.model_validate(data)

    def verify_webhook_signature(self, signature: str, payload: bytes) -> bool:
        return verify_signature(self.webhook_secret, signature, payload)

    async def close(self) -> None:
        await self._client.aclose()


class SimulatedProvider:
    """In-memory provider for local development and tests.

    Invoices stay `pending` until `settle()` is called or they pass their
    expiry time.
    """

    def __init__(self, webhook_secret: str = "") -> None:
        self.webhook_secret = webhook_secret
        self.invoices: dict[str, ProviderInvoice] = {}

    async def create_invoice(
        self,
        amount: float,
        currency: str,
        metadata: dict[str, Any],
        description: str,
        order_id: str,
        expires_in: int,
    ) -> ProviderInvoice:
        now = datetime.now(timezone.utc)
        invoice_id = f"inv_{uuid4().hex[:16]}"
        invoice = ProviderInvoice(
            id=invoice_id,
            amount=amount,
            currency=currency,
            status="pending",
            payment_url=f"https://pay.example/{invoice_id}",
            expires_at=now + timedelta(seconds=expires_in),
            created_at=now,
            btc_address=f"bc1q{uuid4().hex[:38]}",
            lightning_invoice=f"lnbc{int(amount * 100_000_000)}n1{uuid4().hex}",
        )
        self.invoices[invoice_id] = invoice
        logger.info("simulated invoice created invoice_id=%s order_id=%s", invoice_id, order_id)
        return invoice

    def _lookup(self, invoice_id: str) -> ProviderInvoice:
        invoice = self.invoices.get(invoice_id)
        if invoice is None:
            raise ProviderError(f"Invoice not found at provider: {invoice_id}")
        if invoice.status == "pending" and invoice.expires_at <= datetime.now(timezone.utc):
            invoice = invoice.model_copy(update={"status": "expired"})
            self.invoices[invoice_id] = invoice
        return invoice

    async def get_invoice(self, invoice_id: str) -> ProviderInvoice:
        return self._lookup(invoice_id)

    async def cancel_invoice(self, invoice_id: str) -> ProviderInvoice:
        invoice = self._lookup(invoice_id).model_copy(update={"status": "cancelled"})
        self.invoices[invoice_id] = invoice
        return invoice

    def settle(self, invoice_id: str) -> ProviderInvoice:
        invoice = self._lookup(invoice_id).model_copy(update={"status": "paid"})
        self.invoices[invoice_id] = invoice
        return invoice

    def verify_webhook_signature(self, signature: str, payload: bytes) -> bool:
        return verify_signature(self.webhook_secret, signature, payload)

    async def close(self) -> None:
        return None


def build_provider() -> InvoiceProvider:
    """Pick Bitvora when an API key is configured, else the simulation."""

    if settings.bitvora_api_key:
        return BitvoraProvider(
            settings.bitvora_api_key,
            testnet=settings.bitvora_network == "testnet",
            webhook_secret=settings.bitvora_webhook_secret,
        )
    logger.warning("BITVORA_API_KEY unset; using simulated invoice provider")
    return SimulatedProvider(webhook_secret=settings.bitvora_webhook_secret)
