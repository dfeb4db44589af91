"""Blossom server payment logic behind the HTTP API.

Registers servers awaiting payment, issues invoices through the provider,
reconciles invoice status on each poll and applies webhook notifications.
Records live in an in-memory store; swapping in a database only needs a
store with the same methods.
"""

import json
from datetime import datetime, timezone
from uuid import uuid4

from pydantic import BaseModel, Field

from npubhealth.common.config import settings
from npubhealth.common.errors import InvoiceNotFound, ServerNotFound
from npubhealth.common.logging import log_context, logger
from npubhealth.common.metrics import invoices_created_total, webhooks_received_total
from npubhealth.services.payment_api.provider import InvoiceProvider


TIER_COSTS = {
    "basic": 0.0005,
    "premium": 0.001,
    "enterprise": 0.003,
}
TIER_STORAGE_BYTES = {
    "basic": 5_000_000_000,
    "premium": 20_000_000_000,
    "enterprise": 50_000_000_000,
}
DEFAULT_COST = 0.001


class BlossomServer(BaseModel):
    id: str
    server_name: str
    region: str
    tier: str
    user_pubkey: str
    status: str = "AWAITING_PAYMENT"
    storage_limit: int
    url: str | None = None
    invoice_id: str | None = None
    payment_amount: float | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class InvoiceRecord(BaseModel):
    id: str
    server_id: str
    amount: float
    currency: str = "BTC"
    status: str
    payment_url: str | None = None
    btc_address: str | None = None
    lightning_invoice: str | None = None
    expires_at: datetime
    created_at: datetime
    paid_at: datetime | None = None
    metadata: str = "{}"


class InvoiceStore:
    """Dict-backed storage for servers and invoices."""

    def __init__(self) -> None:
        self.servers: dict[str, BlossomServer] = {}
        self.invoices: dict[str, InvoiceRecord] = {}

    def add_server(self, server: BlossomServer) -> None:
        self.servers[server.id] = server

    def get_server(self, server_id: str) -> BlossomServer:
        server = self.servers.get(server_id)
        if server is None:
            raise ServerNotFound(f"Server not found: {server_id}")
        return server

    def update_server(self, server_id: str, **fields) -> BlossomServer:
        server = self.get_server(server_id).model_copy(update=fields)
        self.servers[server_id] = server
        return server

    def add_invoice(self, invoice: InvoiceRecord) -> None:
        self.invoices[invoice.id] = invoice

    def get_invoice(self, invoice_id: str) -> InvoiceRecord:
        invoice = self.invoices.get(invoice_id)
        if invoice is None:
            raise InvoiceNotFound(f"Invoice not found: {invoice_id}")
        return invoice

    def update_invoice(self, invoice_id: str, **fields) -> InvoiceRecord:
        invoice = self.get_invoice(invoice_id).model_copy(update=fields)
        self.invoices[invoice_id] = invoice
        return invoice

    def servers_for(self, user_pubkey: str) -> list[BlossomServer]:
        """Servers owned by `user_pubkey`, newest first."""

        owned = [s for s in self.servers.values() if s.user_pubkey == user_pubkey]
        return sorted(owned, key=lambda s: s.created_at, reverse=True)


class PaymentManager:
    """Owns invoice lifecycle for Blossom server subscriptions."""

    def __init__(
        self,
        provider: InvoiceProvider,
        store: InvoiceStore | None = None,
        service_name: str | None = None,
    ) -> None:
        self.provider = provider
        self.store = store or InvoiceStore()
        self.service_name = service_name or settings.service_name

    def register_server(self, server_name: str, region: str, tier: str, user_pubkey: str) -> BlossomServer:
        server = BlossomServer(
            id=f"server-{uuid4().hex[:20]}",
            server_name=server_name,
            region=region,
            tier=tier,
            user_pubkey=user_pubkey,
            storage_limit=TIER_STORAGE_BYTES.get(tier, TIER_STORAGE_BYTES["basic"]),
        )
        self.store.add_server(server)
        return server

    async def create_payment_invoice(self, server_id: str) -> InvoiceRecord:
        """Create a provider invoice for a server that is awaiting payment."""

        server = self.store.get_server(server_id)
        if server.status != "AWAITING_PAYMENT":
            raise ValueError(f"Server is not awaiting payment: {server_id}")

        amount = TIER_COSTS.get(server.tier, DEFAULT_COST)
        metadata = {
            "serverId": server_id,
            "serverName": server.server_name,
            "userPubkey": server.user_pubkey,
        }
        invoice = await self.provider.create_invoice(
            amount=amount,
            currency="BTC",
            metadata=metadata,
            description=f"Blossom Server: {server.server_name} ({server.tier})",
            order_id=server_id,
            expires_in=settings.invoice_expiry_seconds,
        )
        record = InvoiceRecord(
            id=invoice.id,
            server_id=server_id,
            amount=amount,
            currency="BTC",
            status=invoice.status,
            payment_url=invoice.payment_url,
            btc_address=invoice.btc_address,
            lightning_invoice=invoice.lightning_invoice,
            expires_at=invoice.expires_at,
            created_at=invoice.created_at,
            metadata=json.dumps(metadata),
        )
        self.store.add_invoice(record)
        self.store.update_server(server_id, invoice_id=invoice.id, payment_amount=amount)
        invoices_created_total.labels(service=self.service_name, tier=server.tier).inc()
        logger.info("invoice created invoice_id=%s server_id=%s amount=%s", invoice.id, server_id, amount)
        return record

    async def check_payment_status(self, invoice_id: str) -> tuple[str, bool]:
        """Return `(status, is_paid)`, refreshing from the provider if unpaid."""

        with log_context(invoice_id=invoice_id):
            record = self.store.get_invoice(invoice_id)
            if record.status == "paid":
                return "paid", True

            invoice = await self.provider.get_invoice(invoice_id)
            if invoice.status != record.status:
                logger.info("invoice status changed from=%s to=%s", record.status, invoice.status)
                if invoice.status == "paid":
                    self.handle_successful_payment(invoice_id)
                else:
                    self.store.update_invoice(invoice_id, status=invoice.status)
            return invoice.status, invoice.status == "paid"

    async def cancel_payment(self, invoice_id: str) -> InvoiceRecord:
        record = self.store.get_invoice(invoice_id)
        if record.status == "paid":
            raise ValueError(f"Invoice already paid: {invoice_id}")
        await self.provider.cancel_invoice(invoice_id)
        record = self.store.update_invoice(invoice_id, status="cancelled")
        self.store.update_server(record.server_id, status="AWAITING_PAYMENT", invoice_id=None)
        logger.info("invoice cancelled invoice_id=%s server_id=%s", invoice_id, record.server_id)
        return record

    def handle_webhook_notification(self, payload: bytes, signature: str) -> None:
        """Verify and apply one provider webhook."""

        if not self.provider.verify_webhook_signature(signature, payload):
            webhooks_received_total.labels(service=self.service_name, outcome="invalid_signature").inc()
            raise PermissionError("Invalid webhook signature")
        try:
            body = json.loads(payload)
        except ValueError as exc:
            webhooks_received_total.labels(service=self.service_name, outcome="malformed").inc()
            raise ValueError("Webhook body is not valid JSON") from exc
        if not isinstance(body, dict):
            webhooks_received_total.labels(service=self.service_name, outcome="malformed").inc()
            raise ValueError("Webhook body must be a JSON object")

        if body.get("event") != "invoice.paid":
            webhooks_received_total.labels(service=self.service_name, outcome="other").inc()
            return
        data = body.get("data")
        invoice_id = data.get("id") if isinstance(data, dict) else None
        if not invoice_id or not isinstance(invoice_id, str):
            webhooks_received_total.labels(service=self.service_name, outcome="malformed").inc()
            raise ValueError("invoice.paid webhook without data.id")
        self.handle_successful_payment(invoice_id)
        webhooks_received_total.labels(service=self.service_name, outcome="invoice.paid").inc()

    def handle_successful_payment(self, invoice_id: str) -> InvoiceRecord:
        record = self.store.get_invoice(invoice_id)
        if record.status == "paid":
            return record
        record = self.store.update_invoice(invoice_id, status="paid", paid_at=datetime.now(timezone.utc))
        self.store.update_server(record.server_id, status="READY_TO_DEPLOY")
        logger.info("payment processed invoice_id=%s server_id=%s", invoice_id, record.server_id)
        return record
