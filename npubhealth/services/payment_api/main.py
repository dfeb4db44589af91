"""HTTP surface for Blossom server payments.

Serves the invoice status endpoint polled by the dashboard payment flow,
invoice creation/cancellation and the provider webhook.
"""

from contextlib import asynccontextmanager
from time import perf_counter

from fastapi import FastAPI, Header, HTTPException, Query, Request

from npubhealth.common.config import settings
from npubhealth.common.errors import InvoiceNotFound, ProviderError, ServerNotFound
from npubhealth.common.logging import configure_logging, logger
from npubhealth.common.metrics import (
    http_request_duration_seconds,
    http_requests_total,
    metrics_response,
)
from npubhealth.common.startup import log_startup_config
from npubhealth.services.payment_api.provider import build_provider
from npubhealth.services.payment_api.schemas import (
    BlossomServerRequest,
    PaymentDetailsResponse,
    PaymentStatusResponse,
    ServerDetailsResponse,
    ServerListResponse,
    ServerSummaryResponse,
    WebhookAck,
)
from npubhealth.services.payment_api.service import PaymentManager


def create_app(manager: PaymentManager | None = None) -> FastAPI:
    """Build the payment API around `manager` (default: configured provider)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        close = getattr(app.state.manager.provider, "close", None)
        if close is not None:
            await close()

    app = FastAPI(title="Npub.Health Blossom Payments", lifespan=lifespan)
    app.state.manager = manager or PaymentManager(build_provider())

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Record request count and latency for every HTTP call."""

        start = perf_counter()
        route = request.url.path
        method = request.method
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
            return response
        finally:
            elapsed = max(0.0, perf_counter() - start)
            http_request_duration_seconds.labels(
                service=settings.service_name,
                route=route,
                method=method,
            ).observe(elapsed)
            http_requests_total.labels(
                service=settings.service_name,
                route=route,
                method=method,
                status_code=str(status_code),
            ).inc()

    @app.post("/api/blossom/payment", response_model=PaymentDetailsResponse, response_model_by_alias=True)
    async def create_payment(req: BlossomServerRequest):
        """Register a server awaiting payment and return its invoice details."""

        missing = req.missing_fields()
        if missing:
            raise HTTPException(status_code=400, detail=f"Missing required fields: {', '.join(missing)}")
        payments: PaymentManager = app.state.manager
        server = payments.register_server(req.server_name, req.region, req.tier, req.user_pubkey)
        try:
            invoice = await payments.create_payment_invoice(server.id)
        except ProviderError as exc:
            logger.error("payment request failed server_id=%s error=%s", server.id, exc)
            raise HTTPException(status_code=502, detail="Server error processing payment request") from exc
        return PaymentDetailsResponse(
            server_id=server.id,
            invoice_id=invoice.id,
            payment_amount=invoice.amount,
            payment_address=invoice.btc_address,
            payment_url=invoice.payment_url,
            lightning_invoice=invoice.lightning_invoice,
            expires_at=invoice.expires_at,
        )

    @app.get(
        "/api/blossom/payment/{invoice_id}",
        response_model=PaymentStatusResponse,
        response_model_by_alias=True,
    )
    async def get_payment_status(invoice_id: str):
        """Current invoice status, reconciled with the provider."""

        try:
            status, is_paid = await app.state.manager.check_payment_status(invoice_id)
        except InvoiceNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except ProviderError as exc:
            logger.error("payment status check failed invoice_id=%s error=%s", invoice_id, exc)
            raise HTTPException(status_code=502, detail="Server error checking payment status") from exc
        return PaymentStatusResponse(status=status, is_paid=is_paid)

    @app.post(
        "/api/blossom/payment/{invoice_id}/cancel",
        response_model=PaymentStatusResponse,
        response_model_by_alias=True,
    )
    async def cancel_payment(invoice_id: str):
        try:
            record = await app.state.manager.cancel_payment(invoice_id)
        except (InvoiceNotFound, ServerNotFound) as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except ProviderError as exc:
            raise HTTPException(status_code=502, detail="Server error cancelling payment") from exc
        return PaymentStatusResponse(status=record.status, is_paid=False)

    @app.get("/api/blossom/servers", response_model=ServerListResponse, response_model_by_alias=True)
    async def list_servers(pubkey: str = Query(default="")):
        """Servers owned by `pubkey`, newest first."""

        if not pubkey:
            raise HTTPException(status_code=400, detail="User pubkey is required")
        servers = app.state.manager.store.servers_for(pubkey)
        return ServerListResponse(servers=[ServerDetailsResponse.model_validate(s.model_dump()) for s in servers])

    @app.get("/api/blossom/server/{server_id}")
    async def get_server(server_id: str, pubkey: str = Query(default="")):
        """Full details for the owner, a public summary for everyone else."""

        try:
            server = app.state.manager.store.get_server(server_id)
        except ServerNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        view = ServerDetailsResponse if pubkey and pubkey == server.user_pubkey else ServerSummaryResponse
        return view.model_validate(server.model_dump()).model_dump(by_alias=True, mode="json")

    @app.post("/api/blossom/webhook/bitvora", response_model=WebhookAck)
    async def bitvora_webhook(
        request: Request,
        bitvora_signature: str | None = Header(default=None),
    ):
        """Apply a signed provider notification."""

        if not bitvora_signature:
            raise HTTPException(status_code=400, detail="Missing signature header")
        payload = await request.body()
        try:
            app.state.manager.handle_webhook_notification(payload, bitvora_signature)
        except PermissionError as exc:
            raise HTTPException(status_code=401, detail=str(exc)) from exc
        except InvoiceNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return WebhookAck()

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response()

    @app.get("/health")
    def health():
        """Container health probe endpoint."""

        return {"ok": True}

    return app


configure_logging()
log_startup_config(
    settings.service_name,
    fields=["bitvora_network", "bitvora_api_key", "bitvora_webhook_secret", "invoice_expiry_seconds"],
)
app = create_app()
