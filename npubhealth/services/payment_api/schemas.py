"""API request/response schemas for the Blossom payment endpoints."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class BlossomServerRequest(CamelModel):
    """Payload accepted by `POST /api/blossom/payment`."""

    server_name: str = Field(default="", max_length=128)
    region: str = Field(default="", max_length=64)
    tier: Literal["basic", "premium", "enterprise"] | None = None
    user_pubkey: str = Field(default="", max_length=128)

    def missing_fields(self) -> list[str]:
        missing = []
        for name in ("server_name", "region", "tier", "user_pubkey"):
            if not getattr(self, name):
                missing.append(to_camel(name))
        return missing


class PaymentDetailsResponse(CamelModel):
    """Invoice details handed to the client to open a payment flow."""

    server_id: str
    invoice_id: str
    payment_amount: float
    payment_address: str | None = None
    payment_url: str | None = None
    lightning_invoice: str | None = None
    expires_at: datetime


class PaymentStatusResponse(CamelModel):
    status: str
    is_paid: bool


class WebhookAck(BaseModel):
    status: str = "success"


class ServerSummaryResponse(CamelModel):
    """Public view of a Blossom server, shown to anyone holding its id."""

    id: str
    server_name: str
    status: str
    url: str | None = None


class ServerDetailsResponse(ServerSummaryResponse):
    """Owner view of a Blossom server."""

    region: str
    tier: str
    storage_limit: int
    created_at: datetime
    invoice_id: str | None = None
    payment_amount: float | None = None


class ServerListResponse(CamelModel):
    servers: list[ServerDetailsResponse]
