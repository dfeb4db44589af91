"""Value objects shared by the payment flow, machine and API client."""

from datetime import datetime
from typing import Callable

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from npubhealth.common.config import settings
from npubhealth.common.state_machine import PaymentStatus


class PaymentDetails(BaseModel):
    """Immutable invoice snapshot returned by `POST /api/blossom/payment`."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    server_id: str = ""
    invoice_id: str = Field(min_length=1)
    payment_amount: float = Field(ge=0)
    payment_address: str | None = None
    payment_url: str | None = None
    lightning_invoice: str | None = None
    expires_at: datetime | None = None


class PaymentOptions(BaseModel):
    """Per-flow options; callbacks are fixed for the lifetime of a machine."""

    model_config = ConfigDict(frozen=True)

    polling_interval: int = Field(default_factory=lambda: settings.payment_polling_interval_ms, gt=0)
    max_consecutive_failures: int = Field(
        default_factory=lambda: settings.payment_max_consecutive_failures, ge=0
    )
    cancel_on_close: bool = Field(default_factory=lambda: settings.payment_cancel_on_close)
    on_status_change: Callable[[PaymentStatus], None] | None = None
    on_payment_success: Callable[[], None] | None = None


class PaymentSnapshot(BaseModel):
    """Read-only view of a flow for rendering."""

    model_config = ConfigDict(frozen=True)

    status: PaymentStatus
    payment_details: PaymentDetails | None
    is_modal_open: bool
    error: str | None
