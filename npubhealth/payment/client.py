"""Async HTTP client for the Blossom payment endpoints."""

import httpx

from npubhealth.common.config import settings
from npubhealth.common.errors import NetworkFailure, UnknownStatusValue
from npubhealth.common.logging import logger
from npubhealth.common.state_machine import PaymentStatus, parse_status
from npubhealth.payment.models import PaymentDetails


PAYMENT_PATH = "/api/blossom/payment"


class PaymentApiClient:
    """Thin wrapper over `httpx.AsyncClient`.

    All transport problems surface as `NetworkFailure`; a well-formed reply
    carrying a status outside `PaymentStatus` surfaces as `UnknownStatusValue`.
    """

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url or settings.api_base_url,
            timeout=timeout or settings.payment_request_timeout_seconds,
            transport=transport,
        )

    async def __aenter__(self) -> "PaymentApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            resp = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise NetworkFailure(f"{method} {path} failed: {exc}") from exc
        if not resp.is_success:
            raise NetworkFailure(f"{method} {path} returned {resp.status_code}")
        try:
            data = resp.json()
        except ValueError as exc:
            raise NetworkFailure(f"{method} {path} returned a malformed body") from exc
        if not isinstance(data, dict):
            raise NetworkFailure(f"{method} {path} returned a non-object body")
        return data

    async def fetch_status(self, invoice_id: str) -> PaymentStatus:
        """Query `GET /api/blossom/payment/{invoice_id}` once."""

        data = await self._request("GET", f"{PAYMENT_PATH}/{invoice_id}")
        if "status" not in data:
            raise NetworkFailure("status missing from payment status response")
        try:
            return parse_status(data["status"])
        except ValueError as exc:
            logger.warning("unknown_payment_status invoice_id=%s value=%r", invoice_id, data["status"])
            raise UnknownStatusValue(data["status"]) from exc

    async def request_invoice(
        self, server_name: str, region: str, tier: str, user_pubkey: str
    ) -> PaymentDetails:
        """Ask the API to register a server and issue its invoice."""

        data = await self._request(
            "POST",
            PAYMENT_PATH,
            json={
                "serverName": server_name,
                "region": region,
                "tier": tier,
                "userPubkey": user_pubkey,
            },
        )
        try:
            return PaymentDetails.model_validate(data)
        except ValueError as exc:
            raise NetworkFailure("payment response did not contain invoice details") from exc

    async def cancel_invoice(self, invoice_id: str) -> PaymentStatus:
        data = await self._request("POST", f"{PAYMENT_PATH}/{invoice_id}/cancel")
        try:
            return parse_status(data.get("status", PaymentStatus.CANCELLED.value))
        except ValueError as exc:
            raise UnknownStatusValue(data.get("status")) from exc
