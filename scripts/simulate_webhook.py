"""Send a signed `invoice.paid` webhook to a local payment API.

Useful for settling simulated invoices without a real provider.
"""

import argparse
import json

import httpx

from npubhealth.services.payment_api.provider import sign_webhook_payload


def send_paid_webhook(base_url: str, secret: str, invoice_id: str) -> httpx.Response:
    """Sign and POST one `invoice.paid` event."""

    body = json.dumps({"event": "invoice.paid", "data": {"id": invoice_id}}).encode("utf-8")
    headers = {
        "content-type": "application/json",
        "bitvora-signature": sign_webhook_payload(secret, body),
    }
    with httpx.Client(timeout=10.0) as client:
        return client.post(f"{base_url}/api/blossom/webhook/bitvora", content=body, headers=headers)


def main() -> None:
    """Parse CLI args and send one webhook."""

    parser = argparse.ArgumentParser(description="Mark an invoice paid through the webhook endpoint.")
    parser.add_argument("--base-url", default="http://localhost:5000")
    parser.add_argument("--secret", required=True, help="Value of BITVORA_WEBHOOK_SECRET on the server")
    parser.add_argument("--invoice-id", required=True)
    args = parser.parse_args()

    resp = send_paid_webhook(args.base_url, args.secret, args.invoice_id)
    print(f"status_code={resp.status_code} body={resp.text}")
    if resp.status_code >= 400:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
