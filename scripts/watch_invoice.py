"""Follow one invoice through the payment flow and print each transition.

Useful for checking a deployed payment API end to end without the dashboard.
"""

import argparse
import asyncio

from npubhealth.common.logging import configure_logging
from npubhealth.common.state_machine import TERMINAL_STATUSES, PaymentStatus
from npubhealth.payment.client import PaymentApiClient
from npubhealth.payment.flow import PaymentFlowController
from npubhealth.payment.models import PaymentDetails, PaymentOptions


async def watch(base_url: str, invoice_id: str, interval_ms: int, timeout_seconds: float) -> PaymentStatus:
    """Open a flow for `invoice_id` and wait for a terminal status or timeout."""

    finished = asyncio.Event()

    def on_status_change(status: PaymentStatus) -> None:
        print(f"status -> {status.value}")
        if status in TERMINAL_STATUSES or status is PaymentStatus.ERROR:
            finished.set()

    def on_payment_success() -> None:
        print("payment confirmed")

    options = PaymentOptions(
        polling_interval=interval_ms,
        on_status_change=on_status_change,
        on_payment_success=on_payment_success,
    )
    async with PaymentApiClient(base_url=base_url) as client:
        async with PaymentFlowController(client, options) as flow:
            flow.open_payment_modal(PaymentDetails(invoice_id=invoice_id, payment_amount=0))
            await flow.check_payment_status()
            try:
                await asyncio.wait_for(finished.wait(), timeout=timeout_seconds)
            except asyncio.TimeoutError:
                print(f"timed out after {timeout_seconds}s")
            snapshot = flow.snapshot
            if snapshot.error:
                print(f"last error: {snapshot.error}")
            return snapshot.status


def main() -> None:
    """Parse CLI args and watch one invoice."""

    parser = argparse.ArgumentParser(description="Poll a Blossom payment invoice until it settles.")
    parser.add_argument("--base-url", default="http://localhost:5000")
    parser.add_argument("--invoice-id", required=True)
    parser.add_argument("--interval-ms", type=int, default=5000)
    parser.add_argument("--timeout-seconds", type=float, default=900)
    parser.add_argument("--json-logs", action="store_true", help="Emit structured logs to stdout")
    args = parser.parse_args()

    if args.json_logs:
        configure_logging()
    status = asyncio.run(watch(args.base_url, args.invoice_id, args.interval_ms, args.timeout_seconds))
    print(f"final status={status.value}")
    raise SystemExit(0 if status is PaymentStatus.PAID else 1)


if __name__ == "__main__":
    main()
