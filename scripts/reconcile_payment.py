#!/usr/bin/env python3
"""
Credit a Pi payment that was completed with the provider but never credited.

Use after a "NOT_CREDITED" CRITICAL log line (PaymentNotCreditedError):
the provider side is already done, so only the payment lookup and the
ledger write are replayed. Safe to run twice: a credited payment is reported
as already processed.

Usage:
    python -m scripts.reconcile_payment <paymentId> <txid>
"""
import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def reconcile_payment(payment_id: str, txid: str) -> int:
    """
    Returns:
        Process exit code: 0 credited or already credited, 1 config error, 2 service error
    """
    import config
    from app.core.bootstrap import build_services
    from app.core.exceptions import ServiceError

    try:
        settings = config.load_settings()
    except config.ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    try:
        services = await build_services(settings)
    except ServiceError as e:
        logger.error(f"Startup failed: {e.message}")
        return 2

    try:
        result = await services.payments.credit_completed_payment(payment_id, txid)
    except ServiceError as e:
        logger.error(f"Reconcile failed: {e.kind}: {e.message}")
        return 2
    finally:
        await services.aclose()

    if result.already_processed:
        logger.info(f"Payment {payment_id} was already credited to uid={result.uid}")
    else:
        logger.info(
            f"Payment {payment_id} credited: uid={result.uid} days={result.additional_days} "
            f"new_expiry={result.new_expiry.isoformat() if result.new_expiry else None}"
        )
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Credit a Pi payment already completed with the provider")
    parser.add_argument("payment_id", help="Pi payment identifier")
    parser.add_argument("txid", help="Blockchain transaction id")
    args = parser.parse_args(argv)
    return asyncio.run(reconcile_payment(args.payment_id, args.txid))


if __name__ == "__main__":
    sys.exit(main())
