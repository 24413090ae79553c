"""
Payment Service Layer

Turns a provider-confirmed Pi payment into a premium extension, exactly once.

Completion flow (complete_payment):
1. Validate paymentId/txid (no provider call on failure)
2. Idempotency pre-check on payment_id (replays return the current expiry)
3. Provider completion (POST /payments/{id}/complete)
4. Payment details (GET /payments/{id}) -> payer uid, amount, status
5. compute_grant(amount)
6. store.apply_payment: user update + transaction insert in one unit

Steps 3-6 run under a per-payment distributed lock when one is configured.
If Redis fails while taking that lock, completion goes ahead unlocked and
relies on the ledger's idempotency re-check.

EXTERNAL DEPENDENCIES POLICY:
- Provider unavailable/rejecting -> PaymentCompletionError (nothing written, retry later)
- Ledger failure after provider confirmation -> PaymentNotCreditedError (CRITICAL, replay
  with scripts/reconcile_payment.py)
- Domain exceptions are NEVER retried
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from app.constants.premium import DEFAULT_PAYMENT_STATUS, DEFAULT_USERNAME
from app.core.exceptions import PaymentNotCreditedError, StorageError
from app.core.ledger import TransactionRecord
from app.core.redis_lock import LockBackendUnavailableError, LockNotAcquiredError
from app.core.structured_logger import log_event
from app.services.entitlements.service import coerce_amount, compute_grant, utc_now
from app.services.payments.exceptions import (
    InvalidPaymentRequestError,
    PayerNotResolvedError,
    PaymentApprovalError,
    PaymentCompletionError,
)
from pi_network import PiNetworkError

logger = logging.getLogger(__name__)

# Provider payment fields that may carry the payer uid, in priority order.
# The first non-empty value wins.
PAYER_UID_FIELDS = ("from_uid", "actor_uid", "user_uid")

# Provider status flags that mean the payment did not go through
_CANCEL_FLAGS = ("cancelled", "user_cancelled")


# ====================================================================================
# Result Types
# ====================================================================================

@dataclass
class PaymentDetails:
    """Parsed provider payment object"""
    payment_id: str
    payer_uid: Optional[str]
    amount: Decimal
    status: str
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CompletionResult:
    """Result of payment completion"""
    payment_id: str
    uid: str
    new_expiry: Optional[datetime]
    additional_days: int
    already_processed: bool


# ====================================================================================
# Payment detail parsing
# ====================================================================================

def resolve_payer_uid(data: Dict[str, Any]) -> Optional[str]:
    """
    Pick the payer uid from a provider payment object.

    Returns:
        First non-empty value among PAYER_UID_FIELDS, or None
    """
    for name in PAYER_UID_FIELDS:
        value = data.get(name)
        if value is None:
            continue
        value = str(value).strip()
        if value:
            return value
    return None


def normalize_status(value: Any) -> str:
    """
    Short status label for the ledger.

    The provider returns either a plain string or a flags object
    ({"developer_completed": true, "cancelled": false, ...}).
    """
    if isinstance(value, str) and value.strip():
        return value.strip()
    if isinstance(value, dict):
        if any(value.get(flag) for flag in _CANCEL_FLAGS):
            return "cancelled"
        return DEFAULT_PAYMENT_STATUS
    return DEFAULT_PAYMENT_STATUS


def parse_payment_details(payment_id: str, data: Dict[str, Any]) -> PaymentDetails:
    return PaymentDetails(
        payment_id=payment_id,
        payer_uid=resolve_payer_uid(data),
        amount=coerce_amount(data.get("amount")),
        status=normalize_status(data.get("status")),
        raw=dict(data),
    )


def _require(value: Any, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidPaymentRequestError(f"Missing {name}")
    return value.strip()


# ====================================================================================
# Service
# ====================================================================================

class PaymentService:
    """
    Payment approval and completion against the Pi Platform.

    Args:
        settings: config.Settings
        provider: PiNetworkClient (or anything with the same coroutine methods)
        store: LedgerStore
        lock_factory: payment_id -> async context manager, or None to run unlocked
        clock: returns the current aware UTC time
    """

    def __init__(
        self,
        settings,
        provider,
        store,
        lock_factory: Optional[Callable[[str], Any]] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._settings = settings
        self._provider = provider
        self._store = store
        self._lock_factory = lock_factory
        self._clock = clock

    # ---------------------------------------------------------------- approval

    async def approve_payment(self, payment_id: Any) -> None:
        """
        Approve a payment the client just created (server-side approval step).

        Raises:
            InvalidPaymentRequestError: paymentId missing
            PaymentApprovalError: provider rejected or failed the call
        """
        payment_id = _require(payment_id, "paymentId")
        logger.info(f"approve_payment: START [payment_id={payment_id}]")
        started = time.monotonic()

        try:
            await self._provider.approve_payment(payment_id)
        except PiNetworkError as e:
            log_event(
                logger,
                component="payments",
                operation="approve_payment",
                correlation_id=payment_id,
                outcome="failed",
                reason=type(e).__name__,
                level="warning",
            )
            raise PaymentApprovalError(f"Pi approve failed: {e}") from e

        log_event(
            logger,
            component="payments",
            operation="approve_payment",
            correlation_id=payment_id,
            outcome="success",
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    # -------------------------------------------------------------- completion

    async def complete_payment(self, payment_id: Any, txid: Any) -> CompletionResult:
        """
        Complete a payment with the provider and credit premium time.

        Args:
            payment_id: Provider payment id
            txid: Blockchain transaction id from the client

        Returns:
            CompletionResult (already_processed=True for a replayed payment_id)

        Raises:
            InvalidPaymentRequestError: paymentId or txid missing
            PaymentCompletionError: provider completion or lookup failed (nothing written)
            PayerNotResolvedError: payment details carry no payer uid (nothing written)
            PaymentNotCreditedError: provider confirmed, ledger write failed
            StorageError: ledger unavailable before any provider call
        """
        payment_id = _require(payment_id, "paymentId")
        txid = _require(txid, "txid")
        logger.info(f"complete_payment: START [payment_id={payment_id}]")

        prior = await self._already_processed(payment_id)
        if prior is not None:
            return prior

        if self._lock_factory is None:
            return await self._complete(payment_id, txid)

        try:
            async with self._lock_factory(payment_id):
                return await self._complete(payment_id, txid)
        except LockNotAcquiredError:
            # Another request holds this payment; it may have finished meanwhile
            prior = await self._already_processed(payment_id)
            if prior is not None:
                return prior
            logger.warning(f"complete_payment: LOCK_BUSY [payment_id={payment_id}]")
            raise PaymentCompletionError("Payment completion already in progress")
        except LockBackendUnavailableError as e:
            # Same fail-open rule as a missing Redis at startup
            logger.warning(
                f"complete_payment: LOCK_UNAVAILABLE [payment_id={payment_id}, reason={e.cause}] "
                f"completing without distributed lock"
            )
            return await self._complete(payment_id, txid)

    async def credit_completed_payment(self, payment_id: Any, txid: Any) -> CompletionResult:
        """
        Credit a payment that is already completed on the provider side.

        Operator replay after PaymentNotCreditedError: skips the provider
        completion call, everything else matches complete_payment.
        """
        payment_id = _require(payment_id, "paymentId")
        txid = _require(txid, "txid")
        logger.info(f"credit_completed_payment: START [payment_id={payment_id}]")

        prior = await self._already_processed(payment_id)
        if prior is not None:
            return prior

        details = await self._fetch_details(payment_id)
        return await self._credit(details, txid)

    async def _already_processed(self, payment_id: str) -> Optional[CompletionResult]:
        existing = await self._store.get_transaction(payment_id)
        if existing is None:
            return None

        user = await self._store.get_user(existing.uid)
        logger.info(
            f"complete_payment: ALREADY_PROCESSED [payment_id={payment_id}, uid={existing.uid}]"
        )
        return CompletionResult(
            payment_id=payment_id,
            uid=existing.uid,
            new_expiry=user.premium_expiry if user else None,
            additional_days=0,
            already_processed=True,
        )

    async def _complete(self, payment_id: str, txid: str) -> CompletionResult:
        # Re-check under the lock: the previous holder may have credited it
        prior = await self._already_processed(payment_id)
        if prior is not None:
            return prior

        try:
            await self._provider.complete_payment(payment_id, txid)
        except PiNetworkError as e:
            log_event(
                logger,
                component="payments",
                operation="complete_payment",
                correlation_id=payment_id,
                outcome="failed",
                reason=type(e).__name__,
                level="warning",
            )
            raise PaymentCompletionError(f"Pi complete failed: {e}") from e
        logger.info(f"complete_payment: PROVIDER_CONFIRMED [payment_id={payment_id}]")

        details = await self._fetch_details(payment_id)
        return await self._credit(details, txid)

    async def _fetch_details(self, payment_id: str) -> PaymentDetails:
        try:
            data = await self._provider.get_payment(payment_id)
        except PiNetworkError as e:
            logger.error(
                f"complete_payment: DETAILS_FAILED [payment_id={payment_id}, error={type(e).__name__}]"
            )
            raise PaymentCompletionError(f"Pi payment lookup failed: {e}") from e

        details = parse_payment_details(payment_id, data)
        if details.payer_uid is None:
            logger.error(f"complete_payment: PAYER_NOT_RESOLVED [payment_id={payment_id}]")
            raise PayerNotResolvedError("Could not resolve user from payment")
        return details

    async def _credit(self, details: PaymentDetails, txid: str) -> CompletionResult:
        started = time.monotonic()
        additional_days = compute_grant(details.amount)
        transaction = TransactionRecord(
            uid=details.payer_uid,
            payment_id=details.payment_id,
            amount=details.amount,
            status=details.status,
            txid=txid,
            raw=details.raw,
        )

        try:
            application = await self._store.apply_payment(
                details.payer_uid,
                additional_days,
                transaction,
                DEFAULT_USERNAME,
                now=self._clock(),
            )
        except StorageError as e:
            logger.critical(
                f"complete_payment: NOT_CREDITED [payment_id={details.payment_id}, "
                f"txid={txid}, uid={details.payer_uid}, days={additional_days}] "
                f"replay with: python -m scripts.reconcile_payment {details.payment_id} {txid}"
            )
            raise PaymentNotCreditedError(
                "Payment completed with Pi but could not be credited",
                payment_id=details.payment_id,
                txid=txid,
                uid=details.payer_uid,
            ) from e

        log_event(
            logger,
            component="payments",
            operation="credit_payment",
            correlation_id=details.payment_id,
            outcome="duplicate" if application.duplicate else "success",
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        logger.info(
            f"complete_payment: DONE [payment_id={details.payment_id}, uid={details.payer_uid}, "
            f"amount={details.amount}, days={application.additional_days}, "
            f"new_expiry={application.new_expiry.isoformat() if application.new_expiry else None}]"
        )

        return CompletionResult(
            payment_id=details.payment_id,
            uid=application.user.uid,
            new_expiry=application.new_expiry,
            additional_days=application.additional_days,
            already_processed=application.duplicate,
        )
