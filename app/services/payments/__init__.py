"""
Payment Service Layer

Pi payment approval, completion and premium crediting.
"""

from app.services.payments.service import (
    PAYER_UID_FIELDS,
    PaymentService,
    PaymentDetails,
    CompletionResult,
    parse_payment_details,
    resolve_payer_uid,
    normalize_status,
)

from app.services.payments.exceptions import (
    PaymentServiceError,
    InvalidPaymentRequestError,
    PaymentApprovalError,
    PaymentCompletionError,
    PayerNotResolvedError,
)

__all__ = [
    "PAYER_UID_FIELDS",
    "PaymentService",
    "PaymentDetails",
    "CompletionResult",
    "parse_payment_details",
    "resolve_payer_uid",
    "normalize_status",
    "PaymentServiceError",
    "InvalidPaymentRequestError",
    "PaymentApprovalError",
    "PaymentCompletionError",
    "PayerNotResolvedError",
]
