"""
Payment Service Domain Exceptions

All exceptions raised by the payment service layer. Each one is also a core
ServiceError, so the HTTP layer maps it to a status without knowing this module.
"""

from app.core.exceptions import ProviderError, ValidationError


class PaymentServiceError(Exception):
    """Marker base for payment service errors"""
    pass


class InvalidPaymentRequestError(PaymentServiceError, ValidationError):
    """Raised when paymentId or txid is missing. No provider call was made."""
    pass


class PaymentApprovalError(PaymentServiceError, ProviderError):
    """Raised when the provider rejects or fails the approve call"""
    pass


class PaymentCompletionError(PaymentServiceError, ProviderError):
    """Raised when the provider rejects or fails the complete call, or the payment lookup.

    Nothing was written locally; the call is safe to retry.
    """
    pass


class PayerNotResolvedError(PaymentServiceError, ProviderError):
    """Raised when the provider's payment details carry no payer uid"""
    pass
