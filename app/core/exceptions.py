"""
Core domain exceptions for identity, payment and ledger operations.

Every error a caller can see carries a machine-readable ``kind`` and the HTTP
status the API layer answers with. Used to distinguish business failures from
system failures.
"""


class ServiceError(Exception):
    """Base class for caller-visible failures."""

    kind = "unexpected"
    http_status = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__


class ValidationError(ServiceError):
    """Required input missing or malformed. No external call was made, no state changed."""

    kind = "validation"
    http_status = 400


class AuthenticationError(ServiceError):
    """Access token rejected by the provider, or no identity could be resolved."""

    kind = "authentication"
    http_status = 401


class ProviderError(ServiceError):
    """Pi Platform call failed, timed out, or returned a non-success status."""

    kind = "provider"
    http_status = 400


class NotFoundError(ServiceError):
    """Query for an unknown user."""

    kind = "not_found"
    http_status = 404


class StorageError(ServiceError):
    """Ledger store unavailable or a write failed."""

    kind = "storage"
    http_status = 500


class PaymentNotCreditedError(StorageError):
    """Raised when the provider confirmed a payment but the ledger write failed.

    The payment is completed on the Pi side and NOT credited locally.
    Must be replayed (scripts/reconcile_payment.py) or escalated.
    """

    kind = "payment_not_credited"
    http_status = 500

    def __init__(self, message: str, payment_id: str, txid: str, uid: str = ""):
        super().__init__(message)
        self.payment_id = payment_id
        self.txid = txid
        self.uid = uid
