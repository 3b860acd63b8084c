from typing import Any, Dict, Optional


class PaymentError(Exception):
    """Base class for payment failures. `details` is safe to return to clients."""

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details


class InvalidRequest(PaymentError):
    """Bad input to request building; nothing was persisted."""


class ConfigurationError(PaymentError):
    """Deployment is missing a secret, merchant code or URL."""


class MissingReference(PaymentError):
    """Callback carried no vnp_TxnRef."""


class NotFound(PaymentError):
    """No payment record matches the transaction reference."""

    def __init__(self, message: str, txn_ref: Optional[str] = None, **details: Any):
        super().__init__(message, **details)
        self.txn_ref = txn_ref


class SignatureMismatch(PaymentError):
    """Callback signature did not verify."""

    def __init__(self, message: str, txn_ref: Optional[str] = None, **details: Any):
        super().__init__(message, **details)
        self.txn_ref = txn_ref


class UpstreamUnavailable(PaymentError):
    """Datastore or provider did not answer in time."""


class OrderSyncError(PaymentError):
    """Order update failed while applying a payment outcome; record left PENDING."""

    def __init__(self, message: str, txn_ref: Optional[str] = None, order_id: Optional[str] = None):
        super().__init__(message, txn_ref=txn_ref, order_id=order_id)
        self.txn_ref = txn_ref
        self.order_id = order_id
