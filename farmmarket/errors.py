from typing import Any, List, Optional


class CheckoutError(Exception):
    status_code = 400
    code = "checkout_error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        body = {"detail": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


class ValidationRejected(CheckoutError):
    """Cart cannot produce any admissible seller order."""

    status_code = 422
    code = "validation_rejected"

    def __init__(self, message: str, rejected: Optional[List[dict]] = None):
        super().__init__(message, rejected=rejected or [])
        self.rejected = rejected or []


class ProviderTransientError(CheckoutError):
    """Network failure or timeout talking to the payment provider. Retryable."""

    status_code = 503
    code = "provider_unavailable"


ProviderError = ProviderTransientError


class PaymentRejected(CheckoutError):
    """Provider explicitly refused the payment. Terminal for the attempt."""

    status_code = 402
    code = "payment_rejected"


class CommitConflict(CheckoutError):
    """Price or stock changed between validation and commit."""

    status_code = 409
    code = "commit_conflict"

    def __init__(self, message: str, seller_id: Optional[str] = None, product_id: Optional[str] = None):
        super().__init__(message, seller_id=seller_id, product_id=product_id)
        self.seller_id = seller_id
        self.product_id = product_id


class DuplicateNotification(CheckoutError):
    status_code = 200
    code = "duplicate_notification"


class InvalidTransition(CheckoutError):
    status_code = 409
    code = "invalid_transition"


class StaleRecord(CheckoutError):
    """A versioned write lost its compare-and-swap."""

    status_code = 409
    code = "stale_record"


class NotFound(CheckoutError):
    status_code = 404
    code = "not_found"


class Forbidden(CheckoutError):
    status_code = 403
    code = "forbidden"


class IdempotencyMismatch(CheckoutError):
    status_code = 409
    code = "idempotency_mismatch"


class MalformedPayload(CheckoutError):
    status_code = 400
    code = "malformed_payload"


class InvalidSignature(CheckoutError):
    status_code = 400
    code = "invalid_signature"


class CatalogUnavailable(CheckoutError):
    """Catalog or cart collaborator could not be reached. Retryable."""

    status_code = 503
    code = "catalog_unavailable"


class DuplicateOrderNumber(CheckoutError):
    status_code = 409
    code = "duplicate_order_number"
