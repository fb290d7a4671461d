"""Billing error kinds.

Each error carries a stable ``code`` for API clients and the HTTP status the
synchronous endpoints answer with. Webhook ingestion never surfaces these to
Razorpay except ``SignatureInvalid`` and ``MalformedPayload`` (unparsable body).
"""

from fastapi import status


class BillingError(Exception):
    """Base class for billing failures."""

    code: str = "BillingError"
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str | None = None, **context: object) -> None:
        self.message = message or self.code
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> dict[str, object]:
        return {"ok": False, "error": self.code, "message": self.message}


class SignatureInvalid(BillingError):
    """Webhook body HMAC did not match the signature header."""

    code = "SignatureInvalid"
    status_code = status.HTTP_401_UNAUTHORIZED


class InvalidSignature(BillingError):
    """Client-submitted checkout signature did not verify."""

    code = "InvalidSignature"
    status_code = status.HTTP_400_BAD_REQUEST


class MalformedPayload(BillingError):
    code = "MalformedPayload"
    status_code = status.HTTP_400_BAD_REQUEST


class EntityNotFound(BillingError):
    """Local lookup miss."""

    code = "EntityNotFound"
    status_code = status.HTTP_404_NOT_FOUND


class SubscriptionNotFound(EntityNotFound):
    code = "SubscriptionNotFound"


class NoSubscriptionToSync(EntityNotFound):
    code = "NoSubscriptionToSync"


class NoSubscriptionToCancel(EntityNotFound):
    code = "NoSubscriptionToCancel"


class PaymentVerificationFailed(BillingError):
    """Razorpay does not report the payment as captured or authorized."""

    code = "PaymentVerificationFailed"
    status_code = status.HTTP_400_BAD_REQUEST


class ProviderUnavailable(BillingError):
    """Outbound Razorpay call failed or timed out."""

    code = "ProviderUnavailable"
    status_code = status.HTTP_502_BAD_GATEWAY


class ProviderRejected(ProviderUnavailable):
    """Razorpay answered with a 4xx (e.g. subscription already cancelled)."""

    code = "ProviderRejected"


class InvariantViolation(BillingError):
    """A write would break a record invariant (e.g. moving period_end backward)."""

    code = "InvariantViolation"
    status_code = status.HTTP_409_CONFLICT
