"""Pydantic v2 request/response schemas for subscription endpoints.

Wire names are camelCase; Python attributes stay snake_case.
"""

from datetime import datetime

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- Request schemas ---


class ConfirmPaymentRequest(CamelModel):
    """Result handed to the client by Razorpay Checkout after payment.

    Accepts Razorpay's own field names as well.
    """

    provider_payment_id: str = Field(
        validation_alias=AliasChoices("providerPaymentId", "razorpay_payment_id", "provider_payment_id"),
        min_length=1,
    )
    provider_subscription_id: str = Field(
        validation_alias=AliasChoices(
            "providerSubscriptionId", "razorpay_subscription_id", "provider_subscription_id"
        ),
        min_length=1,
    )
    signature: str = Field(
        validation_alias=AliasChoices("signature", "razorpay_signature"),
        min_length=1,
    )


class CancelRequest(CamelModel):
    reason: str | None = Field(default=None, max_length=500)


# --- Response schemas ---


class SubscriptionStatusResponse(CamelModel):
    """Everything the app needs to gate features."""

    has_access: bool
    status: str
    reason_tag: str
    is_trial: bool
    trial_end: datetime | None = None
    period_end: datetime | None = None
    next_billing_at: datetime | None = None
    provider_subscription_id: str | None = None
    is_free_access: bool = False


class CheckoutResponse(CamelModel):
    """Parameters the client passes to Razorpay Checkout."""

    ok: bool = True
    has_free_access: bool = False
    already_active: bool = False
    subscription_id: str | None = None
    plan_id: str | None = None
    customer_id: str | None = None
    key_id: str | None = None
    amount: float | None = None  # major units (59.0)
    currency: str | None = None


class ConfirmPaymentResponse(CamelModel):
    ok: bool = True
    subscription_status: str
    has_access: bool = True


class SyncResponse(CamelModel):
    ok: bool = True
    status: str


class CancelResponse(CamelModel):
    ok: bool = True


class WebhookAck(BaseModel):
    """Acknowledgement returned to Razorpay for every dispatched delivery."""

    received: bool = True
    event: str | None = None
    duplicate: bool = False
