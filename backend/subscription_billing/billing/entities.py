"""Typed views of the Razorpay entities billing consumes.

Only the fields used here are declared; everything else Razorpay sends is
ignored. Timestamps stay as Unix seconds, matching the wire format.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from subscription_billing.billing.notes import Notes, coerce_notes


class _Entity(BaseModel):
    model_config = ConfigDict(extra="ignore")

    @field_validator("notes", mode="before", check_fields=False)
    @classmethod
    def _coerce_notes(cls, value: Any) -> Notes:
        return coerce_notes(value)


class PaymentEntity(_Entity):
    """A Razorpay payment (``payload.payment.entity`` or ``payments.fetch``)."""

    id: str | None = None
    status: str | None = None
    amount: int | None = None  # minor units (paise)
    currency: str | None = None
    method: str | None = None
    order_id: str | None = None
    invoice_id: str | None = None
    subscription_id: str | None = None
    created_at: int | None = None
    captured_at: int | None = None
    error_code: str | None = None
    error_description: str | None = None
    notes: Notes = {}

    @model_validator(mode="before")
    @classmethod
    def _flatten_error(cls, data: Any) -> Any:
        # Some payloads nest failure details under "error" instead of error_*.
        if isinstance(data, dict) and isinstance(data.get("error"), dict):
            error = data["error"]
            data = dict(data)
            data.setdefault("error_code", error.get("code"))
            data.setdefault("error_description", error.get("description"))
        return data


class SubscriptionEntity(_Entity):
    """A Razorpay subscription (``payload.subscription.entity`` or ``subscriptions.fetch``)."""

    id: str | None = None
    status: str | None = None
    plan_id: str | None = None
    customer_id: str | None = None
    current_start: int | None = None
    current_end: int | None = None
    charge_at: int | None = None
    start_at: int | None = None
    created_at: int | None = None
    cancelled_at: int | None = None
    cancel_reason: str | None = None
    paid_count: int | None = None
    notes: Notes = {}
