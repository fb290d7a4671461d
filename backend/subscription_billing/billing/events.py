"""Razorpay webhook envelope parsed into a closed set of event variants.

Every known event name maps to exactly one variant; anything else becomes
``UnknownEvent`` and is acknowledged without effect.
"""

from dataclasses import dataclass
from typing import Any, TypeAlias

from pydantic import ValidationError

from subscription_billing.billing.entities import PaymentEntity, SubscriptionEntity


@dataclass(frozen=True)
class PaymentCaptured:
    payment: PaymentEntity
    name: str = "payment.captured"


@dataclass(frozen=True)
class PaymentFailed:
    payment: PaymentEntity
    name: str = "payment.failed"


@dataclass(frozen=True)
class SubscriptionActivated:
    subscription: SubscriptionEntity
    name: str = "subscription.activated"


@dataclass(frozen=True)
class SubscriptionCharged:
    subscription: SubscriptionEntity
    payment: PaymentEntity | None = None
    name: str = "subscription.charged"


@dataclass(frozen=True)
class SubscriptionCancelled:
    subscription: SubscriptionEntity
    name: str = "subscription.cancelled"


@dataclass(frozen=True)
class SubscriptionPaused:
    subscription: SubscriptionEntity
    name: str = "subscription.paused"


@dataclass(frozen=True)
class SubscriptionResumed:
    subscription: SubscriptionEntity
    name: str = "subscription.resumed"


@dataclass(frozen=True)
class UnknownEvent:
    name: str


ProviderEvent: TypeAlias = (
    PaymentCaptured
    | PaymentFailed
    | SubscriptionActivated
    | SubscriptionCharged
    | SubscriptionCancelled
    | SubscriptionPaused
    | SubscriptionResumed
    | UnknownEvent
)

_PAYMENT_EVENTS = {
    "payment.captured": PaymentCaptured,
    "payment.failed": PaymentFailed,
}

_SUBSCRIPTION_EVENTS = {
    "subscription.activated": SubscriptionActivated,
    "subscription.cancelled": SubscriptionCancelled,
    "subscription.paused": SubscriptionPaused,
    "subscription.resumed": SubscriptionResumed,
}

KNOWN_EVENTS = frozenset({*_PAYMENT_EVENTS, *_SUBSCRIPTION_EVENTS, "subscription.charged"})


class IncompleteEvent(ValueError):
    """Envelope is missing the event name, payload, or the entity it needs."""


def _entity(payload: dict[str, Any], key: str) -> dict[str, Any] | None:
    wrapper = payload.get(key)
    if not isinstance(wrapper, dict):
        return None
    entity = wrapper.get("entity")
    return entity if isinstance(entity, dict) else None


def parse_event(envelope: Any) -> ProviderEvent:
    """Turn a decoded webhook body into an event variant.

    Raises:
        IncompleteEvent: If the envelope lacks ``event``, ``payload``, or the
            entity id the event is keyed on.
    """
    if not isinstance(envelope, dict):
        raise IncompleteEvent("Webhook body is not a JSON object")

    name = envelope.get("event")
    if not name or not isinstance(name, str):
        raise IncompleteEvent("Webhook received without event type")

    if name not in KNOWN_EVENTS:
        return UnknownEvent(name=name)

    payload = envelope.get("payload")
    if not isinstance(payload, dict):
        raise IncompleteEvent(f"Webhook event {name} received without payload")

    try:
        if name in _PAYMENT_EVENTS:
            raw = _entity(payload, "payment")
            if raw is None:
                raise IncompleteEvent(f"{name} event missing payment.entity")
            payment = PaymentEntity.model_validate(raw)
            if not payment.id:
                raise IncompleteEvent(f"Payment ID missing in {name} event")
            return _PAYMENT_EVENTS[name](payment=payment)

        raw = _entity(payload, "subscription")
        if raw is None:
            raise IncompleteEvent(f"{name} event missing subscription.entity")
        subscription = SubscriptionEntity.model_validate(raw)
        if not subscription.id:
            raise IncompleteEvent(f"Subscription ID missing in {name} event")

        if name == "subscription.charged":
            raw_payment = _entity(payload, "payment")
            payment = PaymentEntity.model_validate(raw_payment) if raw_payment else None
            if payment is not None and not payment.id:
                payment = None
            return SubscriptionCharged(subscription=subscription, payment=payment)

        return _SUBSCRIPTION_EVENTS[name](subscription=subscription)
    except ValidationError as e:
        raise IncompleteEvent(f"Invalid {name} entity: {e.error_count()} validation error(s)") from e
