"""Razorpay webhook event handlers — apply payment and subscription lifecycle events.

Handlers look up the local subscription by Razorpay subscription id. A miss
is logged and acknowledged; payment rows are still recorded so a later
subscription match can claim them.
"""

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from subscription_billing.billing.entities import PaymentEntity, SubscriptionEntity
from subscription_billing.billing.events import (
    PaymentCaptured,
    PaymentFailed,
    ProviderEvent,
    SubscriptionActivated,
    SubscriptionCancelled,
    SubscriptionCharged,
    SubscriptionPaused,
    SubscriptionResumed,
    UnknownEvent,
)
from subscription_billing.billing.periods import add_cycles, from_unix, later_of
from subscription_billing.models.payment import Payment
from subscription_billing.models.subscription import Subscription
from subscription_billing.services import payment_ledger, subscription_service
from subscription_billing.services.payment_ledger import PaymentObservation

logger = logging.getLogger(__name__)


async def _find_subscription(
    db: AsyncSession, provider_subscription_id: str | None, event_name: str
) -> Subscription | None:
    if not provider_subscription_id:
        return None
    subscription = await subscription_service.get_by_provider_subscription_id(db, provider_subscription_id)
    if subscription is None:
        logger.warning(
            "No local subscription found for Razorpay subscription %s (%s)",
            provider_subscription_id,
            event_name,
        )
        return None
    await payment_ledger.link_orphans(db, subscription)
    return subscription


async def record_captured_payment(
    db: AsyncSession,
    payment: PaymentEntity,
    subscription: Subscription | None,
    *,
    via_webhook: bool,
    now: datetime,
) -> Payment:
    """Record a captured/authorized payment and activate its subscription.

    Shared by ``payment.captured`` and checkout confirmation so that both
    paths, in either order, end in the same state.
    """
    status = "captured" if via_webhook else (payment.status or "captured")
    observation = PaymentObservation.from_entity(payment, status=status)
    paid_at = observation.paid_at or now
    observation.paid_at = paid_at

    row = await payment_ledger.upsert_by_provider_payment_id(
        db, observation, subscription=subscription, via_webhook=via_webhook, now=now
    )
    if subscription is not None:
        await subscription_service.activate_from_payment(db, subscription, paid_at, payment.method)
    return row


async def handle_payment_captured(db: AsyncSession, event: PaymentCaptured, now: datetime) -> None:
    """Handle payment.captured — record payment and activate subscription."""
    payment = event.payment
    subscription = await _find_subscription(db, payment.subscription_id, event.name)
    await record_captured_payment(db, payment, subscription, via_webhook=True, now=now)
    logger.info(
        "Payment captured: %s (subscription %s, matched=%s)",
        payment.id,
        payment.subscription_id,
        subscription is not None,
    )


async def handle_payment_failed(db: AsyncSession, event: PaymentFailed, now: datetime) -> None:
    """Handle payment.failed — record failure and mark subscription past_due.

    A failure for a payment the ledger already holds as captured is stale and
    leaves the subscription alone.
    """
    payment = event.payment
    subscription = await _find_subscription(db, payment.subscription_id, event.name)
    write = await payment_ledger.record_observation(
        db,
        PaymentObservation.from_entity(payment, status="failed"),
        subscription=subscription,
        via_webhook=True,
        now=now,
    )
    if subscription is not None and write.payment.status == "failed":
        await subscription_service.transition(db, subscription, "past_due")
    logger.info(
        "Payment failed: %s (%s: %s)",
        payment.id,
        payment.error_code,
        payment.error_description,
    )


async def handle_subscription_activated(
    db: AsyncSession, event: SubscriptionActivated, now: datetime
) -> None:
    """Handle subscription.activated — start the period from Razorpay's current_start."""
    entity = event.subscription
    subscription = await _find_subscription(db, entity.id, event.name)
    if subscription is None:
        return

    start = from_unix(entity.current_start or entity.created_at) or now
    cycle_end = add_cycles(start)
    await subscription_service.transition(
        db,
        subscription,
        "active",
        period_start=start,
        period_end=cycle_end,
        next_billing_at=cycle_end,
    )
    logger.info("Subscription activated: %s", entity.id)


async def handle_subscription_charged(
    db: AsyncSession, event: SubscriptionCharged, now: datetime
) -> None:
    """Handle subscription.charged — a new recurring payment extends the period by one cycle.

    Razorpay also sends payment.captured for the same charge. A payment the
    ledger already holds as paid has had its cycle, so only the status and
    next billing time move.
    """
    entity = event.subscription
    subscription = await _find_subscription(db, entity.id, event.name)

    charge_time = now
    already_paid = False
    if event.payment is not None:
        observation = PaymentObservation.from_entity(event.payment, status="captured")
        observation.provider_subscription_id = observation.provider_subscription_id or entity.id
        observation.paid_at = observation.paid_at or now
        charge_time = observation.paid_at
        write = await payment_ledger.record_observation(
            db, observation, subscription=subscription, via_webhook=True, now=now
        )
        already_paid = write.already_paid

    if subscription is None:
        return

    period_end = None if already_paid else add_cycles(later_of(subscription.period_end, now))
    await subscription_service.transition(
        db,
        subscription,
        "active",
        period_end=period_end,
        next_billing_at=add_cycles(charge_time),
    )
    logger.info("Subscription charged (renewed): %s, new cycle=%s", entity.id, not already_paid)


async def handle_subscription_cancelled(
    db: AsyncSession, event: SubscriptionCancelled, now: datetime
) -> None:
    """Handle subscription.cancelled."""
    entity = event.subscription
    subscription = await _find_subscription(db, entity.id, event.name)
    if subscription is None:
        return

    await subscription_service.mark_cancelled(
        db,
        subscription,
        cancelled_at=from_unix(entity.cancelled_at) or now,
        reason=entity.cancel_reason or "Cancelled by provider",
    )


async def handle_subscription_paused(db: AsyncSession, event: SubscriptionPaused, now: datetime) -> None:
    """Handle subscription.paused — paused grants no access, so treat as cancelled."""
    entity = event.subscription
    subscription = await _find_subscription(db, entity.id, event.name)
    if subscription is None:
        return

    await subscription_service.transition(db, subscription, "cancelled")
    logger.info("Subscription paused: %s", entity.id)


async def handle_subscription_resumed(
    db: AsyncSession, event: SubscriptionResumed, now: datetime
) -> None:
    """Handle subscription.resumed — reactivate, starting a fresh cycle if the old one lapsed."""
    entity = event.subscription
    subscription = await _find_subscription(db, entity.id, event.name)
    if subscription is None:
        return

    if subscription.period_end is None or subscription.period_end < now:
        cycle_end = add_cycles(now)
        await subscription_service.transition(
            db,
            subscription,
            "active",
            period_start=now,
            period_end=cycle_end,
            next_billing_at=cycle_end,
        )
    else:
        await subscription_service.transition(db, subscription, "active")
    logger.info("Subscription resumed: %s", entity.id)


EventHandler = Callable[[AsyncSession, ProviderEvent, datetime], Awaitable[None]]

# Map event variants to handler functions
EVENT_HANDLERS: dict[type, EventHandler] = {
    PaymentCaptured: handle_payment_captured,
    PaymentFailed: handle_payment_failed,
    SubscriptionActivated: handle_subscription_activated,
    SubscriptionCharged: handle_subscription_charged,
    SubscriptionCancelled: handle_subscription_cancelled,
    SubscriptionPaused: handle_subscription_paused,
    SubscriptionResumed: handle_subscription_resumed,
}


def provider_ids(event: ProviderEvent) -> dict[str, str | None]:
    """Razorpay ids carried by an event, for failure logs and manual replay."""
    ids: dict[str, str | None] = {}
    payment: PaymentEntity | None = getattr(event, "payment", None)
    subscription: SubscriptionEntity | None = getattr(event, "subscription", None)
    if payment is not None:
        ids["payment_id"] = payment.id
        ids["subscription_id"] = payment.subscription_id
    if subscription is not None:
        ids["subscription_id"] = subscription.id
    return ids


async def apply_event(db: AsyncSession, event: ProviderEvent, now: datetime) -> bool:
    """Run the handler for ``event``. Returns False for events with no handler."""
    if isinstance(event, UnknownEvent):
        logger.info("Unhandled webhook event type: %s", event.name)
        return False
    handler = EVENT_HANDLERS[type(event)]
    await handler(db, event, now)
    return True
