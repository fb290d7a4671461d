"""Subscription record store — one row per user, never deleted.

Every write that touches the billing period goes through ``transition`` so
``period_end``/``next_billing_at`` only ever move forward; the explicit
``downgrade`` path is the single place that clears them.
"""

import logging
import uuid
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_billing.billing.errors import InvariantViolation
from subscription_billing.billing.periods import add_cycles
from subscription_billing.config import settings
from subscription_billing.database import insert_ignoring_conflicts
from subscription_billing.models.subscription import Subscription
from subscription_billing.models.user import User

logger = logging.getLogger(__name__)


async def get_by_user(db: AsyncSession, user_id: uuid.UUID) -> Subscription | None:
    """Look up the subscription owned by a local user."""
    result = await db.execute(select(Subscription).where(Subscription.user_id == user_id))
    return result.scalar_one_or_none()


async def get_by_provider_subscription_id(
    db: AsyncSession, provider_subscription_id: str
) -> Subscription | None:
    """Look up subscription by Razorpay subscription ID (used by webhooks)."""
    result = await db.execute(
        select(Subscription).where(Subscription.provider_subscription_id == provider_subscription_id)
    )
    return result.scalar_one_or_none()


async def _lock(db: AsyncSession, subscription: Subscription) -> Subscription:
    """Re-read the row under ``SELECT ... FOR UPDATE`` and refresh the instance."""
    result = await db.execute(
        select(Subscription)
        .where(Subscription.id == subscription.id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def create_trial(db: AsyncSession, user: User, now: datetime) -> Subscription:
    """Start the free trial for ``user`` unless a subscription already exists.

    Safe under concurrent first requests: the unique ``user_id`` makes every
    racer read back the same row.
    """
    trial_end = now + timedelta(days=settings.trial_days)
    stmt = insert_ignoring_conflicts(
        db,
        Subscription.__table__,
        "user_id",
        {
            "id": uuid.uuid4(),
            "user_id": user.id,
            "external_user_id": user.external_id,
            "status": "trial",
            "trial_start": now,
            "trial_end": trial_end,
            "trial_used": True,
            "notes": {},
            "created_at": now,
            "updated_at": now,
        },
    )
    result = await db.execute(stmt)
    if result.rowcount:
        logger.info("Started %d-day trial for user %s (ends %s)", settings.trial_days, user.id, trial_end)

    subscription = await db.execute(
        select(Subscription)
        .where(Subscription.user_id == user.id)
        .execution_options(populate_existing=True)
    )
    return subscription.scalar_one()


async def attach_provider_subscription(
    db: AsyncSession,
    subscription: Subscription,
    provider_subscription_id: str,
    provider_plan_id: str | None,
    provider_customer_id: str | None,
) -> Subscription:
    """Link a freshly created Razorpay subscription.

    Status becomes ``created`` and the period is cleared; nothing is granted
    until a payment is verified.
    """
    subscription = await _lock(db, subscription)
    subscription.provider_subscription_id = provider_subscription_id
    subscription.provider_plan_id = provider_plan_id
    if provider_customer_id:
        subscription.provider_customer_id = provider_customer_id
    subscription.status = "created"
    subscription.period_start = None
    subscription.period_end = None
    subscription.next_billing_at = None
    subscription.cancelled_at = None
    subscription.cancel_reason = None
    await db.flush()
    logger.info(
        "Linked Razorpay subscription %s to subscription %s (user %s)",
        provider_subscription_id,
        subscription.id,
        subscription.user_id,
    )
    return subscription


async def clear_provider_subscription(db: AsyncSession, subscription: Subscription) -> Subscription:
    """Drop a stale Razorpay linkage before a new checkout."""
    subscription = await _lock(db, subscription)
    logger.info(
        "Clearing stale Razorpay subscription %s from subscription %s",
        subscription.provider_subscription_id,
        subscription.id,
    )
    subscription.provider_subscription_id = None
    subscription.provider_plan_id = None
    await db.flush()
    return subscription


def _forward_only(field: str, subscription: Subscription, proposed: datetime) -> bool:
    current = getattr(subscription, field)
    if current is not None and proposed < current:
        violation = InvariantViolation(
            f"{field} would move backward",
            field=field,
            current=current,
            proposed=proposed,
        )
        logger.warning(
            "%s: keeping %s=%s on subscription %s (rejected %s)",
            violation.code,
            field,
            current,
            subscription.id,
            proposed,
        )
        return False
    return True


async def transition(
    db: AsyncSession,
    subscription: Subscription,
    status: str,
    *,
    period_start: datetime | None = None,
    period_end: datetime | None = None,
    next_billing_at: datetime | None = None,
    payment_method: str | None = None,
) -> Subscription:
    """Apply a status change and, optionally, a new billing period.

    ``period_end`` and ``next_billing_at`` never move backward: an earlier
    value is dropped with a warning and the rest of the transition still
    applies. ``period_start`` only moves together with an accepted
    ``period_end``.
    """
    subscription = await _lock(db, subscription)
    previous = subscription.status
    subscription.status = status

    if period_end is not None and _forward_only("period_end", subscription, period_end):
        subscription.period_end = period_end
        if period_start is not None:
            subscription.period_start = period_start
    if next_billing_at is not None and _forward_only("next_billing_at", subscription, next_billing_at):
        subscription.next_billing_at = next_billing_at
    if payment_method:
        subscription.payment_method = payment_method

    await db.flush()
    logger.info(
        "Subscription %s: %s -> %s (period_end=%s)",
        subscription.id,
        previous,
        status,
        subscription.period_end,
    )
    return subscription


async def downgrade(db: AsyncSession, subscription: Subscription, status: str) -> Subscription:
    """Remove an unproven paid period (drift correction)."""
    subscription = await _lock(db, subscription)
    previous = subscription.status
    subscription.status = status
    subscription.period_start = None
    subscription.period_end = None
    subscription.next_billing_at = None
    await db.flush()
    logger.warning(
        "Downgraded subscription %s (user %s): %s -> %s, period cleared",
        subscription.id,
        subscription.user_id,
        previous,
        status,
    )
    return subscription


async def expire_trial(db: AsyncSession, subscription: Subscription) -> Subscription:
    """Persist ``expired`` for a trial whose window has lapsed."""
    subscription = await _lock(db, subscription)
    if subscription.status == "trial":
        subscription.status = "expired"
        await db.flush()
        logger.info("Trial for user %s expired at %s", subscription.user_id, subscription.trial_end)
    return subscription


async def mark_cancelled(
    db: AsyncSession,
    subscription: Subscription,
    cancelled_at: datetime,
    reason: str,
) -> Subscription:
    subscription = await _lock(db, subscription)
    subscription.status = "cancelled"
    subscription.cancelled_at = cancelled_at
    subscription.cancel_reason = reason
    await db.flush()
    logger.info("Subscription %s cancelled: %s", subscription.id, reason)
    return subscription


async def activate_from_payment(
    db: AsyncSession,
    subscription: Subscription,
    paid_at: datetime,
    payment_method: str | None = None,
) -> Subscription:
    """Start (or confirm) a paid cycle from a verified payment."""
    cycle_end = add_cycles(paid_at)
    return await transition(
        db,
        subscription,
        "active",
        period_start=paid_at,
        period_end=cycle_end,
        next_billing_at=cycle_end,
        payment_method=payment_method,
    )
