"""Reconciliation — repair drift between local subscriptions and Razorpay.

Every Razorpay read happens before any local write, so a timeout leaves the
record untouched. Running a sync twice, or concurrently with a webhook,
converges on the same state.
"""

import logging
import uuid
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from subscription_billing.billing import razorpay_client
from subscription_billing.billing.entities import PaymentEntity
from subscription_billing.billing.periods import from_unix
from subscription_billing.billing.webhooks import record_captured_payment
from subscription_billing.database import async_session_factory
from subscription_billing.models.subscription import Subscription
from subscription_billing.services import payment_ledger, subscription_service

logger = logging.getLogger(__name__)

# Razorpay subscription status -> what it means locally
ENTITLED = "entitled"
PENDING = "pending"

PROVIDER_STATUS_MAP: dict[str, str] = {
    "active": ENTITLED,
    "authenticated": ENTITLED,
    "created": PENDING,
    "pending": PENDING,
    "halted": "past_due",
    "paused": "cancelled",
    "cancelled": "cancelled",
    "completed": "cancelled",
    "expired": "cancelled",
}


def _first_paid(payments: list[PaymentEntity]) -> PaymentEntity | None:
    for payment in payments:
        if payment.id and payment.status in payment_ledger.CORROBORATING_STATUSES:
            return payment
    return None


async def correct_drift(db: AsyncSession, subscription: Subscription) -> Subscription:
    """Downgrade an ``active`` record that no ledger payment backs.

    Local-only: goes to ``created`` when a Razorpay subscription is linked
    (the user can still pay it), otherwise to ``expired``.
    """
    if subscription.status != "active":
        return subscription
    if await payment_ledger.has_corroborating_payment(db, subscription):
        return subscription
    target = "created" if subscription.provider_subscription_id else "expired"
    return await subscription_service.downgrade(db, subscription, target)


async def sync_subscription(db: AsyncSession, subscription: Subscription, now: datetime) -> Subscription:
    """Bring one subscription in line with Razorpay's view of it.

    Raises:
        ProviderUnavailable: Razorpay could not be read; nothing was changed.
    """
    if not subscription.provider_subscription_id:
        logger.info("Subscription %s has no Razorpay link; local drift check only", subscription.id)
        return await correct_drift(db, subscription)

    provider_id = subscription.provider_subscription_id
    remote = await razorpay_client.fetch_subscription(provider_id)
    meaning = PROVIDER_STATUS_MAP.get(remote.status or "")
    logger.info(
        "Sync %s: Razorpay status=%s (%s), local status=%s",
        provider_id,
        remote.status,
        meaning or "unknown",
        subscription.status,
    )

    if meaning is None:
        logger.warning("Unknown Razorpay subscription status %r for %s; leaving as is", remote.status, provider_id)
        return subscription

    corroborated = await payment_ledger.has_corroborating_payment(db, subscription)

    if meaning in (ENTITLED, PENDING):
        if not corroborated:
            paid = _first_paid(await razorpay_client.list_payments_for_subscription(provider_id))
            if paid is not None:
                paid = paid.model_copy(update={"subscription_id": paid.subscription_id or provider_id})
                await payment_ledger.link_orphans(db, subscription)
                await record_captured_payment(db, paid, subscription, via_webhook=False, now=now)
                logger.info("Sync %s: recovered payment %s from Razorpay", provider_id, paid.id)
                return subscription
            return await correct_drift(db, subscription)
        if subscription.status != "active":
            # Paid locally but the status never caught up.
            payments = await payment_ledger.find_by_provider_subscription_id(
                db, provider_id, payment_ledger.CORROBORATING_STATUSES
            )
            paid_at = payments[0].paid_at if payments and payments[0].paid_at else now
            return await subscription_service.activate_from_payment(db, subscription, paid_at)
        return subscription

    if subscription.status != meaning:
        subscription = await subscription_service.transition(db, subscription, meaning)
    if meaning == "cancelled" and subscription.cancelled_at is None:
        subscription = await subscription_service.mark_cancelled(
            db,
            subscription,
            cancelled_at=from_unix(remote.cancelled_at) or now,
            reason=remote.cancel_reason or f"Razorpay status {remote.status}",
        )
    return subscription


async def run_drift_check(subscription_id: uuid.UUID) -> None:
    """Background task: re-check one subscription in its own session."""
    async with async_session_factory() as db:
        try:
            subscription = await db.get(Subscription, subscription_id)
            if subscription is None:
                return
            await correct_drift(db, subscription)
            await db.commit()
        except Exception:
            await db.rollback()
            logger.exception("Background drift check failed for subscription %s", subscription_id)
