"""Provisioning — trials, checkout, and user-initiated cancellation.

Razorpay calls always come first; the local record is only written once
every call has succeeded, so a timeout leaves nothing half-done.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from subscription_billing.billing import razorpay_client
from subscription_billing.billing.access import BypassDecision
from subscription_billing.billing.errors import NoSubscriptionToCancel, ProviderRejected
from subscription_billing.billing.periods import to_unix
from subscription_billing.billing.plans import resolve_plan_id
from subscription_billing.config import settings
from subscription_billing.models.subscription import Subscription
from subscription_billing.models.user import User
from subscription_billing.services import payment_ledger, subscription_service

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutResult:
    has_free_access: bool = False
    already_active: bool = False
    subscription_id: str | None = None
    plan_id: str | None = None
    customer_id: str | None = None


async def ensure_trial(
    db: AsyncSession, user: User, bypass: BypassDecision, now: datetime
) -> Subscription | None:
    """Make sure the user has a subscription row, starting the trial on first sight.

    Users with free access never get a trial row.
    """
    if bypass.granted:
        return await subscription_service.get_by_user(db, user.id)
    return await subscription_service.create_trial(db, user, now)


async def _cancel_at_provider(provider_subscription_id: str) -> None:
    try:
        await razorpay_client.cancel_subscription(provider_subscription_id)
    except ProviderRejected as e:
        # Already cancelled (or never started); nothing left to undo there.
        logger.info("Razorpay subscription %s not cancellable: %s", provider_subscription_id, e)


async def begin_checkout(
    db: AsyncSession, user: User, bypass: BypassDecision, now: datetime
) -> CheckoutResult:
    """Create a Razorpay subscription for the user to pay in Checkout.

    Raises:
        ProviderUnavailable: A Razorpay call failed; the local record is unchanged.
    """
    if bypass.granted:
        logger.info("User %s has free access (%s); skipping checkout", user.id, bypass.rule)
        return CheckoutResult(has_free_access=True)

    subscription = await subscription_service.create_trial(db, user, now)

    if (
        subscription.status == "active"
        and subscription.period_end is not None
        and now < subscription.period_end
        and await payment_ledger.has_corroborating_payment(db, subscription)
    ):
        return CheckoutResult(
            already_active=True,
            subscription_id=subscription.provider_subscription_id,
            plan_id=subscription.provider_plan_id,
            customer_id=subscription.provider_customer_id,
        )

    stale_id = None
    if subscription.status == "created" and subscription.provider_subscription_id:
        stale_id = subscription.provider_subscription_id
        logger.info("Cancelling unpaid Razorpay subscription %s before new checkout", stale_id)
        await _cancel_at_provider(stale_id)

    plan_id = await resolve_plan_id()

    customer_id = subscription.provider_customer_id
    if not customer_id:
        customer_id = await razorpay_client.create_customer(
            name=user.name or user.email,
            email=user.email,
            external_user_id=user.external_id,
        )

    start_at = now + timedelta(seconds=settings.checkout_start_delay_seconds)
    remote = await razorpay_client.create_subscription(
        plan_id=plan_id,
        start_at=to_unix(start_at),
        total_count=settings.subscription_total_count,
        customer_id=customer_id,
        notes={"externalUserId": user.external_id, "userId": str(user.id)},
    )
    logger.info(
        "Created Razorpay subscription %s (status=%s) for user %s",
        remote.id,
        remote.status,
        user.id,
    )

    if stale_id:
        subscription = await subscription_service.clear_provider_subscription(db, subscription)
    await subscription_service.attach_provider_subscription(
        db,
        subscription,
        provider_subscription_id=remote.id,
        provider_plan_id=plan_id,
        provider_customer_id=customer_id,
    )
    return CheckoutResult(subscription_id=remote.id, plan_id=plan_id, customer_id=customer_id)


async def cancel_subscription(
    db: AsyncSession, user: User, reason: str | None, now: datetime
) -> Subscription:
    """Cancel the user's subscription at Razorpay and locally.

    Raises:
        NoSubscriptionToCancel: The user has no Razorpay subscription.
        ProviderUnavailable: Razorpay could not be reached; nothing changed.
    """
    subscription = await subscription_service.get_by_user(db, user.id)
    if subscription is None or not subscription.provider_subscription_id:
        raise NoSubscriptionToCancel("No active subscription found")

    await _cancel_at_provider(subscription.provider_subscription_id)

    return await subscription_service.mark_cancelled(
        db,
        subscription,
        cancelled_at=now,
        reason=reason or "User requested cancellation",
    )
