"""Entitlement resolution — wraps the pure access policy with its ledger read."""

import logging
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_billing.billing.access import (
    AccessBypassPolicy,
    AccessDecision,
    AccessIdentity,
    BypassDecision,
    derived_status,
    evaluate_access,
)
from subscription_billing.config import settings
from subscription_billing.models.subscription import Subscription
from subscription_billing.models.user import User
from subscription_billing.services import payment_ledger, subscription_service

logger = logging.getLogger(__name__)


def identity_for(user: User) -> AccessIdentity:
    return AccessIdentity(
        external_id=user.external_id,
        email=user.email,
        provider_configured=settings.provider_configured,
    )


def bypass_for(user: User, policy: AccessBypassPolicy) -> BypassDecision:
    return policy.evaluate(identity_for(user))


async def _corroborate(db: AsyncSession, subscription: Subscription) -> bool | None:
    if subscription.status != "active":
        return False
    try:
        return await payment_ledger.has_corroborating_payment(db, subscription)
    except SQLAlchemyError:
        logger.exception("Ledger lookup failed for subscription %s", subscription.id)
        return None


async def resolve_access(
    db: AsyncSession,
    user: User,
    subscription: Subscription | None,
    bypass: BypassDecision,
    now: datetime,
) -> AccessDecision:
    """Evaluate access and write back what the evaluation proves.

    An ``active`` record in its period with no backing payment is downgraded
    on the spot; a lapsed trial is persisted as ``expired``. When the ledger
    cannot be read, the decision denies access and asks for a drift check.
    """
    if bypass.granted or subscription is None:
        return evaluate_access(subscription, bypass, now, corroborated=False)

    corroborated = await _corroborate(db, subscription)
    decision = evaluate_access(subscription, bypass, now, corroborated)

    if (
        corroborated is False
        and subscription.status == "active"
        and subscription.period_end is not None
        and now < subscription.period_end
    ):
        logger.warning(
            "Subscription %s (user %s) is active without a captured payment",
            subscription.id,
            user.id,
        )
        target = "created" if subscription.provider_subscription_id else "expired"
        subscription = await subscription_service.downgrade(db, subscription, target)
        decision = evaluate_access(subscription, bypass, now, corroborated=False)
    elif subscription.status == "trial" and derived_status(subscription, now) == "expired":
        subscription = await subscription_service.expire_trial(db, subscription)

    return decision
