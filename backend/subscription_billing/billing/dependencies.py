"""Access gating dependencies for routes that need an active entitlement."""

import logging

from fastapi import BackgroundTasks, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_billing.auth.dependencies import get_current_active_user
from subscription_billing.billing.access import AccessBypassPolicy, AccessDecision
from subscription_billing.billing.periods import utcnow
from subscription_billing.config import settings
from subscription_billing.database import get_db
from subscription_billing.models.user import User
from subscription_billing.services import access_service, provisioning_service
from subscription_billing.services.reconciliation_service import run_drift_check

logger = logging.getLogger(__name__)


def get_bypass_policy() -> AccessBypassPolicy:
    """Free-access rules built from settings; override in tests."""
    return AccessBypassPolicy.from_settings(settings)


async def get_access_decision(
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_active_user),
    policy: AccessBypassPolicy = Depends(get_bypass_policy),
) -> AccessDecision:
    """Resolve the caller's entitlement, starting their trial on first sight."""
    now = utcnow()
    bypass = access_service.bypass_for(user, policy)
    subscription = await provisioning_service.ensure_trial(db, user, bypass, now)
    decision = await access_service.resolve_access(db, user, subscription, bypass, now)
    if decision.needs_drift_check and subscription is not None:
        background_tasks.add_task(run_drift_check, subscription.id)
    return decision


async def require_access(decision: AccessDecision = Depends(get_access_decision)) -> AccessDecision:
    """Raise 402 unless the caller has free, trial, or corroborated paid access."""
    if not decision.has_access:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={
                "message": "An active subscription is required.",
                "reasonTag": decision.reason_tag,
                "status": decision.status,
                "upgrade_url": "/api/v1/subscription/checkout",
            },
        )
    return decision
