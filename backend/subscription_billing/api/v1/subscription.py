"""Subscription API endpoints — status, Razorpay checkout, confirmation, sync, cancel."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_billing.api.deps import (
    get_access_decision,
    get_bypass_policy,
    get_current_active_user,
    get_db,
)
from subscription_billing.billing.access import AccessBypassPolicy, AccessDecision
from subscription_billing.billing.errors import NoSubscriptionToSync
from subscription_billing.billing.periods import utcnow
from subscription_billing.billing.plans import MONTHLY_PLAN
from subscription_billing.config import settings
from subscription_billing.models.user import User
from subscription_billing.schemas.billing import (
    CancelRequest,
    CancelResponse,
    CheckoutResponse,
    ConfirmPaymentRequest,
    ConfirmPaymentResponse,
    SubscriptionStatusResponse,
    SyncResponse,
)
from subscription_billing.services import (
    access_service,
    confirmation_service,
    provisioning_service,
    reconciliation_service,
    subscription_service,
)

router = APIRouter(prefix="/api/v1/subscription", tags=["subscription"])


@router.get("/status", response_model=SubscriptionStatusResponse)
async def get_status(
    decision: AccessDecision = Depends(get_access_decision),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> SubscriptionStatusResponse:
    """Entitlement for the authenticated user; starts the trial on first call."""
    if decision.is_free_access:
        return SubscriptionStatusResponse(
            has_access=True,
            status=decision.status,
            reason_tag=decision.reason_tag,
            is_trial=False,
            is_free_access=True,
        )

    subscription = await subscription_service.get_by_user(db, current_user.id)
    return SubscriptionStatusResponse(
        has_access=decision.has_access,
        status=decision.status,
        reason_tag=decision.reason_tag,
        is_trial=decision.is_trial,
        trial_end=subscription.trial_end if subscription else None,
        period_end=subscription.period_end if subscription else None,
        next_billing_at=subscription.next_billing_at if subscription else None,
        provider_subscription_id=subscription.provider_subscription_id if subscription else None,
    )


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
    policy: AccessBypassPolicy = Depends(get_bypass_policy),
) -> CheckoutResponse:
    """Create a Razorpay subscription for Checkout."""
    bypass = access_service.bypass_for(current_user, policy)
    result = await provisioning_service.begin_checkout(db, current_user, bypass, utcnow())

    if result.has_free_access:
        return CheckoutResponse(has_free_access=True)
    if result.already_active:
        return CheckoutResponse(
            already_active=True,
            subscription_id=result.subscription_id,
            plan_id=result.plan_id,
            customer_id=result.customer_id,
        )
    return CheckoutResponse(
        subscription_id=result.subscription_id,
        plan_id=result.plan_id,
        customer_id=result.customer_id,
        key_id=settings.razorpay_key_id,
        amount=float(MONTHLY_PLAN.amount_major_units),
        currency=MONTHLY_PLAN.currency,
    )


@router.post("/confirm", response_model=ConfirmPaymentResponse)
async def confirm_payment(
    body: ConfirmPaymentRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> ConfirmPaymentResponse:
    """Verify the Razorpay Checkout result and activate the subscription."""
    subscription = await confirmation_service.confirm_payment(
        db,
        provider_payment_id=body.provider_payment_id,
        provider_subscription_id=body.provider_subscription_id,
        signature=body.signature,
        now=utcnow(),
        user_id=current_user.id,
    )
    return ConfirmPaymentResponse(subscription_status=subscription.status)


@router.post("/sync", response_model=SyncResponse)
async def sync_status(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> SyncResponse:
    """Reconcile the user's subscription against Razorpay."""
    subscription = await subscription_service.get_by_user(db, current_user.id)
    if subscription is None:
        raise NoSubscriptionToSync("No subscription found")

    subscription = await reconciliation_service.sync_subscription(db, subscription, utcnow())
    return SyncResponse(status=subscription.status)


@router.post("/cancel", response_model=CancelResponse)
async def cancel_subscription(
    body: CancelRequest | None = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> CancelResponse:
    """Cancel the user's Razorpay subscription immediately."""
    reason = body.reason if body else None
    await provisioning_service.cancel_subscription(db, current_user, reason, utcnow())
    return CancelResponse()
