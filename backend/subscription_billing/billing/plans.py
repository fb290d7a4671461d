"""The single monthly plan — configured amount and Razorpay plan id resolution."""

import logging
from dataclasses import dataclass
from decimal import Decimal

from subscription_billing.billing import razorpay_client
from subscription_billing.billing.errors import ProviderUnavailable
from subscription_billing.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MonthlyPlan:
    name: str
    description: str
    amount_minor_units: int  # paise (5900 = 59.00 INR)
    currency: str

    @property
    def amount_major_units(self) -> Decimal:
        return Decimal(self.amount_minor_units) / 100


MONTHLY_PLAN = MonthlyPlan(
    name=settings.plan_name,
    description=settings.plan_description,
    amount_minor_units=settings.plan_amount_minor_units,
    currency=settings.plan_currency,
)

# Plan created at runtime when RAZORPAY_PLAN_ID is unset; reused for the process lifetime.
_created_plan_id: str | None = None


async def resolve_plan_id(plan: MonthlyPlan = MONTHLY_PLAN) -> str:
    """Return the Razorpay plan id checkouts should subscribe to.

    Uses ``RAZORPAY_PLAN_ID`` when set (checking its amount against the
    configured one), otherwise creates the monthly plan once.
    """
    global _created_plan_id

    if settings.razorpay_plan_id:
        await _verify_plan_amount(settings.razorpay_plan_id, plan)
        return settings.razorpay_plan_id

    if _created_plan_id is None:
        created = await razorpay_client.create_plan(
            name=plan.name,
            description=plan.description,
            amount_minor_units=plan.amount_minor_units,
            currency=plan.currency,
        )
        _created_plan_id = created["id"]
        logger.warning(
            "Created Razorpay plan %s for %s %s; set RAZORPAY_PLAN_ID=%s to reuse it across restarts",
            _created_plan_id,
            plan.amount_major_units,
            plan.currency,
            _created_plan_id,
        )
    return _created_plan_id


async def _verify_plan_amount(plan_id: str, plan: MonthlyPlan) -> None:
    try:
        existing = await razorpay_client.fetch_plan(plan_id)
    except ProviderUnavailable as e:
        # Checkout can still proceed on the configured id.
        logger.warning("Could not verify Razorpay plan %s: %s", plan_id, e)
        return

    amount = (existing.get("item") or {}).get("amount")
    if amount != plan.amount_minor_units:
        logger.error(
            "Razorpay plan %s charges %s paise but %s is configured; remove RAZORPAY_PLAN_ID to create a matching plan",
            plan_id,
            amount,
            plan.amount_minor_units,
        )
