"""Payment ledger — one row per Razorpay payment id.

All writes funnel through ``record_observation``: an
``INSERT ... ON CONFLICT DO NOTHING`` claims the row, then a locked read merges
the new observation using a status rank so stale duplicates never regress a
payment (``captured`` is never rewritten to ``authorized``).
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_billing.billing.entities import PaymentEntity
from subscription_billing.billing.notes import Notes
from subscription_billing.billing.periods import from_unix
from subscription_billing.database import insert_ignoring_conflicts
from subscription_billing.models.payment import Payment
from subscription_billing.models.subscription import Subscription

logger = logging.getLogger(__name__)

STATUS_RANK = {
    "created": 0,
    "authorized": 1,
    "failed": 2,
    "captured": 3,
    "refunded": 4,
}

CORROBORATING_STATUSES = ("captured", "authorized")


@dataclass
class PaymentObservation:
    """What one source (webhook, checkout confirmation, sync) saw about a payment."""

    provider_payment_id: str
    status: str
    amount_minor_units: int | None = None
    currency: str | None = None
    method: str | None = None
    provider_order_id: str | None = None
    provider_subscription_id: str | None = None
    paid_at: datetime | None = None
    refunded_at: datetime | None = None
    failure_reason: str | None = None
    failure_code: str | None = None
    notes: Notes = field(default_factory=dict)

    @classmethod
    def from_entity(cls, entity: PaymentEntity, status: str | None = None) -> "PaymentObservation":
        """Build an observation from a Razorpay payment entity.

        ``status`` overrides the entity's own status (e.g. ``subscription.charged``
        implies the embedded payment is captured).
        """
        resolved = status or entity.status or "created"
        paid_ts = entity.captured_at or entity.created_at
        return cls(
            provider_payment_id=entity.id,
            status=resolved,
            amount_minor_units=entity.amount,
            currency=entity.currency,
            method=entity.method,
            provider_order_id=entity.order_id,
            provider_subscription_id=entity.subscription_id,
            paid_at=from_unix(paid_ts) if resolved in CORROBORATING_STATUSES else None,
            failure_reason=entity.error_description if resolved == "failed" else None,
            failure_code=entity.error_code if resolved == "failed" else None,
            notes=entity.notes,
        )


def _rank(status: str | None) -> int:
    return STATUS_RANK.get(status or "created", 0)


def _merge(payment: Payment, obs: PaymentObservation, now: datetime) -> None:
    if _rank(obs.status) >= _rank(payment.status):
        if payment.status != obs.status:
            logger.info(
                "Payment %s: %s -> %s",
                payment.provider_payment_id,
                payment.status,
                obs.status,
            )
        payment.status = obs.status
        if obs.status in CORROBORATING_STATUSES and obs.paid_at and payment.paid_at is None:
            payment.paid_at = obs.paid_at
        if obs.status == "refunded":
            payment.refunded_at = obs.refunded_at or payment.refunded_at or now
        if obs.status == "failed":
            payment.failure_reason = obs.failure_reason or payment.failure_reason
            payment.failure_code = obs.failure_code or payment.failure_code
    else:
        logger.info(
            "Payment %s: ignoring stale %s (already %s)",
            payment.provider_payment_id,
            obs.status,
            payment.status,
        )

    if obs.amount_minor_units and not payment.amount_minor_units:
        payment.amount_minor_units = obs.amount_minor_units
        payment.amount_major_units = Decimal(obs.amount_minor_units) / 100
    if obs.currency and not payment.currency:
        payment.currency = obs.currency
    if obs.method and not payment.method:
        payment.method = obs.method
    if obs.provider_order_id and not payment.provider_order_id:
        payment.provider_order_id = obs.provider_order_id
    if obs.provider_subscription_id and not payment.provider_subscription_id:
        payment.provider_subscription_id = obs.provider_subscription_id
    if obs.notes:
        payment.notes = {**obs.notes, **(payment.notes or {})}
    payment.processed_at = now


@dataclass
class LedgerWrite:
    """Result of recording an observation.

    ``previous_status`` is None when this observation created the row.
    """

    payment: Payment
    previous_status: str | None

    @property
    def already_paid(self) -> bool:
        return self.previous_status in CORROBORATING_STATUSES


async def record_observation(
    db: AsyncSession,
    observation: PaymentObservation,
    *,
    subscription: Subscription | None = None,
    via_webhook: bool = False,
    now: datetime,
) -> LedgerWrite:
    """Record an observation of a payment, creating the row on first sight.

    Concurrent callers with the same payment id converge on a single row, and
    the status each of them saw under the row lock is reported back.
    """
    amount = observation.amount_minor_units or 0
    stmt = insert_ignoring_conflicts(
        db,
        Payment.__table__,
        "provider_payment_id",
        {
            "id": uuid.uuid4(),
            "provider_payment_id": observation.provider_payment_id,
            "subscription_id": subscription.id if subscription else None,
            "user_id": subscription.user_id if subscription else None,
            "provider_order_id": observation.provider_order_id,
            "provider_subscription_id": observation.provider_subscription_id,
            "amount_minor_units": amount,
            "amount_major_units": Decimal(amount) / 100,
            "currency": observation.currency or "INR",
            "status": observation.status,
            "method": observation.method,
            "failure_reason": observation.failure_reason,
            "failure_code": observation.failure_code,
            "paid_at": observation.paid_at,
            "refunded_at": observation.refunded_at,
            "received_via_webhook": via_webhook,
            "processed_at": now,
            "notes": dict(observation.notes),
            "created_at": now,
            "updated_at": now,
        },
    )
    inserted = (await db.execute(stmt)).rowcount

    result = await db.execute(
        select(Payment)
        .where(Payment.provider_payment_id == observation.provider_payment_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    payment = result.scalar_one()

    previous_status = None
    if inserted:
        logger.info(
            "Recorded payment %s (%s, subscription %s)",
            payment.provider_payment_id,
            payment.status,
            observation.provider_subscription_id,
        )
    else:
        previous_status = payment.status
        _merge(payment, observation, now)

    if subscription is not None and payment.subscription_id is None:
        payment.subscription_id = subscription.id
        payment.user_id = subscription.user_id
    if via_webhook:
        payment.received_via_webhook = True

    await db.flush()
    return LedgerWrite(payment=payment, previous_status=previous_status)


async def upsert_by_provider_payment_id(
    db: AsyncSession,
    observation: PaymentObservation,
    *,
    subscription: Subscription | None = None,
    via_webhook: bool = False,
    now: datetime,
) -> Payment:
    write = await record_observation(
        db, observation, subscription=subscription, via_webhook=via_webhook, now=now
    )
    return write.payment


async def find_by_provider_subscription_id(
    db: AsyncSession,
    provider_subscription_id: str,
    statuses: tuple[str, ...] | None = None,
) -> list[Payment]:
    stmt = select(Payment).where(Payment.provider_subscription_id == provider_subscription_id)
    if statuses:
        stmt = stmt.where(Payment.status.in_(statuses))
    result = await db.execute(stmt.order_by(Payment.created_at.desc()))
    return list(result.scalars().all())


async def exists(db: AsyncSession, provider_payment_id: str) -> bool:
    result = await db.execute(
        select(Payment.id).where(Payment.provider_payment_id == provider_payment_id)
    )
    return result.first() is not None


async def has_corroborating_payment(db: AsyncSession, subscription: Subscription) -> bool:
    """True when a captured/authorized payment backs this subscription."""
    links = [Payment.subscription_id == subscription.id]
    if subscription.provider_subscription_id:
        links.append(Payment.provider_subscription_id == subscription.provider_subscription_id)
    result = await db.execute(
        select(Payment.id)
        .where(or_(*links), Payment.status.in_(CORROBORATING_STATUSES))
        .limit(1)
    )
    return result.first() is not None


async def link_orphans(db: AsyncSession, subscription: Subscription) -> int:
    """Attach ledger rows recorded before their subscription could be matched."""
    if not subscription.provider_subscription_id:
        return 0
    result = await db.execute(
        update(Payment)
        .where(
            Payment.provider_subscription_id == subscription.provider_subscription_id,
            Payment.subscription_id.is_(None),
        )
        .values(subscription_id=subscription.id, user_id=subscription.user_id)
        .execution_options(synchronize_session="fetch")
    )
    if result.rowcount:
        logger.info(
            "Linked %d orphaned payment(s) to subscription %s",
            result.rowcount,
            subscription.id,
        )
    return result.rowcount
