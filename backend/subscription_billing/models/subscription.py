"""Subscription model — trial and paid entitlement state per user."""

import uuid
from datetime import datetime

from sqlalchemy import JSON, Boolean, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from subscription_billing.database import Base, TimestampMixin, UUIDPrimaryKeyMixin

SUBSCRIPTION_STATUSES = ("trial", "created", "active", "past_due", "cancelled", "expired")


class Subscription(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Tracks a user's trial window, Razorpay linkage, and billing period.

    ``status == "active"`` is advisory: paid access additionally requires a
    captured or authorized row in the payment ledger.
    """

    __tablename__ = "subscriptions"

    # One subscription per user
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
        index=True,
    )
    external_user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    status: Mapped[str] = mapped_column(String(50), nullable=False, server_default="trial")

    # Trial window, written once at creation
    trial_start: Mapped[datetime | None] = mapped_column(nullable=True)
    trial_end: Mapped[datetime | None] = mapped_column(nullable=True)
    trial_used: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default="false", default=False)

    # Razorpay identifiers
    provider_subscription_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    provider_plan_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    provider_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Billing period
    period_start: Mapped[datetime | None] = mapped_column(nullable=True)
    period_end: Mapped[datetime | None] = mapped_column(nullable=True)
    next_billing_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Cancellation
    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    payment_method: Mapped[str | None] = mapped_column(String(50), nullable=True)
    notes: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    # Relationships
    user: Mapped["User"] = relationship(back_populates="subscription", lazy="selectin")  # type: ignore[name-defined]  # noqa: F821

    def __repr__(self) -> str:
        return f"<Subscription(id={self.id}, user_id={self.user_id}, status={self.status})>"
