"""Payment model — ledger of every Razorpay payment the system has observed."""

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import JSON, Boolean, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from subscription_billing.database import Base, TimestampMixin, UUIDPrimaryKeyMixin

PAYMENT_STATUSES = ("created", "authorized", "captured", "refunded", "failed")


class Payment(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """One row per ``provider_payment_id``; updated in place, never deleted.

    ``subscription_id``/``user_id`` may be null when a webhook arrives before the
    owning subscription can be matched; they are back-filled later.
    """

    __tablename__ = "payments"

    # Idempotency key for every write path
    provider_payment_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)

    subscription_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True, index=True
    )
    user_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )

    # Denormalized provider ids for lookups without a join
    provider_order_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    provider_subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)

    amount_minor_units: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    amount_major_units: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")

    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    method: Mapped[str | None] = mapped_column(String(50), nullable=True)  # card, upi, netbanking, ...
    failure_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    failure_code: Mapped[str | None] = mapped_column(String(100), nullable=True)

    paid_at: Mapped[datetime | None] = mapped_column(nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(nullable=True)

    received_via_webhook: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default="false", default=False
    )
    processed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    notes: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    def __repr__(self) -> str:
        return f"<Payment(provider_payment_id={self.provider_payment_id}, status={self.status})>"
