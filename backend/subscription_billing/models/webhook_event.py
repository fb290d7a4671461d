"""Processed webhook events — de-duplicates Razorpay redeliveries."""

from datetime import datetime

from sqlalchemy import String, func
from sqlalchemy.orm import Mapped, mapped_column

from subscription_billing.database import Base, UUIDPrimaryKeyMixin


class WebhookEvent(UUIDPrimaryKeyMixin, Base):
    """Razorpay event id recorded once its handler has been applied."""

    __tablename__ = "webhook_events"

    provider_event_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    processed_at: Mapped[datetime] = mapped_column(server_default=func.now())

    def __repr__(self) -> str:
        return f"<WebhookEvent {self.provider_event_id} ({self.event_type})>"
