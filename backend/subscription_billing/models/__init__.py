"""SQLAlchemy models for the billing core.

All models are imported here so that Alembic's autogenerate can discover
them via Base.metadata. If you add a new model, import it in this file.
"""

from subscription_billing.models.payment import Payment
from subscription_billing.models.subscription import Subscription
from subscription_billing.models.user import User
from subscription_billing.models.webhook_event import WebhookEvent

__all__ = [
    "Payment",
    "Subscription",
    "User",
    "WebhookEvent",
]
