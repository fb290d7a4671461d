"""Checkout confirmation — the client reports a payment right after Razorpay Checkout."""

import logging
import uuid
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from subscription_billing.billing import razorpay_client
from subscription_billing.billing.errors import (
    InvalidSignature,
    PaymentVerificationFailed,
    SubscriptionNotFound,
)
from subscription_billing.billing.signatures import verify_checkout_signature
from subscription_billing.billing.webhooks import record_captured_payment
from subscription_billing.config import settings
from subscription_billing.models.subscription import Subscription
from subscription_billing.services import payment_ledger, subscription_service

logger = logging.getLogger(__name__)

VERIFIED_PAYMENT_STATUSES = ("captured", "authorized")


async def confirm_payment(
    db: AsyncSession,
    provider_payment_id: str,
    provider_subscription_id: str,
    signature: str,
    now: datetime,
    user_id: uuid.UUID | None = None,
) -> Subscription:
    """Verify a client-submitted checkout result and activate the subscription.

    The client is untrusted: the signature must verify against the key secret
    and the payment status is taken from Razorpay, never from the request.

    Raises:
        InvalidSignature: Signature mismatch or no key secret configured.
        SubscriptionNotFound: No local subscription carries this Razorpay id,
            or it belongs to someone other than ``user_id``.
        ProviderUnavailable: Razorpay could not be reached.
        PaymentVerificationFailed: Razorpay does not report the payment as paid.
    """
    if not verify_checkout_signature(
        provider_subscription_id,
        provider_payment_id,
        signature,
        settings.razorpay_key_secret,
    ):
        logger.warning(
            "Invalid checkout signature for payment %s (subscription %s)",
            provider_payment_id,
            provider_subscription_id,
        )
        raise InvalidSignature("Invalid payment signature")

    subscription = await subscription_service.get_by_provider_subscription_id(db, provider_subscription_id)
    if subscription is None:
        logger.warning("Confirmation for unknown Razorpay subscription %s", provider_subscription_id)
        raise SubscriptionNotFound("Subscription not found")
    if user_id is not None and subscription.user_id != user_id:
        logger.warning(
            "User %s tried to confirm payment %s for subscription %s owned by user %s",
            user_id,
            provider_payment_id,
            subscription.id,
            subscription.user_id,
        )
        raise SubscriptionNotFound("Subscription not found")

    payment = await razorpay_client.fetch_payment(provider_payment_id)
    logger.info("Fetched payment %s from Razorpay: status=%s", provider_payment_id, payment.status)
    if payment.status not in VERIFIED_PAYMENT_STATUSES:
        raise PaymentVerificationFailed(
            f"Payment {provider_payment_id} is {payment.status}, not captured",
            payment_status=payment.status,
        )

    payment = payment.model_copy(
        update={"subscription_id": payment.subscription_id or provider_subscription_id}
    )
    await payment_ledger.link_orphans(db, subscription)
    await record_captured_payment(db, payment, subscription, via_webhook=False, now=now)
    logger.info(
        "Checkout confirmed: payment %s activated subscription %s",
        provider_payment_id,
        subscription.id,
    )
    return subscription
