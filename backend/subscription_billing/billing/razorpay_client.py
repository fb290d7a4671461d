"""Async wrapper around the Razorpay SDK.

The SDK is synchronous (``requests``); every call runs in a worker thread and
is bounded by ``settings.provider_timeout_seconds``. Failures surface as
``ProviderUnavailable`` (network, timeout, 5xx) or ``ProviderRejected`` (4xx)
so callers can fail closed before touching local state.
"""

import asyncio
import functools
import logging
from typing import Any

import razorpay
import requests

from subscription_billing.billing.entities import PaymentEntity, SubscriptionEntity
from subscription_billing.billing.errors import ProviderRejected, ProviderUnavailable
from subscription_billing.config import settings

logger = logging.getLogger(__name__)


def get_razorpay_client() -> razorpay.Client:
    """Return an authenticated Razorpay client."""
    client = razorpay.Client(auth=(settings.razorpay_key_id, settings.razorpay_key_secret))
    client.set_app_details({"title": settings.app_name, "version": settings.app_version})
    return client


async def _call(operation: str, fn, *args: Any) -> Any:
    """Run a blocking SDK call off the event loop with a deadline."""
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(functools.partial(fn, *args)),
            timeout=settings.provider_timeout_seconds,
        )
    except asyncio.TimeoutError as e:
        logger.error("Razorpay %s timed out after %ss", operation, settings.provider_timeout_seconds)
        raise ProviderUnavailable(f"Razorpay {operation} timed out", operation=operation) from e
    except razorpay.errors.BadRequestError as e:
        logger.warning("Razorpay rejected %s: %s", operation, e)
        raise ProviderRejected(f"Razorpay rejected {operation}: {e}", operation=operation) from e
    except (razorpay.errors.ServerError, razorpay.errors.GatewayError, requests.RequestException) as e:
        logger.error("Razorpay %s failed: %s", operation, e)
        raise ProviderUnavailable(f"Razorpay {operation} failed: {e}", operation=operation) from e


async def create_customer(name: str, email: str, external_user_id: str) -> str:
    """Create (or reuse, by email) a Razorpay customer and return its id."""
    client = get_razorpay_client()
    logger.info("Creating Razorpay customer for user %s (%s)", external_user_id, email)
    customer = await _call(
        "customer.create",
        client.customer.create,
        {
            "name": name,
            "email": email,
            "fail_existing": "0",
            "notes": {"externalUserId": external_user_id},
        },
    )
    logger.info("Razorpay customer %s for user %s", customer["id"], external_user_id)
    return customer["id"]


async def create_plan(name: str, description: str, amount_minor_units: int, currency: str) -> dict:
    """Create the monthly plan."""
    client = get_razorpay_client()
    logger.info("Creating Razorpay plan %r for %s %s", name, amount_minor_units, currency)
    return await _call(
        "plan.create",
        client.plan.create,
        {
            "period": "monthly",
            "interval": 1,
            "item": {
                "name": name,
                "description": description,
                "amount": amount_minor_units,
                "currency": currency,
            },
        },
    )


async def fetch_plan(plan_id: str) -> dict:
    client = get_razorpay_client()
    return await _call("plan.fetch", client.plan.fetch, plan_id)


async def create_subscription(
    plan_id: str,
    start_at: int,
    total_count: int,
    customer_id: str | None = None,
    notes: dict[str, str] | None = None,
) -> SubscriptionEntity:
    """Create a subscription in Razorpay's ``created`` state."""
    client = get_razorpay_client()
    data: dict[str, Any] = {
        "plan_id": plan_id,
        "total_count": total_count,
        "start_at": start_at,
        "customer_notify": 1,
        "notes": notes or {},
    }
    if customer_id:
        data["customer_id"] = customer_id
    logger.info("Creating Razorpay subscription on plan %s starting at %s", plan_id, start_at)
    raw = await _call("subscription.create", client.subscription.create, data)
    return SubscriptionEntity.model_validate(raw)


async def cancel_subscription(subscription_id: str) -> SubscriptionEntity:
    """Cancel immediately (not at cycle end)."""
    client = get_razorpay_client()
    logger.info("Cancelling Razorpay subscription %s", subscription_id)
    raw = await _call(
        "subscription.cancel",
        client.subscription.cancel,
        subscription_id,
        {"cancel_at_cycle_end": 0},
    )
    return SubscriptionEntity.model_validate(raw)


async def fetch_subscription(subscription_id: str) -> SubscriptionEntity:
    """Fetch current subscription state from Razorpay."""
    client = get_razorpay_client()
    raw = await _call("subscription.fetch", client.subscription.fetch, subscription_id)
    return SubscriptionEntity.model_validate(raw)


async def fetch_payment(payment_id: str) -> PaymentEntity:
    client = get_razorpay_client()
    raw = await _call("payment.fetch", client.payment.fetch, payment_id)
    return PaymentEntity.model_validate(raw)


async def list_payments_for_subscription(subscription_id: str) -> list[PaymentEntity]:
    """All payments Razorpay associates with a subscription, newest first."""
    client = get_razorpay_client()
    raw = await _call(
        "payment.all",
        client.payment.all,
        {"subscription_id": subscription_id, "count": 100},
    )
    return [PaymentEntity.model_validate(item) for item in raw.get("items", [])]
