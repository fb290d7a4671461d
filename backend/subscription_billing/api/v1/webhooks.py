"""Razorpay webhook endpoint — receives and applies Razorpay events."""

import json
import logging

from fastapi import APIRouter, Request
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_billing.billing.errors import MalformedPayload, SignatureInvalid
from subscription_billing.billing.events import IncompleteEvent, parse_event
from subscription_billing.billing.periods import utcnow
from subscription_billing.billing.signatures import verify_webhook_signature
from subscription_billing.billing.webhooks import apply_event, provider_ids
from subscription_billing.config import settings
from subscription_billing.database import async_session_factory
from subscription_billing.models.webhook_event import WebhookEvent
from subscription_billing.schemas.billing import WebhookAck

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])

SIGNATURE_HEADERS = ("x-provider-signature", "x-razorpay-signature")
EVENT_ID_HEADER = "x-razorpay-event-id"


def _signature_header(request: Request) -> str | None:
    for name in SIGNATURE_HEADERS:
        value = request.headers.get(name)
        if value:
            return value
    return None


def _verify(payload: bytes, signature: str | None) -> None:
    secret = settings.razorpay_webhook_secret
    if secret:
        if not verify_webhook_signature(payload, signature, secret):
            logger.warning("Webhook signature verification failed")
            raise SignatureInvalid("Invalid webhook signature")
        return
    if settings.is_production:
        logger.error("RAZORPAY_WEBHOOK_SECRET is not set; rejecting webhook in production")
        raise SignatureInvalid("Webhook secret not configured")
    logger.warning(
        "RAZORPAY_WEBHOOK_SECRET is not set; skipping signature verification (%s)",
        settings.environment,
    )


async def _already_processed(db: AsyncSession, event_id: str) -> bool:
    result = await db.execute(select(WebhookEvent.id).where(WebhookEvent.provider_event_id == event_id))
    return result.first() is not None


@router.post("/razorpay", response_model=WebhookAck)
async def razorpay_webhook(request: Request) -> WebhookAck:
    """Receive a Razorpay webhook.

    Answers 401 on a bad signature and 400 on an unparsable body. Once an
    event has been dispatched the answer is always 200, even if the handler
    failed, so Razorpay does not retry-storm; failures are logged with the
    ids needed to replay them.
    """
    # 1. Read raw body (MUST be raw bytes for signature verification)
    payload = await request.body()

    # 2. Verify signature
    _verify(payload, _signature_header(request))

    # 3. Parse
    try:
        envelope = json.loads(payload)
    except ValueError as e:
        logger.warning("Invalid webhook payload")
        raise MalformedPayload("Invalid JSON payload") from e

    event_name = envelope.get("event") if isinstance(envelope, dict) else None
    try:
        event = parse_event(envelope)
    except IncompleteEvent as e:
        logger.warning("Acknowledging incomplete webhook: %s", e)
        return WebhookAck(event=event_name)

    event_id = request.headers.get(EVENT_ID_HEADER)
    logger.info("Processing webhook event: %s (id=%s)", event.name, event_id)

    # 4. Dispatch in its own session (webhook has no auth context)
    async with async_session_factory() as db:
        try:
            if event_id and await _already_processed(db, event_id):
                logger.info("Webhook event %s already processed; skipping", event_id)
                return WebhookAck(event=event.name, duplicate=True)
            handled = await apply_event(db, event, utcnow())
            if handled and event_id:
                db.add(WebhookEvent(provider_event_id=event_id, event_type=event.name))
            await db.commit()
        except IntegrityError:
            await db.rollback()
            logger.warning(
                "Concurrent delivery of webhook event %s (%s) lost the race; rolled back",
                event_id,
                event.name,
            )
        except Exception:
            await db.rollback()
            logger.exception(
                "Error processing webhook event %s (id=%s, %s)",
                event.name,
                event_id,
                provider_ids(event),
            )

    # 5. Acknowledge
    return WebhookAck(event=event.name)
