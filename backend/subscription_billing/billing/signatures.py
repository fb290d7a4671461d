"""HMAC-SHA256 signatures Razorpay attaches to webhooks and checkout callbacks."""

import hashlib
import hmac


def sign(secret: str, message: bytes | str) -> str:
    """Hex HMAC-SHA256 of ``message`` keyed with ``secret``."""
    if isinstance(message, str):
        message = message.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_webhook_signature(payload_body: bytes, signature: str | None, secret: str) -> bool:
    """Check the ``X-Razorpay-Signature`` header against the raw request body.

    Must be given the unparsed body bytes; re-serialized JSON will not match.
    """
    if not secret or not signature:
        return False
    return hmac.compare_digest(sign(secret, payload_body), signature)


def checkout_signature_message(provider_subscription_id: str, provider_payment_id: str) -> str:
    return f"{provider_subscription_id}|{provider_payment_id}"


def verify_checkout_signature(
    provider_subscription_id: str,
    provider_payment_id: str,
    signature: str | None,
    secret: str,
) -> bool:
    """Check the signature Razorpay Checkout hands the client after payment."""
    if not secret or not signature:
        return False
    expected = sign(secret, checkout_signature_message(provider_subscription_id, provider_payment_id))
    return hmac.compare_digest(expected, signature)
