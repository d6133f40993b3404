"""
Webhook signature validation - verify incoming Stripe webhooks are authentic.

Stripe signs "<timestamp>.<raw body>" with HMAC-SHA256 and sends it as
Stripe-Signature: t=<ts>,v1=<hex>[,v1=<hex>...]. Verification MUST run on the
exact raw bytes received; a re-serialized JSON body will not match.
"""
import json
import logging
from typing import Optional

from paywall.exceptions import WebhookConfigurationError, WebhookSignatureError

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_SECONDS = 300


def verify_stripe_signature(
    payload: bytes,
    sig_header: Optional[str],
    secret: str,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
) -> dict:
    """
    Verify a Stripe webhook and return the parsed event body.

    Raises WebhookSignatureError on a missing/malformed/mismatched/stale header
    and WebhookConfigurationError when no secret is configured. Nothing is
    parsed until the signature has been checked.
    """
    if not sig_header:
        raise WebhookSignatureError("Missing stripe-signature header")
    if not secret:
        raise WebhookConfigurationError("Webhook secret not configured")

    import stripe

    try:
        body = payload.decode("utf-8")
    except UnicodeDecodeError as e:
        raise WebhookSignatureError("Payload is not valid UTF-8") from e

    try:
        stripe.WebhookSignature.verify_header(body, sig_header, secret, tolerance)
    except stripe.SignatureVerificationError as e:
        logger.warning("Stripe webhook signature verification failed: %s", str(e))
        raise WebhookSignatureError("Invalid signature") from e

    try:
        event = json.loads(body)
    except ValueError as e:
        logger.warning("Signed Stripe webhook body is not valid JSON")
        raise WebhookSignatureError("Invalid payload") from e

    if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
        raise WebhookSignatureError("Invalid payload")

    return event
