"""
Webhook signature validation - verify incoming webhooks are authentic.

Supported providers:
- Vapi: HMAC-SHA256 of the raw body via X-Vapi-Signature
- Stripe: Stripe-Signature header, verified with the stripe library
"""
import hashlib
import hmac
import logging

import stripe

from apex.config import get_settings

logger = logging.getLogger(__name__)


def validate_hmac_sha256(
    secret: str,
    signature: str,
    body: bytes,
    header_prefix: str = "sha256=",
) -> bool:
    """
    Validate generic HMAC-SHA256 webhook signature.
    Handles signatures with optional prefix (e.g., "sha256=...").
    Returns True if valid, False if invalid.
    """
    if not secret or not signature:
        return False

    sig = signature
    if sig.startswith(header_prefix):
        sig = sig[len(header_prefix):]

    try:
        expected = hmac.new(
            secret.encode("utf-8"),
            body,
            hashlib.sha256,
        ).hexdigest()
        return hmac.compare_digest(expected, sig.lower())
    except Exception as e:
        logger.error("HMAC-SHA256 validation error: %s", str(e))
        return False


def validate_stripe_signature(
    secret: str,
    signature: str,
    body: bytes,
    tolerance: int = 300,
) -> bool:
    """Validate a Stripe-Signature header (timestamped v1 HMAC scheme)."""
    if not secret or not signature:
        return False
    try:
        stripe.WebhookSignature.verify_header(
            body.decode("utf-8"), signature, secret, tolerance
        )
        return True
    except stripe.SignatureVerificationError as e:
        logger.warning("Stripe signature verification failed: %s", str(e))
        return False
    except UnicodeDecodeError:
        logger.warning("Stripe webhook body is not valid UTF-8")
        return False


def _missing_secret_allowed(provider: str, secret_name: str) -> bool:
    """
    Policy when a provider secret is not configured.
    Production rejects unless ALLOW_UNSIGNED_WEBHOOKS; other environments accept with a warning.
    """
    settings = get_settings()
    if settings.app_env == "production" and not settings.allow_unsigned_webhooks:
        logger.error(
            "Missing %s in production for provider '%s' - rejecting webhook",
            secret_name, provider,
        )
        return False
    logger.warning(
        "%s not set - accepting %s webhook without signature verification",
        secret_name, provider,
    )
    return True


def validate_webhook_signature(provider: str, headers, body: bytes) -> bool:
    """
    Validate a webhook signature for the given provider.
    `headers` is any case-insensitive mapping (Starlette Headers).
    """
    settings = get_settings()

    if provider == "vapi":
        secret = settings.vapi_webhook_secret
        if not secret:
            return _missing_secret_allowed(provider, "VAPI_WEBHOOK_SECRET")
        return validate_hmac_sha256(secret, headers.get("x-vapi-signature", ""), body)

    if provider == "stripe":
        secret = settings.stripe_webhook_secret
        if not secret:
            return _missing_secret_allowed(provider, "STRIPE_WEBHOOK_SECRET")
        return validate_stripe_signature(
            secret,
            headers.get("stripe-signature", ""),
            body,
            settings.stripe_signature_tolerance_seconds,
        )

    logger.warning("Unknown webhook provider '%s' - rejecting", provider)
    return False
