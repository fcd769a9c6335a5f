"""
Operator alerting - structured ERROR log plus an optional Discord/Slack webhook.

Rate limited per alert type: Redis SET NX EX cooldown, with an in-memory
fallback when Redis is unreachable.
"""
import logging
import time
from typing import Optional

import httpx

from apex.config import get_settings
from apex.utils.logging import get_correlation_id
from apex.utils.redis_client import get_redis

logger = logging.getLogger(__name__)

ALERT_COOLDOWN_SECONDS = 300

ALERT_COOLDOWN_OVERRIDES: dict[str, int] = {
    "idempotency_store_unavailable": 60,
}

_local_cooldowns: dict[str, float] = {}  # alert_type -> monotonic expiry


class AlertType:
    """Alert type constants."""
    CAMPAIGN_TICK_FAILED = "campaign_tick_failed"
    WEBHOOK_HANDLER_FAILED = "webhook_handler_failed"
    WEBHOOK_SIGNATURE_INVALID = "webhook_signature_invalid"
    IDEMPOTENCY_STORE_UNAVAILABLE = "idempotency_store_unavailable"
    TENANCY_VIOLATION = "tenancy_violation"
    PAYMENT_FAILED = "payment_failed"
    SWEEPER_FAILED = "sweeper_failed"


def _get_cooldown_seconds(alert_type: str) -> int:
    return ALERT_COOLDOWN_OVERRIDES.get(alert_type, ALERT_COOLDOWN_SECONDS)


async def send_alert(
    alert_type: str,
    message: str,
    correlation_id: Optional[str] = None,
    severity: str = "error",
    extra: Optional[dict] = None,
) -> None:
    """
    Send an alert through all configured channels.
    Rate-limited per alert type to prevent alert storms.
    """
    if not await _acquire_cooldown(alert_type):
        return

    cid = correlation_id or get_correlation_id()

    log_message = f"ALERT [{alert_type}]: {message}"
    if cid:
        log_message += f" (correlation_id={cid})"

    if severity == "critical":
        logger.critical(log_message)
    else:
        logger.error(log_message)

    await _send_webhook_alert(alert_type, message, severity, cid, extra)


async def _acquire_cooldown(alert_type: str) -> bool:
    """Atomic check-and-set of the per-type cooldown. True if the alert should go out."""
    cooldown = _get_cooldown_seconds(alert_type)

    try:
        redis = await get_redis()
        acquired = await redis.set(
            f"apex:alert_cooldown:{alert_type}", "1", nx=True, ex=cooldown
        )
        return bool(acquired)
    except Exception as e:
        logger.debug("Alert cooldown Redis check failed, using in-memory fallback: %s", str(e))
        now = time.monotonic()
        if now < _local_cooldowns.get(alert_type, 0):
            return False
        _local_cooldowns[alert_type] = now + cooldown
        return True


async def _send_webhook_alert(
    alert_type: str,
    message: str,
    severity: str,
    correlation_id: Optional[str],
    extra: Optional[dict],
) -> None:
    """Post the alert to ALERT_WEBHOOK_URL (Discord/Slack compatible body)."""
    webhook_url = get_settings().alert_webhook_url
    if not webhook_url:
        return

    prefix = {"critical": "[CRITICAL]", "error": "[ERROR]", "warning": "[WARNING]"}.get(
        severity, "[INFO]"
    )
    content = f"{prefix} **{alert_type}**\n{message}"
    if correlation_id:
        content += f"\n`correlation_id: {correlation_id}`"
    for key, val in (extra or {}).items():
        content += f"\n`{key}: {val}`"

    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            await client.post(webhook_url, json={"content": content, "text": content})
    except httpx.HTTPError as e:
        # Alert delivery must never take the caller down with it
        logger.warning("Failed to send webhook alert: %s", str(e))
