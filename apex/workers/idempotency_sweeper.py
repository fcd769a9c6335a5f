"""
Idempotency sweeper - deletes expired idempotency keys.
Runs every IDEMPOTENCY_CLEANUP_INTERVAL_SECONDS (default hourly).
Safe to run alongside lookups and commits: it only touches expired rows.
"""
import asyncio
import logging
from datetime import datetime, timezone

from apex.services.idempotency import IdempotencyStore
from apex.utils.alerting import AlertType, send_alert
from apex.utils.redis_client import get_redis

logger = logging.getLogger(__name__)

HEARTBEAT_KEY = "apex:worker_health:idempotency_sweeper"
HEARTBEAT_TTL_SECONDS = 7200


async def _heartbeat() -> None:
    """Store heartbeat timestamp in Redis."""
    try:
        redis = await get_redis()
        await redis.set(
            HEARTBEAT_KEY,
            datetime.now(timezone.utc).isoformat(),
            ex=HEARTBEAT_TTL_SECONDS,
        )
    except Exception as e:
        logger.debug("Sweeper heartbeat failed: %s", str(e))


async def sweep_once(store: IdempotencyStore) -> int:
    """One cleanup pass. Returns the number of keys removed."""
    removed = await store.cleanup()
    if removed:
        logger.info("Idempotency sweeper removed %d expired keys", removed)
    return removed


async def run_idempotency_sweeper(store: IdempotencyStore, interval_seconds: int) -> None:
    """Main sweeper loop. Runs until cancelled."""
    logger.info("Idempotency sweeper started (every %ds)", interval_seconds)

    while True:
        try:
            await sweep_once(store)
        except Exception as e:
            logger.error("Idempotency sweeper error: %s", str(e), exc_info=True)
            await send_alert(AlertType.SWEEPER_FAILED, f"Idempotency sweep failed: {e}", severity="warning")

        await _heartbeat()
        await asyncio.sleep(interval_seconds)
