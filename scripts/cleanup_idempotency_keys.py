"""
Delete expired idempotency keys on demand (same pass the sweeper runs hourly).

Usage:
    python scripts/cleanup_idempotency_keys.py
    python scripts/cleanup_idempotency_keys.py --dry-run
"""
import argparse
import asyncio
import logging
from datetime import datetime, timezone

from sqlalchemy import func, select

from apex.config import get_settings
from apex.database import Database
from apex.models.idempotency_key import IdempotencyKey
from apex.services.idempotency import IdempotencyStore

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def main(dry_run: bool) -> None:
    database = Database.from_settings(get_settings())
    now = datetime.now(timezone.utc)
    try:
        if dry_run:
            async with database.session() as db:
                result = await db.execute(
                    select(func.count()).select_from(IdempotencyKey).where(IdempotencyKey.expires_at < now)
                )
                logger.info("%d expired idempotency keys would be deleted", result.scalar_one())
            return

        removed = await IdempotencyStore(database.session_factory).cleanup(now)
        logger.info("Deleted %d expired idempotency keys", removed)
    finally:
        await database.dispose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__.strip().splitlines()[0])
    parser.add_argument("--dry-run", action="store_true", help="count expired keys without deleting")
    args = parser.parse_args()
    asyncio.run(main(args.dry_run))
