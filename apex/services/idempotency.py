"""
Idempotency store - remembers the outcome of a request under a caller-chosen key.

A key moves through two states:
- reserved: row inserted by the first request to see a miss, response_status NULL
- committed: response_status/response_body set, immutable until it expires

The unique constraint on `key` decides which of N concurrent callers wins the
reservation. Losers re-read the row and either poll for the winner's response
or report IN_PROGRESS. Expired rows are treated as absent everywhere.
"""
import asyncio
import enum
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Union

from sqlalchemy import and_, delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from apex.models.idempotency_key import IdempotencyKey

logger = logging.getLogger(__name__)

DEFAULT_RESERVATION_TTL = timedelta(minutes=5)
DEFAULT_RESPONSE_TTL = timedelta(hours=24)

# Bound on reserve/re-read cycles when a key keeps expiring underneath us
_MAX_RESERVE_ATTEMPTS = 3


class IdempotencyStoreError(Exception):
    """Storage failure in the idempotency store. Callers must fail closed."""


class LookupState(str, enum.Enum):
    HIT = "hit"
    CONFLICT = "conflict"
    MISS = "miss"
    IN_PROGRESS = "in_progress"


@dataclass(frozen=True)
class IdempotencyLookup:
    state: LookupState
    response_status: Optional[int] = None
    response_body: Optional[dict] = None


def compute_request_hash(method: str, path: str, body: Union[bytes, str]) -> str:
    """SHA-256 hex digest of "{METHOD}:{path}:{body}"."""
    if isinstance(body, str):
        body = body.encode("utf-8")
    raw = f"{method.upper()}:{path}:".encode("utf-8") + body
    return hashlib.sha256(raw).hexdigest()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IdempotencyStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        reservation_ttl: timedelta = DEFAULT_RESERVATION_TTL,
        poll_interval: float = 0.1,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.session_factory = session_factory
        self.reservation_ttl = reservation_ttl
        self.poll_interval = poll_interval
        self.clock = clock

    async def check_or_reserve(
        self,
        key: str,
        request_hash: str,
        wait: float = 0.0,
    ) -> IdempotencyLookup:
        """
        Look up `key` and reserve it when absent.

        MISS means the caller now holds the reservation and must later call
        commit() or release(). With `wait` > 0 a caller that finds the key
        reserved by someone else polls until the winner commits or the wait
        elapses, returning IN_PROGRESS in the latter case.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(wait, 0.0)

        while True:
            lookup = await self._lookup_or_reserve(key, request_hash)
            if lookup.state != LookupState.IN_PROGRESS:
                return lookup
            if loop.time() >= deadline:
                logger.info(
                    "Idempotency key still in flight after %.1fs", wait,
                    extra={"idempotency_key": key},
                )
                return lookup
            await asyncio.sleep(self.poll_interval)

    async def _lookup_or_reserve(self, key: str, request_hash: str) -> IdempotencyLookup:
        try:
            for _ in range(_MAX_RESERVE_ATTEMPTS):
                row = await self._get_live(key)
                if row is None:
                    if await self._try_reserve(key, request_hash):
                        return IdempotencyLookup(LookupState.MISS)
                    # Lost the insert race - re-read the winner's row
                    continue
                return self._classify(row, request_hash)
        except SQLAlchemyError as e:
            raise IdempotencyStoreError(f"Idempotency lookup failed: {e}") from e
        raise IdempotencyStoreError(f"Could not reserve idempotency key {key!r}")

    @staticmethod
    def _classify(row: IdempotencyKey, request_hash: str) -> IdempotencyLookup:
        if row.request_hash != request_hash:
            return IdempotencyLookup(LookupState.CONFLICT)
        if row.is_reserved:
            return IdempotencyLookup(LookupState.IN_PROGRESS)
        return IdempotencyLookup(
            LookupState.HIT,
            response_status=row.response_status,
            response_body=row.response_body,
        )

    async def _get_live(self, key: str) -> Optional[IdempotencyKey]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(IdempotencyKey).where(
                    and_(
                        IdempotencyKey.key == key,
                        IdempotencyKey.expires_at > self.clock(),
                    )
                )
            )
            return result.scalar_one_or_none()

    async def _try_reserve(self, key: str, request_hash: str) -> bool:
        now = self.clock()
        async with self.session_factory() as session:
            try:
                # An expired row still holds the unique key - clear it first
                await session.execute(
                    delete(IdempotencyKey).where(
                        and_(
                            IdempotencyKey.key == key,
                            IdempotencyKey.expires_at <= now,
                        )
                    )
                )
                session.add(IdempotencyKey(
                    key=key,
                    request_hash=request_hash,
                    created_at=now,
                    expires_at=now + self.reservation_ttl,
                ))
                await session.commit()
                return True
            except IntegrityError:
                await session.rollback()
                return False

    async def commit(
        self,
        key: str,
        request_hash: str,
        response_status: int,
        response_body: Optional[dict],
        ttl: timedelta = DEFAULT_RESPONSE_TTL,
    ) -> bool:
        """
        Store the final response for `key`.

        Converts the caller's reservation into a committed row. Without a
        reservation (expired or never taken) the row is inserted instead.
        An existing committed row is never overwritten. Returns True if
        this call stored the response.
        """
        now = self.clock()
        values = {
            "response_status": response_status,
            "response_body": response_body,
            "completed_at": now,
            "expires_at": now + ttl,
        }
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    update(IdempotencyKey)
                    .where(
                        and_(
                            IdempotencyKey.key == key,
                            IdempotencyKey.request_hash == request_hash,
                            IdempotencyKey.response_status.is_(None),
                        )
                    )
                    .values(**values)
                )
                if result.rowcount == 1:
                    await session.commit()
                    return True

                await session.execute(
                    delete(IdempotencyKey).where(
                        and_(
                            IdempotencyKey.key == key,
                            IdempotencyKey.expires_at <= now,
                        )
                    )
                )
                session.add(IdempotencyKey(
                    key=key, request_hash=request_hash, created_at=now, **values
                ))
                try:
                    await session.commit()
                    return True
                except IntegrityError:
                    await session.rollback()
                    logger.warning(
                        "Idempotency key already held by another request - response not cached",
                        extra={"idempotency_key": key},
                    )
                    return False
        except SQLAlchemyError as e:
            raise IdempotencyStoreError(f"Idempotency commit failed: {e}") from e

    async def release(self, key: str, request_hash: str) -> None:
        """Drop an uncommitted reservation so a retry can execute again."""
        try:
            async with self.session_factory() as session:
                await session.execute(
                    delete(IdempotencyKey).where(
                        and_(
                            IdempotencyKey.key == key,
                            IdempotencyKey.request_hash == request_hash,
                            IdempotencyKey.response_status.is_(None),
                        )
                    )
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise IdempotencyStoreError(f"Idempotency release failed: {e}") from e

    async def cleanup(self, now: Optional[datetime] = None) -> int:
        """Delete every row that expired before `now`. Returns the number removed."""
        cutoff = now or self.clock()
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    delete(IdempotencyKey).where(IdempotencyKey.expires_at < cutoff)
                )
                await session.commit()
                return result.rowcount or 0
        except SQLAlchemyError as e:
            raise IdempotencyStoreError(f"Idempotency cleanup failed: {e}") from e
