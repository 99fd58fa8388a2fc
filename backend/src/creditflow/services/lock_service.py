"""Named lock leases backed by the locks table or by Redis."""
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Protocol

import redis.asyncio as redis
import structlog
from sqlalchemy import delete, insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from creditflow.config import settings
from creditflow.metrics import locks_held_gauge
from creditflow.models.base import utcnow
from creditflow.models.lock import Lock

logger = structlog.get_logger(__name__)

# Delete the key only if it still holds our token
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


@dataclass(frozen=True)
class LockLease:
    """A held lease. Only its owner token can release it."""

    key: str
    owner: str
    expires_at: datetime


class LockManager(Protocol):
    """Short-lived named leases. Used to avoid duplicate work, never for correctness."""

    async def try_acquire(self, key: str, ttl_seconds: float) -> Optional[LockLease]:
        ...

    async def release(self, lease: LockLease) -> bool:
        ...

    async def cleanup_expired(self) -> int:
        ...


class DatabaseLockManager:
    """
    Lock leases stored as rows of the locks table.

    The holder is whoever inserted a non-expired row for the key. Each call
    runs in its own short transaction so a lease is visible to other
    processes as soon as it is granted.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        """Initialize with the session factory used for lock transactions."""
        self.session_factory = session_factory

    async def try_acquire(self, key: str, ttl_seconds: float) -> Optional[LockLease]:
        """
        Try to take the lease for key.

        Args:
            key: Lock name, e.g. reconcile:{order_no}
            ttl_seconds: Lease lifetime

        Returns:
            The lease, or None when another owner holds a live lease
        """
        now = utcnow()
        lease = LockLease(key=key, owner=secrets.token_hex(16), expires_at=now + timedelta(seconds=ttl_seconds))

        async with self.session_factory() as db:
            try:
                # An expired lease is dead; take it over
                await db.execute(delete(Lock).where(Lock.key == key, Lock.expires_at <= now))
                await db.execute(
                    insert(Lock).values(
                        key=lease.key,
                        owner=lease.owner,
                        expires_at=lease.expires_at,
                        created_at=now,
                        updated_at=now,
                    )
                )
                await db.commit()
            except IntegrityError:
                await db.rollback()
                logger.info("lock_contended", key=key)
                return None

        locks_held_gauge.inc()
        logger.debug("lock_acquired", key=key, owner=lease.owner, ttl_seconds=ttl_seconds)
        return lease

    async def release(self, lease: LockLease) -> bool:
        """Delete the lease if it is still ours. Returns False when it expired and was taken over."""
        async with self.session_factory() as db:
            result = await db.execute(delete(Lock).where(Lock.key == lease.key, Lock.owner == lease.owner))
            await db.commit()

        locks_held_gauge.dec()
        released = result.rowcount == 1
        if not released:
            logger.warning("lock_lost_before_release", key=lease.key, owner=lease.owner)
        return released

    async def cleanup_expired(self) -> int:
        """Delete every expired lease row. Returns the number of rows removed."""
        async with self.session_factory() as db:
            result = await db.execute(delete(Lock).where(Lock.expires_at <= utcnow()))
            await db.commit()
        return result.rowcount


class RedisLockManager:
    """Lock leases as Redis keys set with NX and a PX expiry."""

    def __init__(self, client: redis.Redis, prefix: str = "creditflow:lock:"):
        """Initialize with an async Redis client."""
        self.client = client
        self.prefix = prefix

    async def try_acquire(self, key: str, ttl_seconds: float) -> Optional[LockLease]:
        owner = secrets.token_hex(16)
        acquired = await self.client.set(self.prefix + key, owner, nx=True, px=int(ttl_seconds * 1000))
        if not acquired:
            logger.info("lock_contended", key=key, backend="redis")
            return None

        locks_held_gauge.inc()
        return LockLease(key=key, owner=owner, expires_at=utcnow() + timedelta(seconds=ttl_seconds))

    async def release(self, lease: LockLease) -> bool:
        deleted = await self.client.eval(_RELEASE_SCRIPT, 1, self.prefix + lease.key, lease.owner)
        locks_held_gauge.dec()
        if not deleted:
            logger.warning("lock_lost_before_release", key=lease.key, owner=lease.owner, backend="redis")
        return bool(deleted)

    async def cleanup_expired(self) -> int:
        # Redis expires keys on its own
        return 0


def create_lock_manager(session_factory: async_sessionmaker[AsyncSession]) -> LockManager:
    """Build the lock manager selected by the lock_backend setting."""
    if settings.lock_backend == "redis":
        client = redis.from_url(str(settings.redis_url), encoding="utf-8", decode_responses=True)
        return RedisLockManager(client)
    if settings.lock_backend != "database":
        raise ValueError(f"Unknown lock backend '{settings.lock_backend}'")
    return DatabaseLockManager(session_factory)
