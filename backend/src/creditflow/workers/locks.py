"""Expired lock lease cleanup."""
import structlog

from creditflow.services.lock_service import LockManager

logger = structlog.get_logger(__name__)


async def cleanup_expired_locks(lock_manager: LockManager) -> int:
    """Delete expired leases. Returns the number removed."""
    removed = await lock_manager.cleanup_expired()
    if removed:
        logger.info("expired_locks_removed", count=removed)
    return removed


async def cleanup_expired_locks_job(ctx: dict) -> dict[str, int]:
    """ARQ cron entry point."""
    removed = await cleanup_expired_locks(ctx["lock_manager"])
    return {"removed": removed}
