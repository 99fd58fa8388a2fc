"""Stuck-task sweeper.

Resolves tasks left pending or processing past a timeout (a crashed worker,
a lost job) as failed, refunding any charge in the same transaction.
"""
from datetime import timedelta
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from creditflow.config import settings
from creditflow.database import AsyncSessionLocal
from creditflow.errors import InvalidStateError
from creditflow.metrics import stuck_tasks_swept_total
from creditflow.models.base import utcnow
from creditflow.models.task import ACTIVE_STATUSES
from creditflow.services.task_service import TaskService

logger = structlog.get_logger(__name__)

STUCK_TASK_MESSAGE = "task timed out"


async def sweep_stuck_tasks(
    session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
    timeout_minutes: Optional[int] = None,
) -> dict[str, int]:
    """
    Fail and refund every task whose last update is older than the timeout.

    Each task is resolved in its own transaction; a task that moved on in
    the meantime is skipped.

    Returns:
        Dict with counts of found, failed and skipped tasks
    """
    timeout = timeout_minutes if timeout_minutes is not None else settings.stuck_task_timeout_minutes
    cutoff = utcnow() - timedelta(minutes=timeout)

    async with session_factory() as db:
        stuck = [task.task_id for task in await TaskService(db).find_stuck(cutoff)]

    logger.info("stuck_task_sweep_started", tasks_count=len(stuck), timeout_minutes=timeout)

    failed = 0
    skipped = 0
    for task_id in stuck:
        async with session_factory() as db:
            try:
                task = await TaskService(db).fail(task_id, STUCK_TASK_MESSAGE, sources=ACTIVE_STATUSES)
                await db.commit()
                # Already failed by the worker since the scan
                if task.error_message != STUCK_TASK_MESSAGE:
                    skipped += 1
                    continue
                failed += 1
                stuck_tasks_swept_total.inc()
            except InvalidStateError:
                await db.rollback()
                skipped += 1
            except Exception as e:
                await db.rollback()
                skipped += 1
                logger.exception("stuck_task_sweep_error", task_id=task_id, exc_info=e)

    logger.info("stuck_task_sweep_completed", found=len(stuck), failed=failed, skipped=skipped)
    return {"found": len(stuck), "failed": failed, "skipped": skipped}


async def sweep_stuck_tasks_job(ctx: dict) -> dict[str, int]:
    """ARQ cron entry point."""
    return await sweep_stuck_tasks(ctx.get("session_factory", AsyncSessionLocal))
