"""Integration tests for the stuck-task sweeper."""
from datetime import timedelta
from types import SimpleNamespace

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from creditflow.models.base import utcnow
from creditflow.models.task import GenerationTask, TaskStatus
from creditflow.services.ledger_service import LedgerService
from creditflow.services.task_service import TaskService
from creditflow.workers.stuck_tasks import STUCK_TASK_MESSAGE, sweep_stuck_tasks, sweep_stuck_tasks_job
from utils.factories import TaskFactory, user_id


def _aged(minutes: int, **overrides) -> GenerationTask:
    task = GenerationTask(**TaskFactory.create(overrides))
    task.created_at = task.updated_at = utcnow() - timedelta(minutes=minutes)
    return task


@pytest.mark.asyncio
async def test_stuck_tasks_are_failed_and_refunded(
    db_session: AsyncSession, session_factory: async_sessionmaker[AsyncSession]
) -> None:
    user = user_id()
    ledger = LedgerService(db_session)
    await ledger.ensure_account(user)
    charged = _aged(45, user_id=user, status=TaskStatus.PROCESSING, credits_deducted=True)
    never_started = _aged(45, user_id=user, status=TaskStatus.PENDING)
    recent = _aged(5, user_id=user, status=TaskStatus.PROCESSING)
    done = _aged(90, user_id=user, status=TaskStatus.COMPLETED, result_ref="https://cdn.test/a.png")
    db_session.add_all([charged, never_started, recent, done])
    await db_session.flush()
    await ledger.deduct(user, charged.task_id, 1)
    await db_session.commit()

    summary = await sweep_stuck_tasks(session_factory, timeout_minutes=30)

    assert summary == {"found": 2, "failed": 2, "skipped": 0}
    service = TaskService(db_session)
    for task_id in (charged.task_id, never_started.task_id):
        task = await service.get_task(task_id)
        assert task.status == TaskStatus.FAILED
        assert task.error_message == STUCK_TASK_MESSAGE
    assert (await service.get_task(charged.task_id)).credits_refunded is True
    assert (await service.get_task(never_started.task_id)).credits_refunded is False
    assert (await service.get_task(recent.task_id)).status == TaskStatus.PROCESSING
    assert (await service.get_task(done.task_id)).status == TaskStatus.COMPLETED
    assert await ledger.get_balance(user) == 1


@pytest.mark.asyncio
async def test_sweep_with_nothing_stuck(session_factory: async_sessionmaker[AsyncSession]) -> None:
    assert await sweep_stuck_tasks_job({"session_factory": session_factory}) == {"found": 0, "failed": 0, "skipped": 0}


@pytest.mark.asyncio
async def test_task_failed_by_worker_after_scan_is_not_counted(
    db_session: AsyncSession, session_factory: async_sessionmaker[AsyncSession], monkeypatch
) -> None:
    user = user_id()
    await LedgerService(db_session).ensure_account(user)
    resolved = _aged(45, user_id=user, status=TaskStatus.FAILED, error_message="generation service unavailable")
    db_session.add(resolved)
    await db_session.commit()
    resolved_id = resolved.task_id

    find_stuck = TaskService.find_stuck

    async def find_including_resolved(self, cutoff):
        # The worker resolved this task between the scan and the sweep
        return [*await find_stuck(self, cutoff), SimpleNamespace(task_id=resolved_id)]

    monkeypatch.setattr(TaskService, "find_stuck", find_including_resolved)

    summary = await sweep_stuck_tasks(session_factory, timeout_minutes=30)

    assert summary == {"found": 1, "failed": 0, "skipped": 1}
    task = await TaskService(db_session).get_task(resolved_id)
    assert task.status == TaskStatus.FAILED
    assert task.error_message == "generation service unavailable"
