"""
ARQ worker settings.

Jobs:
- process_generation_task: enqueued by POST /v1/tasks
- sweep_stuck_tasks_job: every minute
- cleanup_expired_locks_job: every five minutes

Usage:
    arq creditflow.workers.settings.WorkerSettings
"""
from arq.connections import RedisSettings
from arq.cron import cron

from creditflow.adapters.blob_store import LocalBlobStore
from creditflow.adapters.generator import OpenAICompatibleGenerator
from creditflow.config import settings
from creditflow.database import AsyncSessionLocal, engine
from creditflow.middleware.logging import setup_logging
from creditflow.services.lock_service import create_lock_manager
from creditflow.workers.generation import GenerationWorker, process_generation_task
from creditflow.workers.locks import cleanup_expired_locks_job
from creditflow.workers.stuck_tasks import sweep_stuck_tasks_job


async def startup(ctx: dict) -> None:
    """Build the long-lived collaborators shared by all jobs of this worker process."""
    setup_logging()
    ctx["session_factory"] = AsyncSessionLocal
    ctx["lock_manager"] = create_lock_manager(AsyncSessionLocal)
    ctx["generation_worker"] = GenerationWorker(
        AsyncSessionLocal,
        OpenAICompatibleGenerator(),
        blob_store=LocalBlobStore(settings.blob_store_dir) if settings.persist_results else None,
    )


async def shutdown(ctx: dict) -> None:
    await engine.dispose()


class WorkerSettings:
    """ARQ worker settings for generation tasks and maintenance jobs."""

    functions = [process_generation_task]

    cron_jobs = [
        cron(sweep_stuck_tasks_job, second=0, timeout=300),
        cron(cleanup_expired_locks_job, minute={0, 5, 10, 15, 20, 25, 30, 35, 40, 45, 50, 55}, second=30, timeout=60),
    ]

    on_startup = startup
    on_shutdown = shutdown

    redis_settings = RedisSettings.from_dsn(str(settings.arq_redis_url))

    # A generation task may wait through several slow attempts
    job_timeout = int(settings.generation_timeout_seconds * settings.generation_max_attempts) + 60
    max_tries = 1
