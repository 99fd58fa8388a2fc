"""Generation worker: charges, runs and resolves one generation task.

Each step runs in its own short transaction so no database transaction is
held open across the external call:

1. pending -> processing
2. claim credits_deducted and deduct credits (one transaction)
3. call the generator, retrying transport failures on a fixed schedule
4. extract the image reference and optionally persist the image
5. completed, or failed with refund (one transaction)

Between steps the task is re-read; a cancelled task is left alone because
the cancel path has already refunded it.

Usage (with ARQ):
    arq creditflow.workers.settings.WorkerSettings
"""
import asyncio
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from creditflow.adapters.blob_store import BlobStore
from creditflow.adapters.generator import ImageGenerator
from creditflow.config import settings
from creditflow.errors import GenerationRejectedError, InvalidStateError, NotFoundError, TransportError
from creditflow.metrics import generation_attempts_total
from creditflow.models.task import GenerationTask, TaskStatus
from creditflow.services.task_service import TaskService
from creditflow.utils.backoff import BackoffPolicy, Sleep, retry_with_backoff
from creditflow.utils.extraction import extract_image_reference

logger = structlog.get_logger(__name__)

INSUFFICIENT_CREDITS_MESSAGE = "insufficient credits"


class TaskNoLongerProcessing(Exception):
    """The task left processing (usually cancelled) while the worker was busy."""

    def __init__(self, status: Optional[TaskStatus]):
        super().__init__(f"task is {status.value if status else 'missing'}")
        self.status = status


def render_prompt(prompt: str, style: Optional[str]) -> str:
    """Apply the style template to the user prompt."""
    if not style:
        return prompt
    template = settings.style_prompts.get(style)
    if template is None:
        return prompt
    return template.replace("{prompt}", prompt).strip()


def generation_retry_policy() -> BackoffPolicy:
    """Fixed-delay policy for transport failures of the generation call."""
    delay = settings.generation_retry_delay_seconds
    return BackoffPolicy(
        initial_delay=delay,
        multiplier=1.0,
        max_delay=delay,
        max_attempts=settings.generation_max_attempts,
        jitter=0.0,
    )


class GenerationWorker:
    """Runs generation tasks against an ImageGenerator."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        generator: ImageGenerator,
        blob_store: Optional[BlobStore] = None,
        sleep: Sleep = asyncio.sleep,
        policy: Optional[BackoffPolicy] = None,
    ):
        """
        Initialize worker.

        Args:
            session_factory: Factory for the short per-step transactions
            generator: External image generation adapter
            blob_store: Where to copy results; None keeps the generator's URL
            sleep: Awaitable sleep used between attempts
            policy: Retry schedule; defaults to the configured fixed delay
        """
        self.session_factory = session_factory
        self.generator = generator
        self.blob_store = blob_store
        self.sleep = sleep
        self.policy = policy or generation_retry_policy()

    async def process(self, task_id: str) -> Optional[TaskStatus]:
        """
        Run one task to a terminal state.

        Args:
            task_id: Task to run

        Returns:
            The task's status when the worker stops, None if the task does not exist
        """
        log = logger.bind(task_id=task_id)

        try:
            task = await self._begin(task_id)
        except NotFoundError:
            log.warning("generation_task_not_found")
            return None
        except InvalidStateError as e:
            log.info("generation_task_already_resolved", status=e.current_status)
            return TaskStatus(e.current_status)

        try:
            charged = await self._charge(task)
            if not charged:
                return await self._resolve_failed(task_id, INSUFFICIENT_CREDITS_MESSAGE)

            raw = await retry_with_backoff(
                lambda attempt: self._attempt(task, attempt),
                self.policy,
                retry_on=(TransportError,),
                sleep=self.sleep,
            )
            result_ref = extract_image_reference(raw)
            result_ref = await self._persist(task_id, result_ref)
            await self._ensure_processing(task_id)
            return await self._resolve_completed(task_id, result_ref)

        except TaskNoLongerProcessing as e:
            log.info("generation_task_left_processing", status=e.status.value if e.status else None)
            return e.status
        except TransportError as e:
            log.warning("generation_transport_exhausted", error=e.message, max_attempts=self.policy.max_attempts)
            return await self._resolve_failed(task_id, f"generation service unavailable: {e.message}")
        except GenerationRejectedError as e:
            log.info("generation_rejected", error=e.message)
            return await self._resolve_failed(task_id, e.message)
        except Exception as e:
            log.exception("generation_task_crashed", exc_info=e)
            return await self._resolve_failed(task_id, f"internal error: {type(e).__name__}")

    async def _begin(self, task_id: str) -> GenerationTask:
        async with self.session_factory() as db:
            task = await TaskService(db).begin_processing(task_id)
            await db.commit()
            return task

    async def _charge(self, task: GenerationTask) -> bool:
        """
        Deduct the task cost and set credits_deducted in one transaction.

        Returns:
            False when the user cannot pay. A task that was already charged
            (a redelivered job) is not charged again.

        Raises:
            TaskNoLongerProcessing: If the task was cancelled before the charge
        """
        async with self.session_factory() as db:
            service = TaskService(db)
            if await service.claim_deduction(task.task_id):
                if await service.ledger.deduct(task.user_id, task.task_id, task.credits_cost, note="generation task"):
                    await db.commit()
                    return True
                await db.rollback()
                return False

            current = await service.get_task(task.task_id)
            status = current.status if current is not None else None
            await db.rollback()

        if status != TaskStatus.PROCESSING:
            raise TaskNoLongerProcessing(status)
        logger.info("generation_task_already_charged", task_id=task.task_id)
        return True

    async def _ensure_processing(self, task_id: str) -> None:
        async with self.session_factory() as db:
            task = await TaskService(db).get_task(task_id)
        if task is None or task.status != TaskStatus.PROCESSING:
            raise TaskNoLongerProcessing(task.status if task else None)

    async def _attempt(self, task: GenerationTask, attempt: int) -> str:
        await self._ensure_processing(task.task_id)

        async with self.session_factory() as db:
            await TaskService(db).record_attempt(task.task_id, attempt)
            await db.commit()

        logger.info("generation_attempt_started", task_id=task.task_id, attempt=attempt)
        try:
            raw = await self.generator.generate(render_prompt(task.prompt, task.style), task.input_image_ref)
        except TransportError:
            generation_attempts_total.labels(outcome="transport_error").inc()
            raise
        except GenerationRejectedError:
            generation_attempts_total.labels(outcome="rejected").inc()
            raise

        generation_attempts_total.labels(outcome="success").inc()
        return raw

    async def _persist(self, task_id: str, url: str) -> str:
        """Copy the image into the blob store when configured; keep the URL if that fails."""
        if self.blob_store is None:
            return url
        try:
            data, content_type = await self.generator.download(url)
            ref = await self.blob_store.put(data, content_type)
        except TransportError as e:
            logger.warning("generation_result_persist_failed", task_id=task_id, url=url, error=e.message)
            return url
        except OSError as e:
            logger.warning("generation_result_persist_failed", task_id=task_id, url=url, error=str(e))
            return url
        logger.info("generation_result_persisted", task_id=task_id, ref=ref)
        return ref

    async def _resolve_completed(self, task_id: str, result_ref: str) -> Optional[TaskStatus]:
        async with self.session_factory() as db:
            try:
                task = await TaskService(db).complete(task_id, result_ref)
                await db.commit()
                return task.status
            except InvalidStateError as e:
                await db.rollback()
                logger.info("generation_completion_rejected", task_id=task_id, status=e.current_status)
                return TaskStatus(e.current_status)

    async def _resolve_failed(self, task_id: str, error_message: str) -> Optional[TaskStatus]:
        async with self.session_factory() as db:
            try:
                task = await TaskService(db).fail(task_id, error_message)
                await db.commit()
                return task.status
            except InvalidStateError as e:
                await db.rollback()
                logger.info("generation_failure_rejected", task_id=task_id, status=e.current_status)
                return TaskStatus(e.current_status)
            except Exception as e:
                await db.rollback()
                logger.exception("generation_failure_write_failed", task_id=task_id, exc_info=e)
                raise


async def process_generation_task(ctx: dict, task_id: str) -> dict:
    """
    ARQ job running one generation task.

    Args:
        ctx: ARQ context holding the worker built at startup
        task_id: Task to run

    Returns:
        Dict with the final status
    """
    worker: GenerationWorker = ctx["generation_worker"]
    status = await worker.process(task_id)
    return {"task_id": task_id, "status": status.value if status else None}
