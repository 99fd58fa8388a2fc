"""Generation task state machine."""
from datetime import datetime
from typing import Iterable, List, Optional
from uuid import uuid4

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from creditflow.config import settings
from creditflow.errors import InsufficientCreditsError, InvalidStateError, NotFoundError, ValidationError
from creditflow.metrics import insufficient_credit_rejections_total, tasks_created_total, tasks_resolved_total
from creditflow.models.base import utcnow
from creditflow.models.task import ACTIVE_STATUSES, GenerationTask, TaskStatus
from creditflow.services.ledger_service import LedgerService

logger = structlog.get_logger(__name__)


class TaskService:
    """
    Service layer for generation tasks.

    Every status write is a conditional UPDATE restricted to the legal
    source statuses. A write that matches no row lost a race (or was never
    legal) and is reported as InvalidStateError, except when the task is
    already in the requested state, which is a no-op.
    """

    def __init__(self, db: AsyncSession):
        """Initialize task service with database session."""
        self.db = db
        self.ledger = LedgerService(db)

    async def create_task(
        self,
        user_id: str,
        prompt: Optional[str],
        input_image_ref: Optional[str] = None,
        style: Optional[str] = None,
    ) -> GenerationTask:
        """
        Create a pending generation task.

        Args:
            user_id: Task owner
            prompt: Free text prompt
            input_image_ref: Reference to the uploaded source image
            style: Optional style name, must be a configured style

        Returns:
            Created task

        Raises:
            ValidationError: If neither a prompt nor an image with a style is given
            InsufficientCreditsError: If the user cannot pay for one task
        """
        prompt = (prompt or "").strip()
        if not prompt and not (input_image_ref and style):
            raise ValidationError("A prompt, or an image together with a style, is required")
        if style is not None and style not in settings.style_prompts:
            raise ValidationError(
                f"Unknown style '{style}'",
                {"allowed_styles": sorted(settings.style_prompts)},
            )

        balance = await self.ledger.ensure_account(user_id)
        if balance < settings.task_cost:
            insufficient_credit_rejections_total.inc()
            raise InsufficientCreditsError(
                "Not enough credits to start a generation task",
                {"balance": balance, "required": settings.task_cost},
            )

        task = GenerationTask(
            task_id=uuid4().hex,
            user_id=user_id,
            status=TaskStatus.PENDING,
            prompt=prompt,
            input_image_ref=input_image_ref,
            style=style,
            credits_cost=settings.task_cost,
            credits_deducted=False,
            credits_refunded=False,
            attempt_count=0,
        )
        self.db.add(task)
        await self.db.flush()

        tasks_created_total.labels(style=style or "none").inc()
        logger.info("task_created", task_id=task.task_id, user_id=user_id, style=style)
        return task

    async def get_task(self, task_id: str) -> Optional[GenerationTask]:
        """Load a task, bypassing any stale copy in the identity map."""
        result = await self.db.execute(
            select(GenerationTask)
            .where(GenerationTask.task_id == task_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_task_for_user(self, task_id: str, user_id: str) -> GenerationTask:
        """
        Load a task owned by user_id.

        Raises:
            NotFoundError: If the task does not exist or belongs to someone else
        """
        task = await self.get_task(task_id)
        if task is None or task.user_id != user_id:
            raise NotFoundError(f"Task {task_id} not found")
        return task

    async def list_recent(self, user_id: str, limit: int = 20) -> List[GenerationTask]:
        """Newest tasks of a user first."""
        result = await self.db.execute(
            select(GenerationTask)
            .where(GenerationTask.user_id == user_id)
            .order_by(GenerationTask.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def _transition(
        self,
        task_id: str,
        sources: Iterable[TaskStatus],
        target: TaskStatus,
        user_id: Optional[str] = None,
        **values,
    ) -> bool:
        """Conditional status write. Returns True when the row was updated."""
        now = utcnow()
        if target in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED):
            values.setdefault("completed_at", now)

        stmt = (
            update(GenerationTask)
            .where(GenerationTask.task_id == task_id, GenerationTask.status.in_(list(sources)))
            .values(status=target, updated_at=now, **values)
            .execution_options(synchronize_session=False)
        )
        if user_id is not None:
            stmt = stmt.where(GenerationTask.user_id == user_id)

        result = await self.db.execute(stmt)
        return result.rowcount == 1

    async def _rejected(self, task_id: str, target: TaskStatus, user_id: Optional[str] = None) -> GenerationTask:
        """Explain a transition that matched no row, or return the task when it is already in target."""
        task = await self.get_task(task_id)
        if task is None or (user_id is not None and task.user_id != user_id):
            raise NotFoundError(f"Task {task_id} not found")
        if task.status == target:
            return task
        logger.info(
            "task_transition_rejected",
            task_id=task_id,
            current_status=task.status.value,
            requested_status=target.value,
        )
        raise InvalidStateError(
            f"Task {task_id} cannot move from {task.status.value} to {target.value}",
            current_status=task.status.value,
        )

    async def begin_processing(self, task_id: str) -> GenerationTask:
        """
        Move a task from pending to processing.

        Raises:
            NotFoundError: If the task does not exist
            InvalidStateError: If the task is already terminal
        """
        if await self._transition(task_id, [TaskStatus.PENDING], TaskStatus.PROCESSING):
            logger.info("task_processing_started", task_id=task_id)
            return await self.get_task(task_id)
        return await self._rejected(task_id, TaskStatus.PROCESSING)

    async def claim_deduction(self, task_id: str) -> bool:
        """
        Set credits_deducted on a processing task that has not been charged.

        Must run in the same transaction as the ledger deduction. Returns
        False when the task is no longer processing (for example cancelled)
        or was already charged.
        """
        result = await self.db.execute(
            update(GenerationTask)
            .where(
                GenerationTask.task_id == task_id,
                GenerationTask.status == TaskStatus.PROCESSING,
                GenerationTask.credits_deducted.is_(False),
            )
            .values(credits_deducted=True, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def record_attempt(self, task_id: str, attempt: int) -> None:
        """Persist the number of external call attempts made so far."""
        await self.db.execute(
            update(GenerationTask)
            .where(GenerationTask.task_id == task_id)
            .values(attempt_count=attempt, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )

    async def complete(self, task_id: str, result_ref: str) -> GenerationTask:
        """
        Resolve a processing task as completed.

        Raises:
            InvalidStateError: If the task is no longer processing
        """
        if await self._transition(task_id, [TaskStatus.PROCESSING], TaskStatus.COMPLETED, result_ref=result_ref):
            tasks_resolved_total.labels(status=TaskStatus.COMPLETED.value).inc()
            logger.info("task_completed", task_id=task_id, result_ref=result_ref)
            return await self.get_task(task_id)
        return await self._rejected(task_id, TaskStatus.COMPLETED)

    async def fail(
        self,
        task_id: str,
        error_message: str,
        sources: Iterable[TaskStatus] = (TaskStatus.PROCESSING,),
    ) -> GenerationTask:
        """
        Resolve a task as failed and refund it in the same transaction.

        Args:
            task_id: Task to fail
            error_message: Reason stored on the task
            sources: Statuses the task may be failed from

        Raises:
            InvalidStateError: If the task is not in one of sources
        """
        if await self._transition(task_id, sources, TaskStatus.FAILED, error_message=error_message):
            tasks_resolved_total.labels(status=TaskStatus.FAILED.value).inc()
            logger.info("task_failed", task_id=task_id, error_message=error_message)
            task = await self.get_task(task_id)
            if await self.refund_task(task, note=f"task failed: {error_message}"):
                task = await self.get_task(task_id)
            return task
        return await self._rejected(task_id, TaskStatus.FAILED)

    async def cancel(self, task_id: str, user_id: str) -> GenerationTask:
        """
        Cancel a pending or processing task owned by user_id.

        Refunds in the same transaction when the task was already charged.

        Raises:
            NotFoundError: If the task does not exist or is not owned by user_id
            InvalidStateError: If the task is completed or failed
        """
        if await self._transition(task_id, ACTIVE_STATUSES, TaskStatus.CANCELLED, user_id=user_id):
            tasks_resolved_total.labels(status=TaskStatus.CANCELLED.value).inc()
            logger.info("task_cancelled", task_id=task_id, user_id=user_id)
            task = await self.get_task(task_id)
            if await self.refund_task(task, note="task cancelled"):
                task = await self.get_task(task_id)
            return task
        return await self._rejected(task_id, TaskStatus.CANCELLED, user_id=user_id)

    async def refund_task(self, task: GenerationTask, note: Optional[str] = None) -> bool:
        """
        Refund a charged task exactly once.

        The credits_refunded flag is flipped with a conditional update; only
        the caller that flips it writes the ledger refund.

        Returns:
            True when this call refunded the task
        """
        result = await self.db.execute(
            update(GenerationTask)
            .where(
                GenerationTask.task_id == task.task_id,
                GenerationTask.credits_deducted.is_(True),
                GenerationTask.credits_refunded.is_(False),
            )
            .values(credits_refunded=True, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False

        await self.ledger.refund(task.user_id, task.task_id, task.credits_cost, note=note)
        logger.info("task_refunded", task_id=task.task_id, user_id=task.user_id, amount=task.credits_cost)
        return True

    async def find_stuck(self, older_than: datetime, limit: int = 100) -> List[GenerationTask]:
        """Active tasks whose last update is older than the cutoff."""
        result = await self.db.execute(
            select(GenerationTask)
            .where(GenerationTask.status.in_(list(ACTIVE_STATUSES)), GenerationTask.updated_at < older_than)
            .order_by(GenerationTask.updated_at)
            .limit(limit)
        )
        return list(result.scalars().all())
