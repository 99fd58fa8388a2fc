"""Generation task API endpoints."""
import structlog
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from creditflow.api.deps import TaskQueue, get_current_user, get_db, get_task_queue
from creditflow.errors import InvalidStateError, NotFoundError
from creditflow.schemas.task import Task, TaskCancelResult, TaskCreate, TaskCreated, TaskList
from creditflow.services.task_service import TaskService

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/tasks", tags=["tasks"])


@router.post("", response_model=TaskCreated, status_code=status.HTTP_202_ACCEPTED)
async def create_task(
    task_data: TaskCreate,
    db: AsyncSession = Depends(get_db),
    queue: TaskQueue = Depends(get_task_queue),
    user_id: str = Depends(get_current_user),
) -> TaskCreated:
    """
    Create a generation task and queue it for the worker.

    Credits are checked here and charged by the worker when it starts the
    task. Poll GET /v1/tasks/{task_id} for the result.
    """
    task = await TaskService(db).create_task(
        user_id,
        prompt=task_data.prompt,
        input_image_ref=task_data.image,
        style=task_data.style,
    )
    # The worker must be able to see the task before the job runs
    await db.commit()

    try:
        await queue.enqueue_job("process_generation_task", task.task_id)
    except Exception as e:
        # The stuck-task sweeper resolves tasks that never start
        logger.exception("task_enqueue_failed", task_id=task.task_id, exc_info=e)

    return TaskCreated(task_id=task.task_id, status=task.status)


@router.get("", response_model=TaskList)
async def list_recent_tasks(
    limit: int = Query(20, ge=1, le=100, description="Number of tasks to return"),
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user),
) -> TaskList:
    """List the caller's most recent tasks, newest first."""
    tasks = await TaskService(db).list_recent(user_id, limit=limit)
    return TaskList(items=[Task.model_validate(task) for task in tasks])


@router.get("/{task_id}", response_model=Task)
async def get_task_status(
    task_id: str,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user),
) -> Task:
    """Get a task's current state."""
    task = await TaskService(db).get_task_for_user(task_id, user_id)
    return Task.model_validate(task)


@router.post("/{task_id}/cancel", response_model=TaskCancelResult)
async def cancel_task(
    task_id: str,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user),
) -> TaskCancelResult:
    """
    Cancel a pending or processing task.

    A charged task is refunded in the same transaction. Cancelling a task
    that is already resolved (or unknown) is not an error.
    """
    try:
        task = await TaskService(db).cancel(task_id, user_id)
        await db.commit()
    except (NotFoundError, InvalidStateError) as e:
        await db.rollback()
        logger.info("task_cancel_already_resolved", task_id=task_id, reason=e.code)
        return TaskCancelResult(cancelled=False, reason="already_resolved")

    return TaskCancelResult(cancelled=True, status=task.status)
