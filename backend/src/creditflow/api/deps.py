"""FastAPI dependencies for database sessions, collaborators and identity."""
from typing import AsyncGenerator, Optional, Protocol

import jwt
import structlog
from arq import create_pool
from arq.connections import ArqRedis, RedisSettings
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from creditflow.adapters.payment_gateway import HttpPaymentGateway, PaymentGateway
from creditflow.config import settings
from creditflow.database import AsyncSessionLocal
from creditflow.services.lock_service import LockManager, create_lock_manager
from creditflow.services.reconcile_service import PaymentReconciler

logger = structlog.get_logger(__name__)

# HTTP Bearer token security scheme; missing tokens are reported by get_current_user
security = HTTPBearer(auto_error=False)

_lock_manager: Optional[LockManager] = None
_task_queue: Optional[ArqRedis] = None


class TaskQueue(Protocol):
    """The part of the arq pool the API uses."""

    async def enqueue_job(self, function: str, *args, **kwargs):
        ...


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Database session dependency.

    Yields:
        AsyncSession: Database session for the request lifecycle
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory for services that run their own short transactions."""
    return AsyncSessionLocal


def get_lock_manager(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> LockManager:
    """Process-wide lock manager for the configured backend."""
    global _lock_manager
    if _lock_manager is None:
        _lock_manager = create_lock_manager(session_factory)
    return _lock_manager


def get_payment_gateway() -> PaymentGateway:
    return HttpPaymentGateway()


def get_reconciler(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    lock_manager: LockManager = Depends(get_lock_manager),
) -> PaymentReconciler:
    return PaymentReconciler(session_factory, gateway, lock_manager)


async def get_task_queue() -> TaskQueue:
    """ARQ connection pool used to enqueue generation jobs."""
    global _task_queue
    if _task_queue is None:
        _task_queue = await create_pool(RedisSettings.from_dsn(str(settings.arq_redis_url)))
    return _task_queue


async def close_task_queue() -> None:
    global _task_queue
    if _task_queue is not None:
        await _task_queue.close()
        _task_queue = None


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> str:
    """
    Resolve the caller's user id from a bearer JWT.

    Tokens are issued by the external identity provider and signed with the
    shared secret; the user id is the ``sub`` claim.

    Args:
        credentials: HTTP Bearer token from request header

    Returns:
        str: User id

    Raises:
        HTTPException: 401 if the token is missing, expired or invalid
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        payload = jwt.decode(
            credentials.credentials,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
            options={"require": ["sub"]},
        )
    except jwt.ExpiredSignatureError:
        logger.warning("token_expired")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except jwt.InvalidTokenError as e:
        logger.warning("token_invalid", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return str(payload["sub"])
