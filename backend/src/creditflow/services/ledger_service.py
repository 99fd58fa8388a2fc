"""Credit ledger: per-user balances and their append-only audit log."""
from typing import List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from creditflow.config import settings
from creditflow.errors import ValidationError
from creditflow.metrics import insufficient_credit_rejections_total, ledger_credits_total, ledger_operations_total
from creditflow.models.base import utcnow
from creditflow.models.credit import CreditAccount, CreditLogEntry, CreditOperation

logger = structlog.get_logger(__name__)


def _validate_amount(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError(f"Credit amount must be a positive integer, got {amount!r}")


class LedgerService:
    """
    Service layer for credit balance mutations.

    Every balance change is one atomic conditional UPDATE ... RETURNING
    followed by a CreditLogEntry insert in the same transaction. The service
    only flushes; the caller owns the transaction boundary.
    """

    def __init__(self, db: AsyncSession):
        """Initialize ledger service with database session."""
        self.db = db

    def _insert(self):
        """Dialect specific INSERT supporting ON CONFLICT DO NOTHING."""
        if self.db.get_bind().dialect.name == "sqlite":
            return sqlite_insert(CreditAccount)
        return pg_insert(CreditAccount)

    async def _create_account_if_missing(self, user_id: str, balance: int) -> bool:
        """Insert the account row unless it exists. Returns True when this call created it."""
        now = utcnow()
        stmt = (
            self._insert()
            .values(user_id=user_id, balance=balance, created_at=now, updated_at=now)
            .on_conflict_do_nothing(index_elements=["user_id"])
            .returning(CreditAccount.user_id)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def _log(
        self,
        user_id: str,
        reference: str,
        operation: CreditOperation,
        old_value: int,
        delta: int,
        new_value: int,
        note: Optional[str] = None,
    ) -> CreditLogEntry:
        entry = CreditLogEntry(
            user_id=user_id,
            reference=reference,
            operation=operation,
            old_value=old_value,
            delta=delta,
            new_value=new_value,
            note=note,
        )
        self.db.add(entry)
        # Flush so the partial unique indexes reject duplicates inside this call
        await self.db.flush()

        ledger_operations_total.labels(operation=operation.value).inc()
        ledger_credits_total.labels(operation=operation.value).inc(abs(delta))
        logger.info(
            "ledger_entry_written",
            user_id=user_id,
            reference=reference,
            operation=operation.value,
            old_value=old_value,
            delta=delta,
            new_value=new_value,
        )
        return entry

    async def _increment(self, user_id: str, amount: int) -> Optional[int]:
        result = await self.db.execute(
            update(CreditAccount)
            .where(CreditAccount.user_id == user_id)
            .values(balance=CreditAccount.balance + amount, updated_at=utcnow())
            .returning(CreditAccount.balance)
            .execution_options(synchronize_session=False)
        )
        return result.scalar_one_or_none()

    async def ensure_account(self, user_id: str) -> int:
        """
        Load or create the user's credit account.

        New accounts start with the configured welcome grant, recorded as a
        ``grant`` log entry.

        Args:
            user_id: Owner of the account

        Returns:
            Current balance
        """
        grant = settings.welcome_credits
        created = await self._create_account_if_missing(user_id, grant)
        if created:
            logger.info("credit_account_created", user_id=user_id, welcome_credits=grant)
            if grant > 0:
                await self._log(user_id, user_id, CreditOperation.GRANT, 0, grant, grant, note="welcome grant")
            return grant
        return await self.get_balance(user_id)

    async def get_balance(self, user_id: str) -> int:
        """Current balance, 0 when the user has no account yet."""
        result = await self.db.execute(select(CreditAccount.balance).where(CreditAccount.user_id == user_id))
        balance = result.scalar_one_or_none()
        return balance if balance is not None else 0

    async def deduct(self, user_id: str, reference: str, amount: int, note: Optional[str] = None) -> bool:
        """
        Atomically take credits from a balance.

        Args:
            user_id: Account owner
            reference: Task id the deduction pays for
            amount: Positive number of credits
            note: Optional free text for the audit log

        Returns:
            True when deducted, False when the balance was insufficient (or
            the account does not exist). Never raises for a low balance.

        Raises:
            ValidationError: If amount is not a positive integer
        """
        _validate_amount(amount)

        result = await self.db.execute(
            update(CreditAccount)
            .where(CreditAccount.user_id == user_id, CreditAccount.balance >= amount)
            .values(balance=CreditAccount.balance - amount, updated_at=utcnow())
            .returning(CreditAccount.balance)
            .execution_options(synchronize_session=False)
        )
        new_balance = result.scalar_one_or_none()
        if new_balance is None:
            insufficient_credit_rejections_total.inc()
            logger.info("deduct_rejected_insufficient_credits", user_id=user_id, reference=reference, amount=amount)
            return False

        await self._log(user_id, reference, CreditOperation.DEDUCT, new_balance + amount, -amount, new_balance, note)
        return True

    async def refund(self, user_id: str, reference: str, amount: int, note: Optional[str] = None) -> int:
        """
        Give deducted credits back.

        Callers must flip the owning task's credits_refunded flag with a
        conditional update in the same transaction; the unique refund index
        is the second line of defence.

        Returns:
            New balance

        Raises:
            ValidationError: If amount is not a positive integer
            IntegrityError: If this reference was already refunded
        """
        _validate_amount(amount)

        new_balance = await self._increment(user_id, amount)
        if new_balance is None:
            # A deduction implies the account exists, but keep refunds total
            await self._create_account_if_missing(user_id, 0)
            new_balance = await self._increment(user_id, amount)

        await self._log(user_id, reference, CreditOperation.REFUND, new_balance - amount, amount, new_balance, note)
        return new_balance

    async def recharge(self, user_id: str, reference: str, amount: int, note: Optional[str] = None) -> int:
        """
        Credit a paid order to the balance, creating the account if needed.

        Returns:
            New balance

        Raises:
            ValidationError: If amount is not a positive integer
            IntegrityError: If this order was already recharged
        """
        _validate_amount(amount)

        await self._create_account_if_missing(user_id, 0)
        new_balance = await self._increment(user_id, amount)

        await self._log(user_id, reference, CreditOperation.RECHARGE, new_balance - amount, amount, new_balance, note)
        return new_balance

    async def has_entry(self, reference: str, operation: CreditOperation) -> bool:
        """Whether a log entry exists for reference and operation (the idempotency witness)."""
        result = await self.db.execute(
            select(CreditLogEntry.id)
            .where(CreditLogEntry.reference == reference, CreditLogEntry.operation == operation)
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def history(self, user_id: str, limit: int = 50) -> List[CreditLogEntry]:
        """Newest log entries first."""
        result = await self.db.execute(
            select(CreditLogEntry)
            .where(CreditLogEntry.user_id == user_id)
            .order_by(CreditLogEntry.created_at.desc(), CreditLogEntry.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
