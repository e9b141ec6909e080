"""Credits repository.

Provides data access for the cached balance (user_credits) and the append-only
ledger (credit_transactions). Balance mutations are single conditional UPDATE
statements so concurrent writers for one user never lose an update.
"""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from mediagen.models.credits import CreditTransaction, UserCredits


class CreditsRepository:
    """Repository for UserCredits and CreditTransaction entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get_account(self, user_id: str, refresh: bool = False) -> UserCredits | None:
        """Retrieve the balance row for a user.

        Args:
            user_id: Owning user
            refresh: Overwrite any copy already loaded in the session identity map

        Returns:
            UserCredits if found, None otherwise
        """
        stmt = select(UserCredits).where(UserCredits.user_id == user_id)  # type: ignore[arg-type]
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def ensure_account(self, user_id: str, now: datetime) -> None:
        """Create a zero-balance row if the user has none (INSERT ... ON CONFLICT DO NOTHING).

        Args:
            user_id: Owning user
            now: Creation timestamp
        """
        dialect = self.session.bind.dialect.name
        insert = sqlite.insert if dialect == "sqlite" else postgresql.insert
        stmt = insert(UserCredits).values(
            user_id=user_id,
            balance=Decimal("0"),
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["user_id"])
        await self.session.execute(stmt)
        await self.session.flush()

    async def increment_balance(self, user_id: str, amount: Decimal, now: datetime) -> bool:
        """Atomically add ``amount`` (may be negative) to the balance.

        Returns:
            True if the balance row was updated
        """
        result = await self.session.execute(
            update(UserCredits)
            .where(UserCredits.user_id == user_id)  # type: ignore[arg-type]
            .values(balance=UserCredits.balance + amount, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def decrement_balance_if_sufficient(
        self, user_id: str, amount: Decimal, now: datetime
    ) -> bool:
        """Atomically subtract ``amount`` only if the balance covers it.

        Query explanation:
        - UPDATE user_credits SET balance = balance - :amount
        - WHERE user_id = :user_id AND balance >= :amount
        - rowcount 0 means insufficient funds (or no account)

        Args:
            user_id: Owning user
            amount: Positive amount to subtract
            now: Update timestamp

        Returns:
            True if the balance was decremented, False if funds were insufficient
        """
        result = await self.session.execute(
            update(UserCredits)
            .where(
                UserCredits.user_id == user_id,  # type: ignore[arg-type]
                UserCredits.balance >= amount,  # type: ignore[operator]
            )
            .values(balance=UserCredits.balance - amount, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def add_transaction(self, transaction: CreditTransaction) -> CreditTransaction:
        """Append a ledger entry.

        Raises:
            IntegrityError: If a transaction with the same idempotency key exists
        """
        self.session.add(transaction)
        await self.session.flush()
        return transaction

    async def get_transaction_by_key(self, idempotency_key: str) -> CreditTransaction | None:
        result = await self.session.execute(
            select(CreditTransaction).where(
                CreditTransaction.idempotency_key == idempotency_key  # type: ignore[arg-type]
            )
        )
        return result.scalar_one_or_none()

    async def list_transactions(self, user_id: str, limit: int = 50) -> list[CreditTransaction]:
        """Retrieve a user's ledger entries, newest first."""
        result = await self.session.execute(
            select(CreditTransaction)
            .where(CreditTransaction.user_id == user_id)  # type: ignore[arg-type]
            .order_by(CreditTransaction.created_at.desc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return list(result.scalars().all())

    async def sum_transactions(self, user_id: str) -> Decimal:
        """Sum of all ledger amounts for a user (zero when the ledger is empty)."""
        result = await self.session.execute(
            select(func.coalesce(func.sum(CreditTransaction.amount), 0)).where(
                CreditTransaction.user_id == user_id  # type: ignore[arg-type]
            )
        )
        return Decimal(str(result.scalar_one()))
