"""Credit ledger entities - cached balance and append-only transactions."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import Column, Numeric
from sqlmodel import Field, SQLModel

from mediagen.core.timezone import utcnow


class TransactionType(str, Enum):
    """Ledger entry kinds."""

    PURCHASE = "purchase"
    DEDUCTION = "deduction"
    REFUND = "refund"


class UserCredits(SQLModel, table=True):
    """Cached balance projection of a user's ledger."""

    __tablename__ = "user_credits"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: str = Field(max_length=255, unique=True, index=True)
    balance: Decimal = Field(
        default=Decimal("0"), sa_column=Column(Numeric(12, 4), nullable=False)
    )
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class CreditTransaction(SQLModel, table=True):
    """Single ledger entry. Amounts are signed: deductions are negative."""

    __tablename__ = "credit_transactions"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: str = Field(max_length=255, index=True)
    amount: Decimal = Field(sa_column=Column(Numeric(12, 4), nullable=False))
    transaction_type: TransactionType
    description: str = Field(default="", max_length=500)
    related_job_id: Optional[UUID] = Field(default=None, index=True)
    payment_method: Optional[str] = Field(default=None, max_length=50)
    payment_transaction_id: Optional[str] = Field(default=None, max_length=255)
    balance_after: Decimal = Field(sa_column=Column(Numeric(12, 4), nullable=False))
    idempotency_key: Optional[str] = Field(default=None, max_length=255, unique=True)
    created_at: datetime = Field(default_factory=utcnow, index=True)
