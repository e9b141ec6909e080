"""Credit balance API endpoints.

- GET /api/credits/balance - Current balance (creates a zero balance on first access)
- POST /api/credits/purchase - Add purchased credits (payment verified upstream)
- GET /api/credits/transactions - Ledger history, newest first
- GET /api/credits/liability - Cost of the caller's in-flight jobs
"""

from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from mediagen.api.dependencies import get_credit_ledger, get_current_user_id, get_uow_factory
from mediagen.services.credit_ledger import CreditLedger
from mediagen.services.exceptions import InvalidAmountError

router = APIRouter(prefix="/api/credits", tags=["credits"])


# Request/Response Models


class BalanceResponse(BaseModel):
    balance: str = Field(..., description="Balance with four fractional digits")


class PurchaseRequest(BaseModel):
    """Request model for crediting a verified purchase."""

    amount: Decimal = Field(..., description="Credits to add (must be positive)")
    payment_method: str | None = Field(
        default=None, description="Payment channel (e.g., apple_iap)", max_length=50
    )
    payment_transaction_id: str | None = Field(
        default=None,
        description="Store transaction id; repeats of the same id are applied once",
        max_length=255,
    )
    description: str | None = Field(default=None, description="Ledger description", max_length=500)


class TransactionDTO(BaseModel):
    """Data Transfer Object for ledger entries in API responses."""

    id: str = Field(..., description="Transaction id")
    amount: str = Field(..., description="Signed amount")
    transaction_type: str = Field(..., description="purchase, deduction or refund")
    description: str = Field(..., description="Human-readable description")
    related_job_id: str | None = Field(default=None, description="Job the entry settles")
    balance_after: str | None = Field(default=None, description="Balance after this entry")
    created_at: datetime = Field(..., description="Entry time (UTC)")


class TransactionsResponse(BaseModel):
    transactions: list[TransactionDTO] = Field(..., description="Entries, newest first")


class LiabilityResponse(BaseModel):
    pending_liability: str = Field(..., description="Sum of in-flight job costs")
    balance: str = Field(..., description="Current balance")


# Endpoints


@router.get("/balance", response_model=BalanceResponse)
async def get_balance(
    user_id: str = Depends(get_current_user_id),
    ledger: CreditLedger = Depends(get_credit_ledger),
    uow_factory=Depends(get_uow_factory),
) -> BalanceResponse:
    async with await uow_factory() as uow:
        balance = await ledger.get_balance(uow, user_id)
    return BalanceResponse(balance=str(balance))


@router.post("/purchase", response_model=BalanceResponse)
async def purchase_credits(
    body: PurchaseRequest,
    user_id: str = Depends(get_current_user_id),
    ledger: CreditLedger = Depends(get_credit_ledger),
    uow_factory=Depends(get_uow_factory),
) -> BalanceResponse:
    """Add purchased credits.

    HTTP Status Codes:
        200: Credits added (or the purchase was already applied)
        422: Amount is not positive
    """
    try:
        async with await uow_factory() as uow:
            balance = await ledger.add_credits(
                uow,
                user_id,
                body.amount,
                payment_method=body.payment_method,
                payment_transaction_id=body.payment_transaction_id,
                description=body.description,
            )
    except InvalidAmountError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    return BalanceResponse(balance=str(balance))


@router.get("/transactions", response_model=TransactionsResponse)
async def list_transactions(
    limit: int = Query(default=50, ge=1, le=200),
    user_id: str = Depends(get_current_user_id),
    ledger: CreditLedger = Depends(get_credit_ledger),
    uow_factory=Depends(get_uow_factory),
) -> TransactionsResponse:
    async with await uow_factory() as uow:
        transactions = await ledger.transaction_history(uow, user_id, limit=limit)
        dtos = [
            TransactionDTO(
                id=str(t.id),
                amount=str(t.amount),
                transaction_type=t.transaction_type.value,
                description=t.description,
                related_job_id=str(t.related_job_id) if t.related_job_id else None,
                balance_after=str(t.balance_after) if t.balance_after is not None else None,
                created_at=t.created_at,
            )
            for t in transactions
        ]
    return TransactionsResponse(transactions=dtos)


@router.get("/liability", response_model=LiabilityResponse)
async def get_liability(
    user_id: str = Depends(get_current_user_id),
    ledger: CreditLedger = Depends(get_credit_ledger),
    uow_factory=Depends(get_uow_factory),
) -> LiabilityResponse:
    """Advisory: in-flight jobs are charged on completion, nothing is reserved."""
    async with await uow_factory() as uow:
        liability = await ledger.calculate_pending_liability(uow, user_id)
        balance = await ledger.get_balance(uow, user_id)
    return LiabilityResponse(pending_liability=str(liability), balance=str(balance))
