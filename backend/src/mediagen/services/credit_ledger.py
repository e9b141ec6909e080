"""Credit ledger service.

The ledger (credit_transactions) is the source of truth; user_credits.balance is a
cached projection kept in step inside the same transaction. Every balance mutation
is a single conditional UPDATE keyed by user_id, so concurrent purchases and
deductions for one user never lose an update and a deduction can never drive the
balance negative.

All methods take the caller's UnitOfWork so that settlement can share a transaction
with the job status transition that triggered it.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation
from uuid import UUID

import structlog
from sqlalchemy.exc import IntegrityError

from mediagen.core.timezone import utcnow
from mediagen.models.credits import CreditTransaction, TransactionType
from mediagen.services.exceptions import InsufficientCreditsError, InvalidAmountError
from mediagen.uow import UnitOfWork

logger = structlog.get_logger()

CREDIT_SCALE = Decimal("0.0001")


def round_credits(value: Decimal | int | float | str) -> Decimal:
    """Round to four fractional digits using round-half-to-even.

    Floats are converted through ``str`` so that 0.1 becomes Decimal("0.1").
    """
    try:
        return Decimal(str(value)).quantize(CREDIT_SCALE, rounding=ROUND_HALF_EVEN)
    except InvalidOperation as e:
        raise InvalidAmountError(f"Not a valid credit amount: {value!r}") from e


def deduction_key(job_ref: UUID | str) -> str:
    return f"deduction:{job_ref}"


def refund_key(job_ref: UUID | str) -> str:
    return f"refund:{job_ref}"


@dataclass(frozen=True)
class LedgerAudit:
    """Comparison of the cached balance with the ledger sum."""

    user_id: str
    balance: Decimal
    ledger_sum: Decimal

    @property
    def consistent(self) -> bool:
        return self.balance == self.ledger_sum


class CreditLedger:
    """Race-safe balance accounting for users."""

    def _validate_amount(self, amount: Decimal | int | float | str) -> Decimal:
        rounded = round_credits(amount)
        if rounded <= 0:
            raise InvalidAmountError(f"Amount must be greater than zero, got {amount}")
        return rounded

    async def _read_balance(self, uow: UnitOfWork, user_id: str) -> Decimal:
        account = await uow.credits.get_account(user_id, refresh=True)
        if account is None:
            return Decimal("0").quantize(CREDIT_SCALE)
        return round_credits(account.balance)

    async def get_balance(self, uow: UnitOfWork, user_id: str) -> Decimal:
        """Return the user's balance, creating a zero-balance record on first access.

        Args:
            uow: Active unit of work
            user_id: Owning user

        Returns:
            Balance rounded to four fractional digits
        """
        account = await uow.credits.get_account(user_id)
        if account is None:
            await uow.credits.ensure_account(user_id, utcnow())
            logger.info("credits.account_created", user_id=user_id)
        return await self._read_balance(uow, user_id)

    async def add_credits(
        self,
        uow: UnitOfWork,
        user_id: str,
        amount: Decimal | int | float | str,
        payment_method: str | None = None,
        payment_transaction_id: str | None = None,
        description: str | None = None,
    ) -> Decimal:
        """Add purchased credits and append a ``purchase`` transaction.

        A purchase carrying a ``payment_transaction_id`` is applied at most once per
        (payment_method, payment_transaction_id); replays return the current balance.

        Args:
            uow: Active unit of work
            user_id: Owning user
            amount: Strictly positive amount
            payment_method: Payment channel (e.g., "apple_iap")
            payment_transaction_id: Store receipt/transaction identifier
            description: Ledger description (default: "Credit purchase - $X.XX")

        Returns:
            New balance

        Raises:
            InvalidAmountError: If amount <= 0
        """
        amount = self._validate_amount(amount)

        idempotency_key = None
        if payment_transaction_id:
            idempotency_key = f"purchase:{payment_method or 'unknown'}:{payment_transaction_id}"
            if await uow.credits.get_transaction_by_key(idempotency_key):
                logger.info(
                    "credits.purchase_already_applied",
                    user_id=user_id,
                    payment_transaction_id=payment_transaction_id,
                )
                return await self.get_balance(uow, user_id)

        now = utcnow()
        await uow.credits.ensure_account(user_id, now)
        try:
            async with uow.savepoint():
                await uow.credits.increment_balance(user_id, amount, now)
                balance = await self._read_balance(uow, user_id)
                await uow.credits.add_transaction(
                    CreditTransaction(
                        user_id=user_id,
                        amount=amount,
                        transaction_type=TransactionType.PURCHASE,
                        description=description or f"Credit purchase - ${amount:.2f}",
                        payment_method=payment_method,
                        payment_transaction_id=payment_transaction_id,
                        balance_after=balance,
                        idempotency_key=idempotency_key,
                        created_at=now,
                    )
                )
        except IntegrityError:
            # A concurrent replay of the same receipt committed first
            logger.info(
                "credits.purchase_already_applied",
                user_id=user_id,
                payment_transaction_id=payment_transaction_id,
            )
            return await self._read_balance(uow, user_id)

        logger.info("credits.added", user_id=user_id, amount=str(amount), balance=str(balance))
        return balance

    async def deduct_credits(
        self,
        uow: UnitOfWork,
        user_id: str,
        amount: Decimal | int | float | str,
        job_ref: UUID,
        description: str | None = None,
    ) -> Decimal:
        """Deduct credits for a completed job, at most once per ``job_ref``.

        The balance check and the decrement are one conditional UPDATE, so concurrent
        deductions whose sum exceeds the balance cannot all succeed.
        A concurrent call for the same ``job_ref`` that loses the race on the
        idempotency key rolls back to its savepoint and returns the balance.

        Args:
            uow: Active unit of work
            user_id: Owning user
            amount: Strictly positive amount
            job_ref: PendingJob id the charge is for (idempotency key)
            description: Ledger description

        Returns:
            Balance after the deduction (or the current balance on a repeated call)

        Raises:
            InvalidAmountError: If amount <= 0
            InsufficientCreditsError: If the balance does not cover the amount
        """
        amount = self._validate_amount(amount)
        key = deduction_key(job_ref)

        if await uow.credits.get_transaction_by_key(key):
            logger.info("credits.deduction_already_applied", user_id=user_id, job_id=str(job_ref))
            return await self.get_balance(uow, user_id)

        now = utcnow()
        await uow.credits.ensure_account(user_id, now)
        try:
            async with uow.savepoint():
                if not await uow.credits.decrement_balance_if_sufficient(user_id, amount, now):
                    available = await self._read_balance(uow, user_id)
                    logger.warning(
                        "credits.insufficient",
                        user_id=user_id,
                        required=str(amount),
                        available=str(available),
                        job_id=str(job_ref),
                    )
                    raise InsufficientCreditsError(user_id, amount, available)

                balance = await self._read_balance(uow, user_id)
                await uow.credits.add_transaction(
                    CreditTransaction(
                        user_id=user_id,
                        amount=-amount,
                        transaction_type=TransactionType.DEDUCTION,
                        description=description or f"Generation charge - ${amount:.2f}",
                        related_job_id=job_ref,
                        balance_after=balance,
                        idempotency_key=key,
                        created_at=now,
                    )
                )
        except IntegrityError:
            # A concurrent settlement of the same job committed first
            logger.info("credits.deduction_already_applied", user_id=user_id, job_id=str(job_ref))
            return await self._read_balance(uow, user_id)

        logger.info(
            "credits.deducted",
            user_id=user_id,
            amount=str(amount),
            balance=str(balance),
            job_id=str(job_ref),
        )
        return balance

    async def refund_credits(
        self,
        uow: UnitOfWork,
        user_id: str,
        amount: Decimal | int | float | str,
        job_ref: UUID,
        description: str | None = None,
    ) -> Decimal:
        """Return credits for a job, at most once per ``job_ref``.

        Returns:
            Balance after the refund (or the current balance on a repeated call)

        Raises:
            InvalidAmountError: If amount <= 0
        """
        amount = self._validate_amount(amount)
        key = refund_key(job_ref)

        if await uow.credits.get_transaction_by_key(key):
            logger.info("credits.refund_already_applied", user_id=user_id, job_id=str(job_ref))
            return await self.get_balance(uow, user_id)

        now = utcnow()
        await uow.credits.ensure_account(user_id, now)
        try:
            async with uow.savepoint():
                await uow.credits.increment_balance(user_id, amount, now)
                balance = await self._read_balance(uow, user_id)
                await uow.credits.add_transaction(
                    CreditTransaction(
                        user_id=user_id,
                        amount=amount,
                        transaction_type=TransactionType.REFUND,
                        description=description or f"Refund - ${amount:.2f}",
                        related_job_id=job_ref,
                        balance_after=balance,
                        idempotency_key=key,
                        created_at=now,
                    )
                )
        except IntegrityError:
            logger.info("credits.refund_already_applied", user_id=user_id, job_id=str(job_ref))
            return await self._read_balance(uow, user_id)

        logger.info("credits.refunded", user_id=user_id, amount=str(amount), job_id=str(job_ref))
        return balance

    async def set_credits(
        self, uow: UnitOfWork, user_id: str, amount: Decimal | int | float | str
    ) -> Decimal:
        """Force the balance to ``amount`` (testing and support tooling).

        The difference is written as an adjustment transaction so the ledger sum
        still equals the balance.
        """
        target = round_credits(amount)
        if target < 0:
            raise InvalidAmountError(f"Balance cannot be set below zero, got {amount}")

        current = await self.get_balance(uow, user_id)
        difference = target - current
        if difference == 0:
            return current

        now = utcnow()
        await uow.credits.increment_balance(user_id, difference, now)
        balance = await self._read_balance(uow, user_id)
        await uow.credits.add_transaction(
            CreditTransaction(
                user_id=user_id,
                amount=difference,
                transaction_type=(
                    TransactionType.PURCHASE if difference > 0 else TransactionType.DEDUCTION
                ),
                description="Balance adjustment",
                balance_after=balance,
                created_at=now,
            )
        )

        logger.warning("credits.balance_set", user_id=user_id, balance=str(balance))
        return balance

    async def calculate_pending_liability(self, uow: UnitOfWork, user_id: str) -> Decimal:
        """Sum ``metadata.cost`` over the user's non-terminal jobs (read-only)."""
        jobs = await uow.pending_jobs.list_non_terminal_for_user(user_id)
        return round_credits(sum((job.cost for job in jobs), Decimal("0")))

    async def transaction_history(
        self, uow: UnitOfWork, user_id: str, limit: int = 50
    ) -> list[CreditTransaction]:
        return await uow.credits.list_transactions(user_id, limit=limit)

    async def audit(self, uow: UnitOfWork, user_id: str) -> LedgerAudit:
        """Re-derive the balance from the ledger and compare with the cached value."""
        balance = await self._read_balance(uow, user_id)
        ledger_sum = round_credits(await uow.credits.sum_transactions(user_id))
        audit = LedgerAudit(user_id=user_id, balance=balance, ledger_sum=ledger_sum)
        if not audit.consistent:
            logger.error(
                "credits.ledger_mismatch",
                user_id=user_id,
                balance=str(balance),
                ledger_sum=str(ledger_sum),
            )
        return audit
