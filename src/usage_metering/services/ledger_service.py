from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from ..db.base import BaseDBManager
from ..errors import (
    ContractViolationError,
    InsufficientBalanceError,
    InvalidAmountError,
    PackageInactiveError,
    PackageNotFoundError,
    PersistenceConflictError,
)
from ..logging.ledger_logger import LedgerLogger
from ..models.credits import (
    CreditAccount,
    CreditPackage,
    CreditTransaction,
    PackageValue,
    PaymentEvidence,
    TransactionKind,
)
from ..models.quota import ConsumeResult, PurchaseResult

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CreditLedgerService:
    """
    Purchased and granted credits as an append-only transaction log with a
    derived per-user balance.

    Every balance change and its transaction row are written in one storage
    transaction. Debits go through the store's conditional decrement, so a
    balance never goes negative and a refused debit leaves no trace.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        default_transactions_limit: int = 50,
        max_transactions_limit: int = 200,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._default_limit = default_transactions_limit
        self._max_limit = max_transactions_limit

    async def _with_retry(
        self,
        operation: str,
        user_id: str,
        write: Callable[[], Awaitable[T]],
        correlation_id: str | None = None,
    ) -> T:
        try:
            return await write()
        except PersistenceConflictError as e:
            logger.warning("Retrying %s for %s after write conflict: %s", operation, user_id, e)
        try:
            return await write()
        except PersistenceConflictError as e:
            await self._ledger.write_failed(operation, user_id, e, correlation_id=correlation_id)
            raise

    async def _credit(
        self,
        user_id: str,
        amount: int,
        kind: TransactionKind,
        description: str | None = None,
        related_package_id: str | None = None,
        metadata: Optional[Dict[str, Any]] = None,
        correlation_id: str | None = None,
    ) -> CreditTransaction:
        async def write() -> CreditTransaction:
            async with self._db.transaction():
                new_balance = await self._db.increment_balance(
                    user_id, amount, purchased=kind == TransactionKind.PURCHASE
                )
                tx = CreditTransaction(
                    user_id=user_id,
                    amount=amount,
                    kind=kind,
                    related_package_id=related_package_id,
                    balance_after=new_balance,
                    description=description,
                    metadata=metadata or {},
                )
                return await self._db.add_credit_transaction(tx)

        tx = await self._with_retry(kind.value, user_id, write, correlation_id)
        await self._ledger.credit_transaction(tx, correlation_id=correlation_id)
        return tx

    async def _debit(
        self,
        user_id: str,
        amount: int,
        kind: TransactionKind,
        description: str | None = None,
        correlation_id: str | None = None,
    ) -> Optional[CreditTransaction]:
        """Returns None, without writing anything, when the balance is short."""

        async def write() -> Optional[CreditTransaction]:
            async with self._db.transaction():
                new_balance = await self._db.decrement_balance(
                    user_id, amount, used=kind == TransactionKind.CONSUMPTION
                )
                if new_balance is None:
                    return None
                tx = CreditTransaction(
                    user_id=user_id,
                    amount=-amount,
                    kind=kind,
                    balance_after=new_balance,
                    description=description,
                )
                return await self._db.add_credit_transaction(tx)

        tx = await self._with_retry(kind.value, user_id, write, correlation_id)
        if tx is not None:
            await self._ledger.credit_transaction(tx, correlation_id=correlation_id)
        return tx

    async def _stored_balance(self, user_id: str) -> int:
        account = await self._db.get_credit_account(user_id)
        return account.balance if account is not None else 0

    async def purchase(
        self,
        user_id: str,
        package_id: str,
        payment_evidence: Optional[PaymentEvidence] = None,
        correlation_id: str | None = None,
    ) -> PurchaseResult:
        """
        Record a paid package. The package is always re-read here; the
        caller's view of price and credits is never trusted.
        """
        package = await self._db.get_credit_package(package_id)
        if package is None:
            raise PackageNotFoundError(package_id)
        if not package.is_active:
            raise PackageInactiveError(package_id)

        evidence = payment_evidence or PaymentEvidence()
        tx = await self._credit(
            user_id,
            package.total_credits,
            TransactionKind.PURCHASE,
            description=f"Purchased {package.name}",
            related_package_id=package.id,
            metadata={
                "payment": evidence.model_dump(mode="json"),
                "price": package.price,
                "credits": package.credits,
                "bonus_credits": package.bonus_credits,
            },
            correlation_id=correlation_id,
        )
        return PurchaseResult(transaction_id=tx.id, new_balance=tx.balance_after)

    async def consume(
        self,
        user_id: str,
        amount: int,
        description: str | None = None,
        correlation_id: str | None = None,
    ) -> ConsumeResult:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
            raise InvalidAmountError(amount)
        if amount == 0:
            return ConsumeResult(granted=True, remaining=await self._stored_balance(user_id))

        tx = await self._debit(
            user_id,
            amount,
            TransactionKind.CONSUMPTION,
            description=description,
            correlation_id=correlation_id,
        )
        if tx is None:
            return ConsumeResult(granted=False, remaining=await self._stored_balance(user_id))
        return ConsumeResult(granted=True, remaining=tx.balance_after)

    async def grant_bonus(
        self,
        user_id: str,
        amount: int,
        description: str | None = None,
        correlation_id: str | None = None,
    ) -> CreditTransaction:
        """Free credits, e.g. a signup bonus."""
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidAmountError(amount)
        return await self._credit(
            user_id,
            amount,
            TransactionKind.BONUS,
            description=description or "Bonus credits",
            correlation_id=correlation_id,
        )

    async def adjust(
        self,
        user_id: str,
        amount: int,
        description: str | None = None,
        correlation_id: str | None = None,
    ) -> CreditTransaction:
        """
        Operator correction by a signed amount. A negative adjustment larger
        than the balance raises ``InsufficientBalanceError``.
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount == 0:
            raise InvalidAmountError(amount)
        if amount > 0:
            return await self._credit(
                user_id,
                amount,
                TransactionKind.ADJUSTMENT,
                description=description,
                correlation_id=correlation_id,
            )

        tx = await self._debit(
            user_id,
            -amount,
            TransactionKind.ADJUSTMENT,
            description=description,
            correlation_id=correlation_id,
        )
        if tx is None:
            raise InsufficientBalanceError(user_id, -amount, await self._stored_balance(user_id))
        return tx

    async def get_balance(self, user_id: str) -> int:
        balance, ledger_sum = await self._db.get_balance_snapshot(user_id)
        if balance == ledger_sum:
            return balance

        # A write applied to only one side; the transaction log wins
        corrected = max(ledger_sum, 0)
        logger.warning(
            "Credit balance drift for %s: stored %d, transaction sum %d",
            user_id,
            balance,
            ledger_sum,
        )
        repaired = await self._db.repair_balance(user_id, balance, corrected)
        await self._ledger.balance_repaired(user_id, balance, ledger_sum, repaired)
        if repaired:
            return corrected
        # Someone else wrote in between; their write is authoritative
        _, ledger_sum = await self._db.get_balance_snapshot(user_id)
        return max(ledger_sum, 0)

    async def list_transactions(
        self, user_id: str, limit: int | None = None
    ) -> List[CreditTransaction]:
        limit = self._default_limit if limit is None else limit
        if limit < 1 or limit > self._max_limit:
            raise ContractViolationError(f"limit must be between 1 and {self._max_limit}, got {limit}")
        return await self._db.list_credit_transactions(user_id, limit)

    async def list_packages(self, active_only: bool = True) -> List[CreditPackage]:
        return await self._db.list_credit_packages(active_only=active_only)

    async def add_package(self, package: CreditPackage) -> CreditPackage:
        return await self._db.upsert_credit_package(package)

    async def get_account(self, user_id: str) -> CreditAccount:
        """Balance plus lifetime totals; a user who never had credits reads as zeros."""
        balance = await self.get_balance(user_id)
        account = await self._db.get_credit_account(user_id)
        if account is None:
            return CreditAccount(user_id=user_id, balance=balance)
        return account

    async def package_value(self, package_id: str) -> PackageValue:
        """
        Savings of a package against the list rate, the highest price per
        credit among active packages.
        """
        package = await self._db.get_credit_package(package_id)
        if package is None:
            raise PackageNotFoundError(package_id)

        rates = [
            p.price_per_credit
            for p in await self._db.list_credit_packages(active_only=True) + [package]
            if p.price_per_credit is not None
        ]
        list_rate = max(rates, default=0.0)
        return PackageValue(
            package_id=package.id,
            total_credits=package.total_credits,
            price_per_credit=package.price_per_credit,
            savings=round(max(list_rate * package.total_credits - package.price, 0.0), 2),
        )

    async def recommend_package(self, expected_credits: int) -> Optional[CreditPackage]:
        """
        Smallest active package that covers ``expected_credits``, or the
        largest one when none does. None when the catalog has no active
        package.
        """
        if (
            isinstance(expected_credits, bool)
            or not isinstance(expected_credits, int)
            or expected_credits < 0
        ):
            raise InvalidAmountError(expected_credits)
        packages = sorted(
            await self._db.list_credit_packages(active_only=True),
            key=lambda p: (p.total_credits, p.price, p.id),
        )
        if not packages:
            return None
        for package in packages:
            if package.total_credits >= expected_credits:
                return package
        return packages[-1]
