from __future__ import annotations

import asyncio

import pytest

from usage_metering.db.memory import InMemoryDBManager
from usage_metering.errors import (
    ContractViolationError,
    InsufficientBalanceError,
    InvalidAmountError,
    PackageInactiveError,
    PackageNotFoundError,
    PersistenceConflictError,
)
from usage_metering.logging.ledger_logger import LedgerLogger
from usage_metering.models.credits import (
    CreditPackage,
    CreditTransaction,
    PaymentEvidence,
    TransactionKind,
)
from usage_metering.models.ledger import LedgerEventType
from usage_metering.services.ledger_service import CreditLedgerService

STARTER = CreditPackage(id="starter", name="Starter", price=9.99, credits=1_000, bonus_credits=200)
BULK = CreditPackage(id="bulk", name="Bulk", price=399.0, credits=500_000)
RETIRED = CreditPackage(id="retired", name="Retired", price=1.0, credits=10, is_active=False)


class ConflictingDB(InMemoryDBManager):
    """Raises a write conflict from increment_balance ``conflicts`` times."""

    def __init__(self, conflicts: int) -> None:
        super().__init__()
        self.conflicts = conflicts

    async def increment_balance(self, user_id, amount, purchased=False):
        if self.conflicts > 0:
            self.conflicts -= 1
            raise PersistenceConflictError("serialization failure")
        return await super().increment_balance(user_id, amount, purchased=purchased)


def _service(db, tmp_path) -> CreditLedgerService:
    return CreditLedgerService(db=db, ledger=LedgerLogger(db=db, file_path=tmp_path / "l.log"))


async def _seed(service: CreditLedgerService) -> None:
    for package in (STARTER, BULK, RETIRED):
        await service.add_package(package)


@pytest.mark.asyncio
async def test_purchase_credits_package_with_bonus(credits, db):
    await _seed(credits)
    evidence = PaymentEvidence(provider="stripe", reference="pi_123", amount_paid=9.99)

    result = await credits.purchase("user-1", "starter", evidence)
    assert result.new_balance == 1_200
    assert await credits.get_balance("user-1") == 1_200

    [tx] = await credits.list_transactions("user-1")
    assert tx.id == result.transaction_id
    assert tx.kind == TransactionKind.PURCHASE
    assert tx.amount == 1_200
    assert tx.balance_after == 1_200
    assert tx.related_package_id == "starter"
    assert tx.metadata["payment"]["reference"] == "pi_123"
    assert tx.metadata["price"] == 9.99


@pytest.mark.asyncio
async def test_purchase_rejects_unknown_and_inactive_packages(credits):
    await _seed(credits)
    with pytest.raises(PackageNotFoundError):
        await credits.purchase("user-1", "missing")
    with pytest.raises(PackageInactiveError):
        await credits.purchase("user-1", "retired")
    assert await credits.get_balance("user-1") == 0
    assert await credits.list_transactions("user-1") == []


@pytest.mark.asyncio
async def test_consume_debits_balance_and_appends_transaction(credits):
    await _seed(credits)
    await credits.purchase("user-1", "bulk")

    result = await credits.consume("user-1", 20_000, description="chat")
    assert result.granted is True
    assert result.remaining == 480_000

    latest = (await credits.list_transactions("user-1", limit=1))[0]
    assert latest.kind == TransactionKind.CONSUMPTION
    assert latest.amount == -20_000
    assert latest.balance_after == 480_000
    assert await credits.get_balance("user-1") == 480_000


@pytest.mark.asyncio
async def test_consume_beyond_balance_changes_nothing(credits):
    await credits.grant_bonus("user-1", 100)

    result = await credits.consume("user-1", 500)
    assert result.granted is False
    assert result.remaining == 100
    assert len(await credits.list_transactions("user-1")) == 1
    assert await credits.get_balance("user-1") == 100


@pytest.mark.asyncio
async def test_consume_zero_and_negative(credits):
    zero = await credits.consume("nobody", 0)
    assert zero.granted is True
    assert zero.remaining == 0

    with pytest.raises(InvalidAmountError):
        await credits.consume("nobody", -1)


@pytest.mark.asyncio
async def test_concurrent_consumes_never_overspend(interleaving_db, tmp_path):
    db = interleaving_db
    credits = _service(db, tmp_path)
    await credits.grant_bonus("user-1", 1_000)

    results = await asyncio.gather(*[credits.consume("user-1", 400) for _ in range(3)])
    assert sum(r.granted for r in results) == 2
    assert await db.get_balance_snapshot("user-1") == (200, 200)
    assert await credits.get_balance("user-1") == 200
    assert not [e for e in db.ledger_entries if e.event_type == LedgerEventType.SYSTEM]


@pytest.mark.asyncio
async def test_grant_bonus_and_adjust(credits):
    bonus = await credits.grant_bonus("user-1", 500, description="Signup bonus")
    assert bonus.kind == TransactionKind.BONUS
    assert bonus.balance_after == 500

    up = await credits.adjust("user-1", 50, description="support credit")
    assert up.kind == TransactionKind.ADJUSTMENT
    assert up.balance_after == 550

    down = await credits.adjust("user-1", -150)
    assert down.amount == -150
    assert down.balance_after == 400

    with pytest.raises(InsufficientBalanceError) as excinfo:
        await credits.adjust("user-1", -1_000)
    assert excinfo.value.balance == 400
    assert await credits.get_balance("user-1") == 400

    with pytest.raises(InvalidAmountError):
        await credits.grant_bonus("user-1", 0)
    with pytest.raises(InvalidAmountError):
        await credits.adjust("user-1", 0)


@pytest.mark.asyncio
async def test_balance_repaired_from_transaction_log(credits, db):
    await credits.grant_bonus("user-1", 1_000)
    # Transaction row landed but the balance update did not
    await db.add_credit_transaction(
        CreditTransaction(
            user_id="user-1",
            amount=300,
            kind=TransactionKind.ADJUSTMENT,
            balance_after=1_300,
        )
    )
    assert (await db.get_credit_account("user-1")).balance == 1_000

    assert await credits.get_balance("user-1") == 1_300
    assert (await db.get_credit_account("user-1")).balance == 1_300

    repairs = [e for e in db.ledger_entries if e.event_type == LedgerEventType.SYSTEM]
    assert len(repairs) == 1
    assert repairs[0].details["applied"] is True


@pytest.mark.asyncio
async def test_list_transactions_newest_first_and_bounded(credits):
    for amount in (1, 2, 3):
        await credits.grant_bonus("user-1", amount)
    await credits.grant_bonus("user-2", 99)

    txs = await credits.list_transactions("user-1", limit=2)
    assert [t.amount for t in txs] == [3, 2]
    assert all(t.user_id == "user-1" for t in txs)

    with pytest.raises(ContractViolationError):
        await credits.list_transactions("user-1", limit=0)
    with pytest.raises(ContractViolationError):
        await credits.list_transactions("user-1", limit=201)


@pytest.mark.asyncio
async def test_transaction_ids_sort_newest_first(credits):
    first = await credits.grant_bonus("user-1", 1)
    second = await credits.grant_bonus("user-1", 1)
    assert second.id > first.id


@pytest.mark.asyncio
async def test_write_conflict_retried_once(tmp_path):
    db = ConflictingDB(conflicts=1)
    service = CreditLedgerService(db=db, ledger=LedgerLogger(db=db, file_path=tmp_path / "l.log"))
    await _seed(service)

    result = await service.purchase("user-1", "starter")
    assert result.new_balance == 1_200
    assert await service.get_balance("user-1") == 1_200


@pytest.mark.asyncio
async def test_persistent_conflict_surfaces_and_is_logged(tmp_path):
    db = ConflictingDB(conflicts=2)
    service = CreditLedgerService(db=db, ledger=LedgerLogger(db=db, file_path=tmp_path / "l.log"))
    await _seed(service)

    with pytest.raises(PersistenceConflictError):
        await service.purchase("user-1", "starter")
    assert await service.list_transactions("user-1") == []
    errors = [e for e in db.ledger_entries if e.event_type == LedgerEventType.ERROR]
    assert len(errors) == 1
    assert errors[0].user_id == "user-1"


@pytest.mark.asyncio
async def test_list_packages_filters_inactive(credits):
    await _seed(credits)
    active = {p.id for p in await credits.list_packages()}
    everything = {p.id for p in await credits.list_packages(active_only=False)}
    assert active == {"starter", "bulk"}
    assert everything == {"starter", "bulk", "retired"}


@pytest.mark.asyncio
async def test_mixed_writes_keep_balance_and_log_in_step(interleaving_db, tmp_path):
    db = interleaving_db
    credits = _service(db, tmp_path)
    await _seed(credits)

    await credits.purchase("user-1", "starter")
    await credits.consume("user-1", 300)
    await credits.grant_bonus("user-1", 50)
    await credits.adjust("user-1", -100)
    await credits.adjust("user-1", 25)
    await asyncio.gather(credits.consume("user-1", 200), credits.grant_bonus("user-1", 10))

    # Checked before get_balance so a repair could not hide drift
    assert await db.get_balance_snapshot("user-1") == (685, 685)
    assert await credits.get_balance("user-1") == 685
    assert not [e for e in db.ledger_entries if e.event_type == LedgerEventType.SYSTEM]


@pytest.mark.asyncio
async def test_account_totals_track_purchases_and_consumption(credits):
    await _seed(credits)
    await credits.purchase("user-1", "starter")
    await credits.consume("user-1", 300)
    await credits.grant_bonus("user-1", 50)
    await credits.adjust("user-1", -100)
    await credits.adjust("user-1", 25)

    account = await credits.get_account("user-1")
    assert account.balance == 875
    assert account.total_purchased == 1_200
    # Bonuses and adjustments move only the balance
    assert account.total_used == 300


@pytest.mark.asyncio
async def test_account_for_unknown_user_reads_as_zeros(credits):
    account = await credits.get_account("nobody")
    assert (account.balance, account.total_purchased, account.total_used) == (0, 0, 0)


@pytest.mark.asyncio
async def test_package_value_against_list_rate(credits):
    await _seed(credits)

    starter = await credits.package_value("starter")
    assert starter.total_credits == 1_200
    assert starter.price_per_credit == pytest.approx(9.99 / 1_200)
    assert starter.savings == 0

    bulk = await credits.package_value("bulk")
    assert bulk.savings == pytest.approx(3_763.5)

    with pytest.raises(PackageNotFoundError):
        await credits.package_value("missing")


@pytest.mark.asyncio
async def test_free_package_has_no_price_per_credit(credits):
    await credits.add_package(CreditPackage(id="promo", name="Promo", price=0.0, credits=0))
    value = await credits.package_value("promo")
    assert value.price_per_credit is None
    assert value.savings == 0


@pytest.mark.asyncio
async def test_recommend_package(credits):
    assert await credits.recommend_package(100) is None

    await _seed(credits)
    assert (await credits.recommend_package(0)).id == "starter"
    assert (await credits.recommend_package(1_200)).id == "starter"
    assert (await credits.recommend_package(1_201)).id == "bulk"
    # Nothing is large enough: the biggest package is the best fit
    assert (await credits.recommend_package(10**9)).id == "bulk"

    with pytest.raises(InvalidAmountError):
        await credits.recommend_package(-1)
