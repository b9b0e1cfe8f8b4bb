"""
Error taxonomy for the metering core.

- Soft / expected: the user simply has no quota left. Reported as a normal
  denial upstream (an upgrade prompt), never logged as an error.
- Transient: a storage race that survived the single internal retry.
  Upstream should answer "try again".
- Caller contract: bad input (negative amount, unknown package or plan tier).
  Rejected immediately, never retried.
- Fatal: the durable store is unreachable. The ledger is the correctness
  anchor, so this always propagates and is never masked by the cache fallback.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:  # pragma: no cover
    from .models.quota import QuotaDecision


class MeteringError(Exception):
    """Base class for all metering errors."""


# Soft / expected ---------------------------------------------------------


class SoftDenialError(MeteringError):
    """Expected denial; upstream should offer an upgrade."""


class InsufficientBalanceError(SoftDenialError):
    def __init__(self, user_id: str, requested: int, balance: int) -> None:
        super().__init__(
            f"insufficient credits for user {user_id}: requested {requested}, balance {balance}"
        )
        self.user_id = user_id
        self.requested = requested
        self.balance = balance


class QuotaExhaustedError(SoftDenialError):
    """Neither the daily allowance nor the credit balance covers the action."""

    def __init__(self, decision: "QuotaDecision", user_id: str, requested: int) -> None:
        super().__init__(
            f"quota exhausted for user {user_id}: requested {requested}, "
            f"daily remaining {decision.daily_remaining}, credit balance {decision.credit_balance}"
        )
        self.decision = decision
        self.user_id = user_id
        self.requested = requested


# Caller contract ---------------------------------------------------------


class ContractViolationError(MeteringError, ValueError):
    """Invalid caller input; never retried."""


class InvalidAmountError(ContractViolationError):
    def __init__(self, amount: Any) -> None:
        super().__init__(f"amount must be a non-negative integer, got {amount!r}")
        self.amount = amount


class UnknownPlanTierError(ContractViolationError):
    def __init__(self, plan_tier: str) -> None:
        super().__init__(f"unknown plan tier: {plan_tier!r}")
        self.plan_tier = plan_tier


class PackageNotFoundError(ContractViolationError):
    def __init__(self, package_id: str) -> None:
        super().__init__(f"credit package not found: {package_id!r}")
        self.package_id = package_id


class PackageInactiveError(ContractViolationError):
    def __init__(self, package_id: str) -> None:
        super().__init__(f"credit package is not active: {package_id!r}")
        self.package_id = package_id


# Transient / infrastructure ---------------------------------------------


class PersistenceConflictError(MeteringError):
    """Concurrent writers raced and the single retry did not settle it."""

    def __init__(self, message: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.cause = cause


class CacheError(MeteringError):
    """Advisory cache failed; callers treat it as a miss."""


class CacheUnavailableError(CacheError):
    """Cache backend unreachable (connection refused, timeout)."""


# Fatal -------------------------------------------------------------------


class StorageUnavailableError(MeteringError):
    """Durable store unreachable; must surface as a hard error."""

    def __init__(self, message: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.cause = cause
