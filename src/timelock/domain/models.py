from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from enum import StrEnum

from timelock.domain.errors import ValidationError

STROOP = Decimal("0.0000001")


class AccountStatus(StrEnum):
    LOCKED = "locked"
    WITHDRAWN = "withdrawn"


class IntentKind(StrEnum):
    CREATE = "create"
    WITHDRAW = "withdraw"


class IntentStatus(StrEnum):
    PENDING = "pending"
    SETTLED = "settled"
    RECORDED = "recorded"
    FAILED = "failed"
    UNCONFIRMED = "unconfirmed"


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def utcnow() -> datetime:
    return datetime.now(UTC)


def parse_amount(value: object, *, field: str = "amount") -> Decimal:
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a decimal number")
    try:
        if isinstance(value, Decimal):
            parsed = value
        elif isinstance(value, (int, float, str)):
            parsed = Decimal(str(value).strip())
        else:
            raise ValidationError(f"{field} must be a decimal number")
    except InvalidOperation as exc:
        raise ValidationError(f"{field} must be a decimal number") from exc
    if not parsed.is_finite():
        raise ValidationError(f"{field} must be finite")
    return parsed


@dataclass(frozen=True)
class NewAccount:
    owner_address: str
    principal: Decimal
    lock_period_days: int
    interest_amount: Decimal
    settlement_ref: str

    def validate(self) -> None:
        if not self.owner_address or not self.owner_address.strip():
            raise ValidationError("ownerAddress is required")
        if self.principal <= 0:
            raise ValidationError("principal must be > 0")
        if not self.settlement_ref or not self.settlement_ref.strip():
            raise ValidationError("settlementRef is required")
        if self.interest_amount < 0:
            raise ValidationError("interestAmount must be >= 0")


@dataclass(frozen=True)
class AccountRecord:
    id: str
    owner_address: str
    principal: Decimal
    lock_period_days: int
    interest_amount: Decimal
    created_at: datetime
    unlock_at: datetime
    status: AccountStatus
    settlement_ref: str
    withdrawal_settlement_ref: str | None = None
    withdrawn_at: datetime | None = None

    @property
    def payout_amount(self) -> Decimal:
        return self.principal + self.interest_amount

    def is_matured(self, now: datetime) -> bool:
        return ensure_utc(now) >= self.unlock_at


@dataclass(frozen=True)
class SettlementIntent:
    intent_id: str
    kind: IntentKind
    owner_address: str
    amount: Decimal
    status: IntentStatus
    created_at: datetime
    updated_at: datetime
    account_id: str | None = None
    lock_period_days: int | None = None
    interest_amount: Decimal | None = None
    settlement_ref: str | None = None
    last_error: str | None = None


@dataclass(frozen=True)
class LedgerStats:
    total_accounts: int
    active_accounts: int
    total_locked: Decimal
    total_interest_committed: Decimal
