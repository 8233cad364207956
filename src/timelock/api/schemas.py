from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from timelock.domain.interest_schedule import InterestSchedule
from timelock.domain.models import AccountRecord, LedgerStats


def format_amount(value: Decimal) -> str:
    normalized = format(value, "f")
    if "." in normalized:
        normalized = normalized.rstrip("0").rstrip(".")
    return normalized or "0"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateAccountRequest(CamelModel):
    owner_address: str
    # Checked by the orchestrator so bad values surface as ValidationError/UnsupportedPeriod.
    amount: Any
    lock_period: Any
    settlement_ref: str | None = None


class AccountView(CamelModel):
    id: str
    owner_address: str
    principal: str
    lock_period_days: int
    interest_amount: str
    created_at: datetime
    unlock_at: datetime
    status: str
    settlement_ref: str
    withdrawal_settlement_ref: str | None = None
    withdrawn_at: datetime | None = None

    @classmethod
    def from_record(cls, record: AccountRecord) -> AccountView:
        return cls(**_record_fields(record))


class WithdrawalView(AccountView):
    payout_amount: str

    @classmethod
    def from_outcome(cls, record: AccountRecord, payout_amount: Decimal) -> WithdrawalView:
        return cls(**_record_fields(record), payout_amount=format_amount(payout_amount))


class StatsView(CamelModel):
    total_accounts: int
    active_accounts: int
    total_locked: str
    total_interest_committed: str

    @classmethod
    def from_stats(cls, stats: LedgerStats) -> StatsView:
        return cls(
            total_accounts=stats.total_accounts,
            active_accounts=stats.active_accounts,
            total_locked=format_amount(stats.total_locked),
            total_interest_committed=format_amount(stats.total_interest_committed),
        )


class HealthView(CamelModel):
    status: str
    timestamp: datetime


class PeriodRateView(CamelModel):
    lock_period_days: int
    rate_percent: str


class ScheduleView(CamelModel):
    periods: list[PeriodRateView]

    @classmethod
    def from_schedule(cls, schedule: InterestSchedule) -> ScheduleView:
        return cls(
            periods=[
                PeriodRateView(lock_period_days=days, rate_percent=format_amount(schedule.rates[days]))
                for days in schedule.periods
            ]
        )


def _record_fields(record: AccountRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        "owner_address": record.owner_address,
        "principal": format_amount(record.principal),
        "lock_period_days": record.lock_period_days,
        "interest_amount": format_amount(record.interest_amount),
        "created_at": record.created_at,
        "unlock_at": record.unlock_at,
        "status": str(record.status),
        "settlement_ref": record.settlement_ref,
        "withdrawal_settlement_ref": record.withdrawal_settlement_ref,
        "withdrawn_at": record.withdrawn_at,
    }
