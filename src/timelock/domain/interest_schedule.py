from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import ROUND_DOWN, Decimal
from types import MappingProxyType

from timelock.domain.errors import UnsupportedPeriod
from timelock.domain.models import STROOP, ensure_utc


def _freeze(rates: Mapping[int, Decimal | int | str]) -> Mapping[int, Decimal]:
    return MappingProxyType({int(days): Decimal(str(rate)) for days, rate in rates.items()})


@dataclass(frozen=True)
class InterestSchedule:
    """Lock period in days -> interest rate in percent, paid once at maturity."""

    rates: Mapping[int, Decimal] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "rates", _freeze(self.rates))
        for days, rate in self.rates.items():
            if days <= 0:
                raise ValueError("lock periods must be positive")
            if rate < 0:
                raise ValueError("interest rates must be >= 0")

    @property
    def periods(self) -> tuple[int, ...]:
        return tuple(sorted(self.rates))

    def rate_for(self, period: object) -> Decimal:
        if isinstance(period, bool) or not isinstance(period, int):
            raise UnsupportedPeriod(period, self.periods)
        rate = self.rates.get(period)
        if rate is None:
            raise UnsupportedPeriod(period, self.periods)
        return rate

    def interest_for(self, principal: Decimal, period: object) -> Decimal:
        rate = self.rate_for(period)
        return (principal * rate / Decimal(100)).quantize(STROOP, rounding=ROUND_DOWN)

    def unlock_at(self, created_at: datetime, period: object) -> datetime:
        self.rate_for(period)
        return ensure_utc(created_at) + timedelta(days=int(period))


DEFAULT_SCHEDULE = InterestSchedule({30: 5, 60: 8, 90: 12, 180: 18})
