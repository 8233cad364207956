from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Protocol

from timelock.domain.models import IntentKind, IntentStatus, SettlementIntent


class IntentsRepoProtocol(Protocol):
    def open_intent(
        self,
        *,
        kind: IntentKind,
        owner_address: str,
        amount: Decimal,
        now: datetime,
        account_id: str | None = None,
        lock_period_days: int | None = None,
        interest_amount: Decimal | None = None,
    ) -> SettlementIntent: ...

    def get(self, intent_id: str) -> SettlementIntent | None: ...

    def active_withdraw_intent(self, account_id: str) -> SettlementIntent | None: ...

    def list_by_status(self, *statuses: IntentStatus) -> list[SettlementIntent]: ...

    def transition(
        self,
        intent_id: str,
        status: IntentStatus,
        *,
        now: datetime,
        settlement_ref: str | None = None,
        account_id: str | None = None,
        last_error: str | None = None,
    ) -> None: ...
