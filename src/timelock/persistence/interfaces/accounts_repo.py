from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Protocol

from timelock.domain.models import AccountRecord, AccountStatus, NewAccount


class AccountsRepoProtocol(Protocol):
    def insert(self, account: NewAccount, *, now: datetime, unlock_at: datetime) -> AccountRecord: ...

    def get_by_id(self, account_id: str) -> AccountRecord | None: ...

    def get_by_settlement_ref(self, settlement_ref: str) -> AccountRecord | None: ...

    def list_all(self) -> list[AccountRecord]: ...

    def list_by_owner(self, owner_address: str) -> list[AccountRecord]: ...

    def mark_withdrawn(
        self,
        account_id: str,
        withdrawal_settlement_ref: str,
        *,
        now: datetime,
    ) -> AccountRecord: ...

    def count_all(self) -> int: ...

    def count_by_status(self, status: AccountStatus) -> int: ...

    def sum_principal_where(self, status: AccountStatus) -> Decimal: ...

    def sum_interest_all(self) -> Decimal: ...
