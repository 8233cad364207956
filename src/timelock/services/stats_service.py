from __future__ import annotations

from timelock.domain.models import AccountStatus, LedgerStats
from timelock.services.ledger_store import LedgerStore


class StatsService:
    def __init__(self, ledger: LedgerStore) -> None:
        self._ledger = ledger

    def snapshot(self) -> LedgerStats:
        # One read transaction so the four figures describe the same ledger state.
        with self._ledger.reader() as uow:
            return LedgerStats(
                total_accounts=uow.accounts.count_all(),
                active_accounts=uow.accounts.count_by_status(AccountStatus.LOCKED),
                total_locked=uow.accounts.sum_principal_where(AccountStatus.LOCKED),
                total_interest_committed=uow.accounts.sum_interest_all(),
            )
