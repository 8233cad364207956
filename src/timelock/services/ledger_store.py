from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from decimal import Decimal

from timelock.domain.errors import NotFound
from timelock.domain.interest_schedule import DEFAULT_SCHEDULE, InterestSchedule
from timelock.domain.models import AccountRecord, AccountStatus, NewAccount, utcnow
from timelock.persistence.uow import UnitOfWork, UnitOfWorkFactory

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class LedgerStore:
    """Sole owner of account state; every call is its own transaction."""

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        *,
        schedule: InterestSchedule = DEFAULT_SCHEDULE,
        clock: Clock = utcnow,
    ) -> None:
        self._uow_factory = uow_factory
        self.schedule = schedule
        self.clock = clock

    def writer(self) -> UnitOfWork:
        return self._uow_factory()

    def reader(self) -> UnitOfWork:
        return self._uow_factory.reader()

    def insert(self, account: NewAccount) -> AccountRecord:
        with self.writer() as uow:
            return self.insert_in(uow, account)

    def insert_in(self, uow: UnitOfWork, account: NewAccount) -> AccountRecord:
        now = self.clock()
        unlock_at = self.schedule.unlock_at(now, account.lock_period_days)
        record = uow.accounts.insert(account, now=now, unlock_at=unlock_at)
        logger.info(
            "account_inserted",
            extra={
                "extra": {
                    "account_id": record.id,
                    "owner_address": record.owner_address,
                    "principal": str(record.principal),
                    "lock_period_days": record.lock_period_days,
                    "settlement_ref": record.settlement_ref,
                }
            },
        )
        return record

    def get_by_id(self, account_id: str) -> AccountRecord:
        with self.reader() as uow:
            record = uow.accounts.get_by_id(account_id)
        if record is None:
            raise NotFound(account_id)
        return record

    def list_all(self) -> list[AccountRecord]:
        with self.reader() as uow:
            return uow.accounts.list_all()

    def list_by_owner(self, owner_address: str) -> list[AccountRecord]:
        with self.reader() as uow:
            return uow.accounts.list_by_owner(owner_address)

    def mark_withdrawn(self, account_id: str, withdrawal_settlement_ref: str) -> AccountRecord:
        with self.writer() as uow:
            return self.mark_withdrawn_in(uow, account_id, withdrawal_settlement_ref)

    def mark_withdrawn_in(
        self, uow: UnitOfWork, account_id: str, withdrawal_settlement_ref: str
    ) -> AccountRecord:
        record = uow.accounts.mark_withdrawn(
            account_id, withdrawal_settlement_ref, now=self.clock()
        )
        logger.info(
            "account_marked_withdrawn",
            extra={
                "extra": {
                    "account_id": account_id,
                    "withdrawal_settlement_ref": withdrawal_settlement_ref,
                }
            },
        )
        return record

    def count_all(self) -> int:
        with self.reader() as uow:
            return uow.accounts.count_all()

    def count_by_status(self, status: AccountStatus) -> int:
        with self.reader() as uow:
            return uow.accounts.count_by_status(status)

    def sum_principal_where(self, status: AccountStatus) -> Decimal:
        with self.reader() as uow:
            return uow.accounts.sum_principal_where(status)

    def sum_interest_all(self) -> Decimal:
        with self.reader() as uow:
            return uow.accounts.sum_interest_all()
