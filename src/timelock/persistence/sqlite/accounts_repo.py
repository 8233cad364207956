from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from decimal import Decimal
from uuid import uuid4

from timelock.domain.errors import AlreadyWithdrawn, NotFound, NotMatured, ValidationError
from timelock.domain.models import AccountRecord, AccountStatus, NewAccount, ensure_utc
from timelock.persistence.sqlite.sqlite_connection import ensure_schema

logger = logging.getLogger(__name__)


def format_ts(value: datetime) -> str:
    # Fixed width so text comparison in SQL orders like the timestamps.
    return ensure_utc(value).isoformat(timespec="microseconds")


def parse_ts(value: object) -> datetime:
    return datetime.fromisoformat(str(value))


class SqliteAccountsRepo:
    def __init__(self, conn: sqlite3.Connection, *, read_only: bool = False) -> None:
        self._conn = conn
        self._read_only = read_only
        ensure_schema(conn)

    def _ensure_writable(self) -> None:
        if self._read_only:
            logger.warning("read_only_write_blocked", extra={"extra": {"repo": "accounts"}})
            raise PermissionError("UnitOfWork is read-only; accounts writes are blocked")

    def _row_to_record(self, row: sqlite3.Row) -> AccountRecord:
        return AccountRecord(
            id=str(row["id"]),
            owner_address=str(row["owner_address"]),
            principal=Decimal(str(row["principal"])),
            lock_period_days=int(row["lock_period_days"]),
            interest_amount=Decimal(str(row["interest_amount"])),
            created_at=parse_ts(row["created_at"]),
            unlock_at=parse_ts(row["unlock_at"]),
            status=AccountStatus(str(row["status"])),
            settlement_ref=str(row["settlement_ref"]),
            withdrawal_settlement_ref=(
                str(row["withdrawal_settlement_ref"]) if row["withdrawal_settlement_ref"] else None
            ),
            withdrawn_at=parse_ts(row["withdrawn_at"]) if row["withdrawn_at"] else None,
        )

    def insert(self, account: NewAccount, *, now: datetime, unlock_at: datetime) -> AccountRecord:
        self._ensure_writable()
        account.validate()
        existing = self.get_by_settlement_ref(account.settlement_ref)
        if existing is not None:
            if (
                existing.owner_address == account.owner_address
                and existing.principal == account.principal
                and existing.lock_period_days == account.lock_period_days
            ):
                logger.info(
                    "account_insert_deduplicated",
                    extra={"extra": {"account_id": existing.id, "settlement_ref": account.settlement_ref}},
                )
                return existing
            raise ValidationError(
                f"settlementRef {account.settlement_ref} already backs account {existing.id}"
            )

        account_id = uuid4().hex
        self._conn.execute(
            """
            INSERT INTO accounts(
                id, owner_address, principal, lock_period_days, interest_amount,
                created_at, unlock_at, status, settlement_ref
            ) VALUES (?, ?, ?, ?, ?, ?, ?, 'locked', ?)
            """,
            (
                account_id,
                account.owner_address,
                str(account.principal),
                account.lock_period_days,
                str(account.interest_amount),
                format_ts(now),
                format_ts(unlock_at),
                account.settlement_ref,
            ),
        )
        record = self.get_by_id(account_id)
        if record is None:
            raise RuntimeError(f"inserted account {account_id} could not be read back")
        return record

    def get_by_id(self, account_id: str) -> AccountRecord | None:
        row = self._conn.execute("SELECT * FROM accounts WHERE id = ?", (account_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_record(row)

    def get_by_settlement_ref(self, settlement_ref: str) -> AccountRecord | None:
        row = self._conn.execute(
            "SELECT * FROM accounts WHERE settlement_ref = ?",
            (settlement_ref,),
        ).fetchone()
        if row is None:
            return None
        return self._row_to_record(row)

    def list_all(self) -> list[AccountRecord]:
        rows = self._conn.execute(
            "SELECT * FROM accounts ORDER BY created_at DESC, rowid DESC"
        ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def list_by_owner(self, owner_address: str) -> list[AccountRecord]:
        rows = self._conn.execute(
            "SELECT * FROM accounts WHERE owner_address = ? ORDER BY created_at DESC, rowid DESC",
            (owner_address,),
        ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def mark_withdrawn(
        self,
        account_id: str,
        withdrawal_settlement_ref: str,
        *,
        now: datetime,
    ) -> AccountRecord:
        self._ensure_writable()
        if not withdrawal_settlement_ref or not withdrawal_settlement_ref.strip():
            raise ValidationError("withdrawalSettlementRef is required")
        now_ts = format_ts(now)
        cursor = self._conn.execute(
            """
            UPDATE accounts
            SET status='withdrawn', withdrawal_settlement_ref=?, withdrawn_at=?
            WHERE id=? AND status='locked' AND unlock_at <= ?
            """,
            (withdrawal_settlement_ref, now_ts, account_id, now_ts),
        )
        record = self.get_by_id(account_id)
        if cursor.rowcount == 1 and record is not None:
            return record

        if record is None:
            raise NotFound(account_id)
        if record.status == AccountStatus.WITHDRAWN:
            if record.withdrawal_settlement_ref == withdrawal_settlement_ref:
                return record
            raise AlreadyWithdrawn(account_id)
        raise NotMatured(account_id, record.unlock_at)

    def count_all(self) -> int:
        row = self._conn.execute("SELECT COUNT(*) AS n FROM accounts").fetchone()
        return int(row["n"])

    def count_by_status(self, status: AccountStatus) -> int:
        row = self._conn.execute(
            "SELECT COUNT(*) AS n FROM accounts WHERE status = ?",
            (AccountStatus(status).value,),
        ).fetchone()
        return int(row["n"])

    def sum_principal_where(self, status: AccountStatus) -> Decimal:
        rows = self._conn.execute(
            "SELECT principal FROM accounts WHERE status = ?",
            (AccountStatus(status).value,),
        ).fetchall()
        return sum((Decimal(str(row["principal"])) for row in rows), Decimal("0"))

    def sum_interest_all(self) -> Decimal:
        rows = self._conn.execute("SELECT interest_amount FROM accounts").fetchall()
        return sum((Decimal(str(row["interest_amount"])) for row in rows), Decimal("0"))
