from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from decimal import Decimal
from uuid import uuid4

from timelock.domain.errors import AlreadyWithdrawn
from timelock.domain.models import IntentKind, IntentStatus, SettlementIntent
from timelock.persistence.sqlite.accounts_repo import format_ts, parse_ts
from timelock.persistence.sqlite.sqlite_connection import ensure_schema

logger = logging.getLogger(__name__)


class SqliteIntentsRepo:
    def __init__(self, conn: sqlite3.Connection, *, read_only: bool = False) -> None:
        self._conn = conn
        self._read_only = read_only
        ensure_schema(conn)

    def _ensure_writable(self) -> None:
        if self._read_only:
            logger.warning("read_only_write_blocked", extra={"extra": {"repo": "intents"}})
            raise PermissionError("UnitOfWork is read-only; intents writes are blocked")

    def _row_to_intent(self, row: sqlite3.Row) -> SettlementIntent:
        return SettlementIntent(
            intent_id=str(row["intent_id"]),
            kind=IntentKind(str(row["kind"])),
            owner_address=str(row["owner_address"]),
            amount=Decimal(str(row["amount"])),
            status=IntentStatus(str(row["status"])),
            created_at=parse_ts(row["created_at"]),
            updated_at=parse_ts(row["updated_at"]),
            account_id=str(row["account_id"]) if row["account_id"] else None,
            lock_period_days=(
                int(row["lock_period_days"]) if row["lock_period_days"] is not None else None
            ),
            interest_amount=(
                Decimal(str(row["interest_amount"])) if row["interest_amount"] is not None else None
            ),
            settlement_ref=str(row["settlement_ref"]) if row["settlement_ref"] else None,
            last_error=str(row["last_error"]) if row["last_error"] else None,
        )

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
    ) -> SettlementIntent:
        self._ensure_writable()
        intent_id = uuid4().hex
        now_ts = format_ts(now)
        try:
            self._conn.execute(
                """
                INSERT INTO settlement_intents(
                    intent_id, kind, account_id, owner_address, amount, lock_period_days,
                    interest_amount, status, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    intent_id,
                    IntentKind(kind).value,
                    account_id,
                    owner_address,
                    str(amount),
                    lock_period_days,
                    str(interest_amount) if interest_amount is not None else None,
                    IntentStatus.PENDING.value,
                    now_ts,
                    now_ts,
                ),
            )
        except sqlite3.IntegrityError as exc:
            if kind == IntentKind.WITHDRAW and account_id is not None:
                raise AlreadyWithdrawn(account_id, "a withdrawal is already in progress") from exc
            raise
        intent = self.get(intent_id)
        if intent is None:
            raise RuntimeError(f"opened intent {intent_id} could not be read back")
        return intent

    def get(self, intent_id: str) -> SettlementIntent | None:
        row = self._conn.execute(
            "SELECT * FROM settlement_intents WHERE intent_id = ?",
            (intent_id,),
        ).fetchone()
        if row is None:
            return None
        return self._row_to_intent(row)

    def active_withdraw_intent(self, account_id: str) -> SettlementIntent | None:
        row = self._conn.execute(
            """
            SELECT * FROM settlement_intents
            WHERE kind = 'withdraw' AND account_id = ? AND status != 'failed'
            """,
            (account_id,),
        ).fetchone()
        if row is None:
            return None
        return self._row_to_intent(row)

    def list_by_status(self, *statuses: IntentStatus) -> list[SettlementIntent]:
        query = "SELECT * FROM settlement_intents"
        params: list[str] = []
        if statuses:
            placeholders = ",".join("?" for _ in statuses)
            query += f" WHERE status IN ({placeholders})"
            params.extend(IntentStatus(status).value for status in statuses)
        query += " ORDER BY created_at, intent_id"
        rows = self._conn.execute(query, params).fetchall()
        return [self._row_to_intent(row) for row in rows]

    def transition(
        self,
        intent_id: str,
        status: IntentStatus,
        *,
        now: datetime,
        settlement_ref: str | None = None,
        account_id: str | None = None,
        last_error: str | None = None,
    ) -> None:
        self._ensure_writable()
        cursor = self._conn.execute(
            """
            UPDATE settlement_intents
            SET status=?,
                settlement_ref=COALESCE(?, settlement_ref),
                account_id=COALESCE(?, account_id),
                last_error=?,
                updated_at=?
            WHERE intent_id=?
            """,
            (
                IntentStatus(status).value,
                settlement_ref,
                account_id,
                last_error,
                format_ts(now),
                intent_id,
            ),
        )
        if cursor.rowcount != 1:
            raise LookupError(f"settlement intent {intent_id} not found")
