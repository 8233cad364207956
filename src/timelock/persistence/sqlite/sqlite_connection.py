from __future__ import annotations

import sqlite3


def create_sqlite_connection(db_path: str) -> sqlite3.Connection:
    # Transactions are opened explicitly by the unit of work.
    conn = sqlite3.connect(db_path, timeout=30.0, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA busy_timeout = 5000")
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


def ensure_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS accounts (
            id TEXT PRIMARY KEY,
            owner_address TEXT NOT NULL CHECK (length(owner_address) > 0),
            principal TEXT NOT NULL,
            lock_period_days INTEGER NOT NULL,
            interest_amount TEXT NOT NULL,
            created_at TEXT NOT NULL,
            unlock_at TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'locked' CHECK (status IN ('locked', 'withdrawn')),
            settlement_ref TEXT NOT NULL CHECK (length(settlement_ref) > 0),
            withdrawal_settlement_ref TEXT,
            withdrawn_at TEXT,
            CHECK ((status = 'withdrawn') = (withdrawal_settlement_ref IS NOT NULL))
        )
        """
    )
    conn.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_accounts_settlement_ref_unique
        ON accounts(settlement_ref)
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_accounts_owner_created ON accounts(owner_address, created_at)"
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_accounts_created ON accounts(created_at)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_accounts_status ON accounts(status)")

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS settlement_intents (
            intent_id TEXT PRIMARY KEY,
            kind TEXT NOT NULL CHECK (kind IN ('create', 'withdraw')),
            account_id TEXT,
            owner_address TEXT NOT NULL,
            amount TEXT NOT NULL,
            lock_period_days INTEGER,
            interest_amount TEXT,
            status TEXT NOT NULL,
            settlement_ref TEXT,
            last_error TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    # One live payout per account: a second claim fails on this index.
    conn.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_intents_active_withdraw_unique
        ON settlement_intents(account_id)
        WHERE kind = 'withdraw' AND status != 'failed'
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_intents_status ON settlement_intents(status)")
