from __future__ import annotations

import sqlite3
from dataclasses import dataclass

from timelock.persistence.interfaces import AccountsRepoProtocol, IntentsRepoProtocol
from timelock.persistence.sqlite.accounts_repo import SqliteAccountsRepo
from timelock.persistence.sqlite.intents_repo import SqliteIntentsRepo
from timelock.persistence.sqlite.sqlite_connection import create_sqlite_connection, ensure_schema


class UnitOfWork:
    def __init__(self, db_path: str, *, read_only: bool = False) -> None:
        self._db_path = db_path
        self.read_only = read_only
        self._conn: sqlite3.Connection | None = None
        self.accounts: AccountsRepoProtocol
        self.intents: IntentsRepoProtocol

    def __enter__(self) -> UnitOfWork:
        conn = create_sqlite_connection(self._db_path)
        ensure_schema(conn)
        if self.read_only:
            conn.execute("BEGIN")
        else:
            # Take the write lock up front so read-check-write runs as one step.
            conn.execute("BEGIN IMMEDIATE")
        self._conn = conn
        self.accounts = SqliteAccountsRepo(conn, read_only=self.read_only)
        self.intents = SqliteIntentsRepo(conn, read_only=self.read_only)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._conn is None:
            return
        try:
            if exc_type is None:
                self._conn.commit()
            else:
                self._conn.rollback()
        finally:
            self._conn.close()
            self._conn = None


@dataclass(frozen=True)
class UnitOfWorkFactory:
    db_path: str
    read_only: bool = False

    def __call__(self) -> UnitOfWork:
        return UnitOfWork(self.db_path, read_only=self.read_only)

    def reader(self) -> UnitOfWork:
        return UnitOfWork(self.db_path, read_only=True)
