from timelock.persistence.sqlite.accounts_repo import SqliteAccountsRepo
from timelock.persistence.sqlite.intents_repo import SqliteIntentsRepo

__all__ = ["SqliteAccountsRepo", "SqliteIntentsRepo"]
