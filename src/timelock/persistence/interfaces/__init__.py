from timelock.persistence.interfaces.accounts_repo import AccountsRepoProtocol
from timelock.persistence.interfaces.intents_repo import IntentsRepoProtocol

__all__ = ["AccountsRepoProtocol", "IntentsRepoProtocol"]
