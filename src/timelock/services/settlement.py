from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol


@dataclass(frozen=True)
class TransferRequest:
    source: str
    destination: str
    amount: Decimal
    memo: str


@dataclass(frozen=True)
class SettlementReceipt:
    """Normalized proof that a transfer settled on the network."""

    settlement_ref: str
    successful: bool = True
    source: str | None = None
    ledger: int | None = None
    memo: str | None = None
    destination: str | None = None
    amount: Decimal | None = None


class SettlementClient(Protocol):
    """Moves funds on the external network.

    ``transfer`` returns only after the network confirmed the transfer. It raises
    ``SettlementFailed`` when nothing moved and ``SettlementUnconfirmed`` when the
    outcome is unknown. ``confirm`` checks a reference produced elsewhere (for
    example by a browser wallet) with the same error contract.
    """

    def transfer(self, request: TransferRequest) -> SettlementReceipt: ...

    def confirm(self, settlement_ref: str) -> SettlementReceipt: ...

    def close(self) -> None: ...


def timelock_memo(unlock_unix: int) -> str:
    return f"TIMELOCK:{unlock_unix}"


def withdraw_memo() -> str:
    return "WITHDRAW"
