from __future__ import annotations

import logging
import os
from datetime import UTC, datetime, timedelta
from pathlib import Path
from threading import Lock

import pytest

from timelock.config import Settings
from timelock.domain.errors import SettlementUnconfirmed
from timelock.persistence.uow import UnitOfWorkFactory
from timelock.services.ledger_store import LedgerStore
from timelock.services.orchestrator import TransactionOrchestrator
from timelock.services.settlement import SettlementReceipt, TransferRequest

LOCK_HOLDER = "GLOCKHOLDER"
OWNER = "GOWNER"


@pytest.fixture(autouse=True)
def isolate_settings_from_host_env(monkeypatch: pytest.MonkeyPatch):
    original_env_file = Settings.model_config.get("env_file")
    Settings.model_config["env_file"] = None

    settings_env_keys: set[str] = set()
    for field in Settings.model_fields.values():
        if isinstance(field.alias, str):
            settings_env_keys.add(field.alias)

    for key in list(os.environ):
        if key in settings_env_keys:
            monkeypatch.delenv(key, raising=False)

    yield

    Settings.model_config["env_file"] = original_env_file


@pytest.fixture(autouse=True)
def isolate_default_state_db_per_test(
    isolate_settings_from_host_env: None,
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    del isolate_settings_from_host_env
    monkeypatch.setenv("STATE_DB_PATH", str(tmp_path / "timelock_state.db"))


@pytest.fixture(autouse=True)
def restore_root_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


class FixedClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now = self.now + timedelta(**delta)

    def set(self, value: datetime) -> None:
        self.now = value


class FakeSettlementClient:
    """Settles every transfer unless told to fail; records what it was asked to do."""

    def __init__(self) -> None:
        self._lock = Lock()
        self.transfers: list[TransferRequest] = []
        self.confirmed: list[str] = []
        self.transfer_error: Exception | None = None
        self.confirm_error: Exception | None = None
        self.receipts: dict[str, SettlementReceipt] = {}
        self.closed = False

    def transfer(self, request: TransferRequest) -> SettlementReceipt:
        with self._lock:
            self.transfers.append(request)
            if self.transfer_error is not None:
                raise self.transfer_error
            ref = f"tx-{len(self.transfers)}"
            receipt = SettlementReceipt(
                settlement_ref=ref,
                source=request.source,
                memo=request.memo,
                destination=request.destination,
                amount=request.amount,
            )
            self.receipts[ref] = receipt
            return receipt

    def confirm(self, settlement_ref: str) -> SettlementReceipt:
        self.confirmed.append(settlement_ref)
        if self.confirm_error is not None:
            raise self.confirm_error
        receipt = self.receipts.get(settlement_ref)
        if receipt is None:
            raise SettlementUnconfirmed(f"{settlement_ref} unknown", settlement_ref=settlement_ref)
        return receipt

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2026, 1, 1, 12, 0, tzinfo=UTC))


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    return str(tmp_path / "ledger.db")


@pytest.fixture
def ledger(db_path: str, clock: FixedClock) -> LedgerStore:
    return LedgerStore(UnitOfWorkFactory(db_path), clock=clock)


@pytest.fixture
def settlement() -> FakeSettlementClient:
    return FakeSettlementClient()


@pytest.fixture
def orchestrator(ledger: LedgerStore, settlement: FakeSettlementClient) -> TransactionOrchestrator:
    return TransactionOrchestrator(ledger, settlement, lock_holder_address=LOCK_HOLDER)
