from __future__ import annotations

import logging
import sqlite3
from datetime import timedelta
from decimal import Decimal

import httpx
import pytest

from timelock.domain.errors import (
    NotMatured,
    SettledButNotRecorded,
    SettlementFailed,
    SettlementUnconfirmed,
    UnsupportedPeriod,
    ValidationError,
)
from timelock.domain.models import AccountStatus, IntentKind, IntentStatus
from timelock.services.settlement import SettlementReceipt
from timelock.services.stats_service import StatsService

LOCK_HOLDER = "GLOCKHOLDER"
OWNER = "GOWNER"


def test_open_lock_settles_then_records(orchestrator, ledger, settlement, clock) -> None:
    record = orchestrator.open_lock("GOWNER", "100", 30)

    assert record.principal == Decimal("100")
    assert record.interest_amount == Decimal("5")
    assert record.status == AccountStatus.LOCKED
    assert record.settlement_ref == "tx-1"
    assert record.unlock_at == clock.now + timedelta(days=30)
    [transfer] = settlement.transfers
    assert transfer.source == "GOWNER"
    assert transfer.destination == "GLOCKHOLDER"
    assert transfer.amount == Decimal("100")
    assert transfer.memo == f"TIMELOCK:{int(record.unlock_at.timestamp())}"
    [intent] = orchestrator.journal.list()
    assert intent.kind == IntentKind.CREATE
    assert intent.status == IntentStatus.RECORDED
    assert intent.account_id == record.id


def test_scenario_create_then_stats(orchestrator, ledger) -> None:
    orchestrator.open_lock("GOWNER", 100, 30)

    stats = StatsService(ledger).snapshot()

    assert stats.total_accounts == 1
    assert stats.active_accounts == 1
    assert stats.total_locked == Decimal("100")
    assert stats.total_interest_committed == Decimal("5")


def test_empty_ledger_stats_are_zero(ledger) -> None:
    stats = StatsService(ledger).snapshot()
    assert (stats.total_accounts, stats.active_accounts) == (0, 0)
    assert stats.total_locked == Decimal("0")
    assert stats.total_interest_committed == Decimal("0")


def test_withdraw_immediately_after_creation_is_not_matured(orchestrator) -> None:
    record = orchestrator.open_lock("GOWNER", "100", 30)
    with pytest.raises(NotMatured):
        orchestrator.withdraw(record.id)


def test_withdraw_after_unlock_reports_payout(orchestrator, clock) -> None:
    record = orchestrator.open_lock("GOWNER", "100", 30)
    clock.set(record.unlock_at + timedelta(seconds=1))

    outcome = orchestrator.withdraw(record.id)

    assert outcome.payout_amount == Decimal("105.00")
    assert outcome.record.status == AccountStatus.WITHDRAWN


@pytest.mark.parametrize(
    ("owner", "amount", "period", "error"),
    [
        ("GOWNER", 0, 30, ValidationError),
        ("GOWNER", "-1", 30, ValidationError),
        ("GOWNER", "abc", 30, ValidationError),
        ("GOWNER", "NaN", 30, ValidationError),
        ("GOWNER", True, 30, ValidationError),
        ("GOWNER", "1.00000004", 30, ValidationError),
        ("GOWNER", "1e40", 30, ValidationError),
        ("", "10", 30, ValidationError),
        ("GOWNER", "10", 45, UnsupportedPeriod),
        ("GOWNER", "10", "30", UnsupportedPeriod),
    ],
)
def test_invalid_creation_settles_and_records_nothing(
    orchestrator, ledger, settlement, owner, amount, period, error
) -> None:
    with pytest.raises(error):
        orchestrator.open_lock(owner, amount, period)

    assert settlement.transfers == []
    assert ledger.count_all() == 0
    assert orchestrator.journal.list() == []


def test_failed_deposit_writes_no_record(orchestrator, ledger, settlement) -> None:
    settlement.transfer_error = SettlementFailed("tx_bad_auth")

    with pytest.raises(SettlementFailed):
        orchestrator.open_lock("GOWNER", "100", 30)

    assert ledger.count_all() == 0
    [intent] = orchestrator.journal.list()
    assert intent.status == IntentStatus.FAILED


def test_unconfirmed_deposit_writes_no_record(orchestrator, ledger, settlement) -> None:
    settlement.transfer_error = httpx.WriteTimeout("timed out")

    with pytest.raises(SettlementUnconfirmed):
        orchestrator.open_lock("GOWNER", "100", 30)

    assert ledger.count_all() == 0
    [intent] = orchestrator.journal.list()
    assert intent.status == IntentStatus.UNCONFIRMED


def test_connect_error_before_submission_is_a_clean_failure(orchestrator, ledger, settlement) -> None:
    settlement.transfer_error = httpx.ConnectError("refused")

    with pytest.raises(SettlementFailed):
        orchestrator.open_lock("GOWNER", "100", 30)
    assert ledger.count_all() == 0


def test_ledger_failure_after_deposit_is_reported(orchestrator, ledger, monkeypatch) -> None:
    def broken_insert(uow, account):
        raise RuntimeError("disk full")

    monkeypatch.setattr(ledger, "insert_in", broken_insert)

    with pytest.raises(SettledButNotRecorded) as excinfo:
        orchestrator.open_lock("GOWNER", "100", 30)

    assert excinfo.value.settlement_ref == "tx-1"
    assert excinfo.value.details()["intentKind"] == "create"
    [intent] = orchestrator.journal.list()
    assert intent.status == IntentStatus.SETTLED

    monkeypatch.delattr(ledger, "insert_in")
    record = orchestrator.complete_creation(intent.intent_id, "tx-1")
    assert record.settlement_ref == "tx-1"
    assert ledger.count_all() == 1


def _wallet_deposit(ref: str = "wallet-tx", **overrides) -> SettlementReceipt:
    fields = {
        "settlement_ref": ref,
        "source": OWNER,
        "memo": "TIMELOCK:1767225600",
        "destination": LOCK_HOLDER,
        "amount": Decimal("250"),
    }
    fields.update(overrides)
    return SettlementReceipt(**fields)


def test_record_lock_confirms_wallet_deposit(orchestrator, ledger, settlement) -> None:
    settlement.receipts["wallet-tx"] = _wallet_deposit(amount=Decimal("250.0000000"))

    record = orchestrator.record_lock("GOWNER", "250", 90, "wallet-tx")
    again = orchestrator.record_lock("GOWNER", "250", 90, "wallet-tx")

    assert record.interest_amount == Decimal("30")
    assert record.settlement_ref == "wallet-tx"
    assert again.id == record.id
    assert settlement.transfers == []
    assert ledger.count_all() == 1


@pytest.mark.parametrize(
    "overrides",
    [
        {"source": "GSOMEONE"},
        {"memo": "rent"},
        {"destination": OWNER},
        {"destination": None, "amount": None},
        {"amount": Decimal("0.0000001")},
        {"amount": Decimal("250.0000001")},
    ],
)
def test_record_lock_rejects_deposit_that_does_not_back_the_lock(
    orchestrator, ledger, settlement, overrides
) -> None:
    settlement.receipts["wallet-tx"] = _wallet_deposit(**overrides)

    with pytest.raises(ValidationError):
        orchestrator.record_lock("GOWNER", "250", 90, "wallet-tx")
    assert ledger.count_all() == 0


def test_record_lock_rejects_unsuccessful_deposit(orchestrator, ledger, settlement) -> None:
    settlement.receipts["wallet-tx"] = _wallet_deposit(successful=False)

    with pytest.raises(SettlementFailed):
        orchestrator.record_lock("GOWNER", "250", 90, "wallet-tx")
    assert ledger.count_all() == 0


def test_record_lock_unknown_ref_is_unconfirmed(orchestrator, ledger) -> None:
    with pytest.raises(SettlementUnconfirmed):
        orchestrator.record_lock("GOWNER", "250", 90, "never-seen")
    assert ledger.count_all() == 0


def test_record_lock_validates_before_confirming(orchestrator, settlement) -> None:
    with pytest.raises(ValidationError):
        orchestrator.record_lock("GOWNER", "0", 90, "wallet-tx")
    with pytest.raises(ValidationError):
        orchestrator.record_lock("GOWNER", "10", 90, "  ")
    with pytest.raises(ValidationError):
        orchestrator.record_lock("GOWNER", "250.00000001", 90, "wallet-tx")
    assert settlement.confirmed == []


def test_amount_at_stroop_precision_settles_exactly(orchestrator, settlement) -> None:
    record = orchestrator.open_lock("GOWNER", "1.0000001", 30)

    [request] = settlement.transfers
    assert request.amount == Decimal("1.0000001")
    assert record.principal == request.amount


def test_ledger_failure_after_wallet_deposit_is_reported(
    orchestrator, ledger, settlement, monkeypatch, caplog
) -> None:
    settlement.receipts["wallet-tx"] = _wallet_deposit()

    def locked_insert(account):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(ledger, "insert", locked_insert)

    with caplog.at_level(logging.ERROR, logger="timelock.services.orchestrator"):
        with pytest.raises(SettledButNotRecorded) as excinfo:
            orchestrator.record_lock("GOWNER", "250", 90, "wallet-tx")

    error = excinfo.value
    assert error.settlement_ref == "wallet-tx"
    assert error.details()["intentKind"] == "create"
    assert error.details()["amount"] == "250"
    assert isinstance(error.__cause__, sqlite3.OperationalError)
    assert [record.getMessage() for record in caplog.records] == ["settled_but_not_recorded"]

    monkeypatch.delattr(ledger, "insert")
    record = orchestrator.record_lock("GOWNER", "250", 90, "wallet-tx")
    assert record.settlement_ref == "wallet-tx"


def test_record_lock_reused_ref_with_other_terms_stays_a_validation_error(
    orchestrator, ledger, settlement
) -> None:
    settlement.receipts["wallet-tx"] = _wallet_deposit()
    orchestrator.record_lock("GOWNER", "250", 90, "wallet-tx")

    with pytest.raises(ValidationError) as excinfo:
        orchestrator.record_lock("GOWNER", "250", 30, "wallet-tx")

    assert not isinstance(excinfo.value, SettledButNotRecorded)
    assert ledger.count_all() == 1
