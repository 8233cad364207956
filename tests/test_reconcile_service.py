from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import httpx
import pytest

from timelock.domain.errors import (
    IntentNotFound,
    SettledButNotRecorded,
    SettlementFailed,
    SettlementUnconfirmed,
    ValidationError,
)
from timelock.domain.models import AccountStatus, IntentKind, IntentStatus
from timelock.services.reconcile_service import ReconcileService
from timelock.services.settlement import SettlementReceipt


@pytest.fixture
def reconciler(orchestrator) -> ReconcileService:
    return ReconcileService(orchestrator)


def _database_locked(*args, **kwargs):
    raise RuntimeError("database is locked")


def _settled_but_unrecorded_creation(orchestrator, ledger, monkeypatch):
    monkeypatch.setattr(ledger, "insert_in", _database_locked)
    with pytest.raises(SettledButNotRecorded):
        orchestrator.open_lock("GOWNER", "100", 30)
    monkeypatch.delattr(ledger, "insert_in")
    [intent] = orchestrator.journal.list(IntentStatus.SETTLED)
    return intent


def test_run_records_settled_creation(reconciler, orchestrator, ledger, monkeypatch) -> None:
    intent = _settled_but_unrecorded_creation(orchestrator, ledger, monkeypatch)

    result = reconciler.run()

    assert result.recorded == [intent.intent_id]
    [record] = ledger.list_all()
    assert record.settlement_ref == intent.settlement_ref
    assert orchestrator.journal.get(intent.intent_id).status == IntentStatus.RECORDED
    assert reconciler.pending() == []


def test_run_records_settled_payout_once(
    reconciler, orchestrator, ledger, settlement, clock, monkeypatch
) -> None:
    record = orchestrator.open_lock("GOWNER", "100", 30)
    clock.set(record.unlock_at)
    monkeypatch.setattr(ledger, "mark_withdrawn_in", _database_locked)
    with pytest.raises(SettledButNotRecorded):
        orchestrator.withdraw(record.id)
    monkeypatch.delattr(ledger, "mark_withdrawn_in")

    first = reconciler.run()
    second = reconciler.run()

    assert len(first.recorded) == 1
    assert second.recorded == []
    updated = ledger.get_by_id(record.id)
    assert updated.status == AccountStatus.WITHDRAWN
    assert updated.withdrawal_settlement_ref == "tx-2"
    assert len(settlement.transfers) == 2


def test_run_confirms_unconfirmed_intent_with_known_ref(reconciler, orchestrator, ledger, settlement) -> None:
    settlement.transfer_error = SettlementUnconfirmed("504", settlement_ref="late-tx")
    with pytest.raises(SettlementUnconfirmed):
        orchestrator.open_lock("GOWNER", "100", 30)
    settlement.transfer_error = None

    still_waiting = reconciler.run()
    assert len(still_waiting.still_pending) == 1
    assert ledger.count_all() == 0

    settlement.receipts["late-tx"] = SettlementReceipt(settlement_ref="late-tx", source="GOWNER")
    result = reconciler.run()

    assert len(result.recorded) == 1
    [record] = ledger.list_all()
    assert record.settlement_ref == "late-tx"


def test_run_fails_intent_when_network_rejected_it(reconciler, orchestrator, settlement) -> None:
    settlement.transfer_error = SettlementUnconfirmed("504", settlement_ref="late-tx")
    with pytest.raises(SettlementUnconfirmed):
        orchestrator.open_lock("GOWNER", "100", 30)
    settlement.confirm_error = SettlementFailed("tx_too_late")

    result = reconciler.run()

    assert len(result.failed) == 1
    assert reconciler.pending() == []


def test_unconfirmed_without_ref_needs_operator(reconciler, orchestrator, settlement) -> None:
    settlement.transfer_error = httpx.ReadTimeout("timed out")
    with pytest.raises(SettlementUnconfirmed):
        orchestrator.open_lock("GOWNER", "100", 30)

    result = reconciler.run()

    assert len(result.needs_operator) == 1
    assert settlement.confirmed == []


def test_fresh_pending_intent_is_left_alone(reconciler, orchestrator, clock) -> None:
    intent = orchestrator.journal.open(
        kind=IntentKind.CREATE,
        owner_address="GOWNER",
        amount=Decimal("100"),
        lock_period_days=30,
        interest_amount=Decimal("5"),
    )

    assert reconciler.run().in_flight == [intent.intent_id]
    clock.advance(minutes=11)
    assert reconciler.run().needs_operator == [intent.intent_id]


def test_resolve_records_operator_supplied_ref(reconciler, orchestrator, ledger, settlement, clock) -> None:
    record = orchestrator.open_lock("GOWNER", "100", 30)
    clock.set(record.unlock_at + timedelta(days=1))
    settlement.transfer_error = httpx.ReadTimeout("timed out")
    with pytest.raises(SettlementUnconfirmed):
        orchestrator.withdraw(record.id)
    settlement.transfer_error = None
    [intent] = orchestrator.journal.list(IntentStatus.UNCONFIRMED)
    settlement.receipts["payout-hash"] = SettlementReceipt(settlement_ref="payout-hash", source="GLOCKHOLDER")

    resolved = reconciler.resolve(intent.intent_id, "payout-hash")

    assert resolved.status == IntentStatus.RECORDED
    updated = ledger.get_by_id(record.id)
    assert updated.status == AccountStatus.WITHDRAWN
    assert updated.withdrawal_settlement_ref == "payout-hash"
    with pytest.raises(ValidationError):
        reconciler.resolve(intent.intent_id, "payout-hash")


def test_resolve_creation_requires_deposit_into_lock_holder(
    reconciler, orchestrator, ledger, settlement
) -> None:
    settlement.transfer_error = httpx.ReadTimeout("timed out")
    with pytest.raises(SettlementUnconfirmed):
        orchestrator.open_lock("GOWNER", "100", 30)
    settlement.transfer_error = None
    [intent] = orchestrator.journal.list(IntentStatus.UNCONFIRMED)
    settlement.receipts["self-tx"] = SettlementReceipt(
        settlement_ref="self-tx", source="GOWNER", destination="GOWNER", amount=Decimal("100")
    )
    settlement.receipts["deposit-tx"] = SettlementReceipt(
        settlement_ref="deposit-tx", source="GOWNER", destination="GLOCKHOLDER", amount=Decimal("100")
    )

    with pytest.raises(ValidationError):
        reconciler.resolve(intent.intent_id, "self-tx")
    assert ledger.count_all() == 0

    resolved = reconciler.resolve(intent.intent_id, "deposit-tx")

    assert resolved.status == IntentStatus.RECORDED
    [record] = ledger.list_all()
    assert record.settlement_ref == "deposit-tx"


def test_abandon_releases_withdrawal_claim(reconciler, orchestrator, ledger, settlement, clock) -> None:
    record = orchestrator.open_lock("GOWNER", "100", 30)
    clock.set(record.unlock_at)
    settlement.transfer_error = httpx.ReadTimeout("timed out")
    with pytest.raises(SettlementUnconfirmed):
        orchestrator.withdraw(record.id)
    settlement.transfer_error = None
    [intent] = orchestrator.journal.list(IntentStatus.UNCONFIRMED)

    abandoned = reconciler.abandon(intent.intent_id)

    assert abandoned.status == IntentStatus.FAILED
    assert abandoned.last_error == "abandoned by operator"
    outcome = orchestrator.withdraw(record.id)
    assert outcome.record.status == AccountStatus.WITHDRAWN


def test_abandon_refuses_settled_intent(reconciler, orchestrator, ledger, monkeypatch) -> None:
    intent = _settled_but_unrecorded_creation(orchestrator, ledger, monkeypatch)
    with pytest.raises(ValidationError):
        reconciler.abandon(intent.intent_id)


def test_unknown_intent(reconciler) -> None:
    with pytest.raises(IntentNotFound):
        reconciler.abandon("missing")
