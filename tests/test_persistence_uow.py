from __future__ import annotations

import sqlite3
from datetime import UTC, datetime
from decimal import Decimal

import pytest

from timelock.domain.errors import AlreadyWithdrawn
from timelock.domain.models import IntentKind, IntentStatus
from timelock.persistence.uow import UnitOfWorkFactory

NOW = datetime(2026, 3, 1, tzinfo=UTC)


def _open_withdraw(uow, account_id: str = "acc-1"):
    return uow.intents.open_intent(
        kind=IntentKind.WITHDRAW,
        owner_address="GOWNER",
        amount=Decimal("105"),
        now=NOW,
        account_id=account_id,
    )


def test_uow_commit_and_rollback(tmp_path) -> None:
    db = tmp_path / "state.sqlite"
    factory = UnitOfWorkFactory(str(db))

    with factory() as uow:
        kept = _open_withdraw(uow, "acc-kept")

    with pytest.raises(RuntimeError):
        with factory() as uow:
            _open_withdraw(uow, "acc-dropped")
            raise RuntimeError("boom")

    with sqlite3.connect(db) as conn:
        rows = conn.execute("SELECT intent_id FROM settlement_intents").fetchall()
    assert rows == [(kept.intent_id,)]


def test_second_live_withdraw_intent_is_refused(tmp_path) -> None:
    factory = UnitOfWorkFactory(str(tmp_path / "state.sqlite"))
    with factory() as uow:
        first = _open_withdraw(uow)

    with pytest.raises(AlreadyWithdrawn):
        with factory() as uow:
            _open_withdraw(uow)

    with factory() as uow:
        uow.intents.transition(first.intent_id, IntentStatus.FAILED, now=NOW, last_error="rejected")
        retry = _open_withdraw(uow)
        assert uow.intents.active_withdraw_intent("acc-1") == retry


def test_transition_keeps_ref_and_rejects_unknown_intent(tmp_path) -> None:
    factory = UnitOfWorkFactory(str(tmp_path / "state.sqlite"))
    with factory() as uow:
        intent = _open_withdraw(uow)
        uow.intents.transition(intent.intent_id, IntentStatus.UNCONFIRMED, now=NOW, settlement_ref="h-1")
        uow.intents.transition(intent.intent_id, IntentStatus.SETTLED, now=NOW)
        with pytest.raises(LookupError):
            uow.intents.transition("missing", IntentStatus.FAILED, now=NOW)

    with factory.reader() as uow:
        stored = uow.intents.get(intent.intent_id)
        assert stored is not None
        assert stored.status == IntentStatus.SETTLED
        assert stored.settlement_ref == "h-1"
        assert uow.intents.list_by_status(IntentStatus.PENDING) == []
        assert uow.intents.list_by_status() == [stored]


def test_reader_blocks_intent_writes(tmp_path) -> None:
    factory = UnitOfWorkFactory(str(tmp_path / "state.sqlite"))
    with pytest.raises(PermissionError):
        with factory.reader() as uow:
            _open_withdraw(uow)
