from __future__ import annotations

import logging
from decimal import Decimal

from timelock.domain.errors import IntentNotFound
from timelock.domain.models import IntentKind, IntentStatus, SettlementIntent
from timelock.services.ledger_store import LedgerStore

logger = logging.getLogger(__name__)

OPEN_INTENT_STATUSES = (IntentStatus.PENDING, IntentStatus.SETTLED, IntentStatus.UNCONFIRMED)


class IntentJournal:
    """Write-ahead record of every transfer the service initiates."""

    def __init__(self, ledger: LedgerStore) -> None:
        self._ledger = ledger

    def open(
        self,
        *,
        kind: IntentKind,
        owner_address: str,
        amount: Decimal,
        lock_period_days: int | None = None,
        interest_amount: Decimal | None = None,
    ) -> SettlementIntent:
        with self._ledger.writer() as uow:
            intent = uow.intents.open_intent(
                kind=kind,
                owner_address=owner_address,
                amount=amount,
                now=self._ledger.clock(),
                lock_period_days=lock_period_days,
                interest_amount=interest_amount,
            )
        logger.info(
            "settlement_intent_opened",
            extra={"extra": {"intent_id": intent.intent_id, "kind": str(kind), "amount": str(amount)}},
        )
        return intent

    def get(self, intent_id: str) -> SettlementIntent:
        with self._ledger.reader() as uow:
            intent = uow.intents.get(intent_id)
        if intent is None:
            raise IntentNotFound(intent_id)
        return intent

    def list(self, *statuses: IntentStatus) -> list[SettlementIntent]:
        with self._ledger.reader() as uow:
            return uow.intents.list_by_status(*statuses)

    def mark(
        self,
        intent_id: str,
        status: IntentStatus,
        *,
        settlement_ref: str | None = None,
        last_error: str | None = None,
    ) -> None:
        with self._ledger.writer() as uow:
            uow.intents.transition(
                intent_id,
                status,
                now=self._ledger.clock(),
                settlement_ref=settlement_ref,
                last_error=last_error,
            )
        logger.info(
            "settlement_intent_transition",
            extra={
                "extra": {
                    "intent_id": intent_id,
                    "status": str(status),
                    "settlement_ref": settlement_ref,
                    "last_error": last_error,
                }
            },
        )

    def mark_after_failure(
        self,
        intent_id: str,
        status: IntentStatus,
        *,
        settlement_ref: str | None = None,
        last_error: str | None = None,
    ) -> bool:
        """Best-effort transition while another error is already propagating."""
        try:
            self.mark(intent_id, status, settlement_ref=settlement_ref, last_error=last_error)
        except Exception:
            logger.exception(
                "settlement_intent_transition_failed",
                extra={"extra": {"intent_id": intent_id, "status": str(status), "settlement_ref": settlement_ref}},
            )
            return False
        return True
