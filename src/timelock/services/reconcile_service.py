from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta

from timelock.domain.errors import (
    SettledButNotRecorded,
    SettlementFailed,
    SettlementUnconfirmed,
    ValidationError,
)
from timelock.domain.models import IntentKind, IntentStatus, SettlementIntent
from timelock.logging_context import with_logging_context
from timelock.services.intent_journal import OPEN_INTENT_STATUSES
from timelock.services.orchestrator import TransactionOrchestrator, check_deposit_receipt

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    recorded: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    still_pending: list[str] = field(default_factory=list)
    needs_operator: list[str] = field(default_factory=list)
    in_flight: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, list[str]]:
        return {
            "recorded": list(self.recorded),
            "failed": list(self.failed),
            "still_pending": list(self.still_pending),
            "needs_operator": list(self.needs_operator),
            "in_flight": list(self.in_flight),
        }


class ReconcileService:
    """Drives settled-but-unrecorded and unconfirmed transfers to a final state."""

    def __init__(
        self,
        orchestrator: TransactionOrchestrator,
        *,
        stale_after: timedelta = timedelta(minutes=10),
    ) -> None:
        self._orchestrator = orchestrator
        self._journal = orchestrator.journal
        self._clock = orchestrator.ledger.clock
        self._stale_after = stale_after

    def pending(self) -> list[SettlementIntent]:
        return self._journal.list(*OPEN_INTENT_STATUSES)

    def run(self) -> ReconcileResult:
        result = ReconcileResult()
        for intent in self.pending():
            with with_logging_context(intent_id=intent.intent_id, account_id=intent.account_id):
                self._reconcile_one(intent, result)
        logger.info(
            "reconcile_finished",
            extra={"extra": {key: len(value) for key, value in result.as_dict().items()}},
        )
        return result

    def _reconcile_one(self, intent: SettlementIntent, result: ReconcileResult) -> None:
        if intent.status == IntentStatus.SETTLED and intent.settlement_ref:
            self._record(intent, intent.settlement_ref, result)
            return
        if intent.status == IntentStatus.PENDING:
            if self._clock() - intent.updated_at < self._stale_after:
                result.in_flight.append(intent.intent_id)
            else:
                logger.warning(
                    "reconcile_stale_pending_intent",
                    extra={"extra": {"intent_id": intent.intent_id, "kind": str(intent.kind)}},
                )
                result.needs_operator.append(intent.intent_id)
            return
        if not intent.settlement_ref:
            result.needs_operator.append(intent.intent_id)
            return

        try:
            receipt = self._orchestrator.settlement.confirm(intent.settlement_ref)
        except SettlementUnconfirmed:
            result.still_pending.append(intent.intent_id)
            return
        except SettlementFailed as exc:
            self._journal.mark(intent.intent_id, IntentStatus.FAILED, last_error=exc.message)
            result.failed.append(intent.intent_id)
            return
        if not receipt.successful:
            self._journal.mark(
                intent.intent_id,
                IntentStatus.FAILED,
                last_error=f"{receipt.settlement_ref} was not successful",
            )
            result.failed.append(intent.intent_id)
            return
        self._record(intent, receipt.settlement_ref, result)

    def _record(self, intent: SettlementIntent, settlement_ref: str, result: ReconcileResult) -> None:
        try:
            self._finish(intent, settlement_ref)
        except SettledButNotRecorded:
            result.still_pending.append(intent.intent_id)
            return
        result.recorded.append(intent.intent_id)

    def _finish(self, intent: SettlementIntent, settlement_ref: str) -> None:
        if intent.kind == IntentKind.CREATE:
            self._orchestrator.complete_creation(intent.intent_id, settlement_ref)
        else:
            self._orchestrator.guard.complete(intent.intent_id, settlement_ref)

    def resolve(self, intent_id: str, settlement_ref: str) -> SettlementIntent:
        """Attach an operator-supplied settlement reference and record it."""
        ref = (settlement_ref or "").strip()
        if not ref:
            raise ValidationError("settlementRef must not be empty")
        intent = self._journal.get(intent_id)
        if intent.status not in OPEN_INTENT_STATUSES:
            raise ValidationError(f"intent {intent_id} is already {intent.status}")
        with with_logging_context(intent_id=intent_id, settlement_ref=ref):
            receipt = self._orchestrator.settlement.confirm(ref)
            if intent.kind == IntentKind.CREATE:
                check_deposit_receipt(
                    receipt,
                    intent.owner_address,
                    lock_holder_address=self._orchestrator.lock_holder_address,
                    principal=intent.amount,
                )
            elif not receipt.successful:
                raise SettlementFailed(f"payout {ref} was not successful")
            self._finish(intent, receipt.settlement_ref)
        logger.info("intent_resolved", extra={"extra": {"intent_id": intent_id, "settlement_ref": ref}})
        return self._journal.get(intent_id)

    def abandon(self, intent_id: str) -> SettlementIntent:
        """Close an intent whose transfer the operator verified never settled."""
        intent = self._journal.get(intent_id)
        if intent.status not in (IntentStatus.PENDING, IntentStatus.UNCONFIRMED):
            raise ValidationError(f"intent {intent_id} is {intent.status} and cannot be abandoned")
        self._journal.mark(intent_id, IntentStatus.FAILED, last_error="abandoned by operator")
        logger.warning("intent_abandoned", extra={"extra": {"intent_id": intent_id}})
        return self._journal.get(intent_id)
