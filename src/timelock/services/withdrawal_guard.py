from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import StrEnum

from timelock.domain.errors import (
    AlreadyWithdrawn,
    NotFound,
    NotMatured,
    SettledButNotRecorded,
    SettlementFailed,
    SettlementUnconfirmed,
    ValidationError,
)
from timelock.domain.models import AccountRecord, AccountStatus, IntentKind, IntentStatus, SettlementIntent
from timelock.logging_context import with_logging_context
from timelock.services.intent_journal import IntentJournal
from timelock.services.ledger_store import LedgerStore
from timelock.services.settlement import SettlementClient, TransferRequest, withdraw_memo
from timelock.services.settlement_errors import to_settlement_error

logger = logging.getLogger(__name__)


class WithdrawalState(StrEnum):
    LOCKED = "locked"
    PENDING_PAYOUT_SETTLEMENT = "pending_payout_settlement"
    PENDING_LEDGER_UPDATE = "pending_ledger_update"
    WITHDRAWN = "withdrawn"
    REJECTED = "rejected"
    SETTLED_BUT_NOT_RECORDED = "settled_but_not_recorded"


@dataclass(frozen=True)
class WithdrawalOutcome:
    record: AccountRecord
    payout_amount: Decimal
    settlement_ref: str


class WithdrawalGuard:
    """Pays out a matured lock at most once.

    The claim (maturity check plus a withdraw intent) is committed before any
    funds move; the intent is unique per account while not failed, so a second
    caller is turned away until the first one fails cleanly.
    """

    def __init__(
        self,
        ledger: LedgerStore,
        settlement: SettlementClient,
        *,
        lock_holder_address: str,
        journal: IntentJournal | None = None,
    ) -> None:
        self._ledger = ledger
        self._settlement = settlement
        self._lock_holder_address = lock_holder_address
        self._journal = journal or IntentJournal(ledger)

    def withdraw(self, account_id: str) -> WithdrawalOutcome:
        with with_logging_context(account_id=account_id):
            record, intent = self._claim(account_id)
            with with_logging_context(intent_id=intent.intent_id):
                settlement_ref = self._pay_out(record, intent)
                with with_logging_context(settlement_ref=settlement_ref):
                    updated = self.complete(intent.intent_id, settlement_ref)
        return WithdrawalOutcome(
            record=updated,
            payout_amount=record.payout_amount,
            settlement_ref=settlement_ref,
        )

    def _claim(self, account_id: str) -> tuple[AccountRecord, SettlementIntent]:
        try:
            with self._ledger.writer() as uow:
                record = uow.accounts.get_by_id(account_id)
                if record is None:
                    raise NotFound(account_id)
                if record.status == AccountStatus.WITHDRAWN:
                    raise AlreadyWithdrawn(account_id)
                now = self._ledger.clock()
                if not record.is_matured(now):
                    raise NotMatured(account_id, record.unlock_at.isoformat())
                intent = uow.intents.open_intent(
                    kind=IntentKind.WITHDRAW,
                    owner_address=record.owner_address,
                    amount=record.payout_amount,
                    now=now,
                    account_id=account_id,
                )
        except (NotFound, AlreadyWithdrawn, NotMatured) as exc:
            self._log_state(WithdrawalState.LOCKED, WithdrawalState.REJECTED, reason=exc.kind)
            raise
        self._log_state(
            WithdrawalState.LOCKED,
            WithdrawalState.PENDING_PAYOUT_SETTLEMENT,
            payout_amount=str(record.payout_amount),
        )
        return record, intent

    def _pay_out(self, record: AccountRecord, intent: SettlementIntent) -> str:
        request = TransferRequest(
            source=self._lock_holder_address,
            destination=record.owner_address,
            amount=record.payout_amount,
            memo=withdraw_memo(),
        )
        try:
            receipt = self._settlement.transfer(request)
        except Exception as exc:
            error = to_settlement_error(exc, action="payout", submitted=True)
            if isinstance(error, SettlementUnconfirmed):
                # Claim stays in place until reconciliation decides.
                self._journal.mark_after_failure(
                    intent.intent_id,
                    IntentStatus.UNCONFIRMED,
                    settlement_ref=error.settlement_ref,
                    last_error=error.message,
                )
            else:
                self._journal.mark_after_failure(
                    intent.intent_id, IntentStatus.FAILED, last_error=str(error)
                )
            self._log_state(
                WithdrawalState.PENDING_PAYOUT_SETTLEMENT,
                WithdrawalState.LOCKED,
                error_kind=getattr(error, "kind", type(error).__name__),
            )
            if error is exc:
                raise
            raise error from exc
        if not receipt.successful:
            self._journal.mark_after_failure(
                intent.intent_id,
                IntentStatus.FAILED,
                settlement_ref=receipt.settlement_ref,
                last_error="payout transaction was not successful",
            )
            raise SettlementFailed(f"payout {receipt.settlement_ref} was not successful")
        self._log_state(
            WithdrawalState.PENDING_PAYOUT_SETTLEMENT,
            WithdrawalState.PENDING_LEDGER_UPDATE,
            settlement_ref=receipt.settlement_ref,
        )
        return receipt.settlement_ref

    def complete(self, intent_id: str, settlement_ref: str) -> AccountRecord:
        """Record a settled payout: account withdrawn and intent recorded together."""
        intent = self._journal.get(intent_id)
        if intent.kind != IntentKind.WITHDRAW or intent.account_id is None:
            raise ValidationError(f"intent {intent_id} is not a withdrawal")
        try:
            with self._ledger.writer() as uow:
                record = self._ledger.mark_withdrawn_in(uow, intent.account_id, settlement_ref)
                uow.intents.transition(
                    intent_id,
                    IntentStatus.RECORDED,
                    now=self._ledger.clock(),
                    settlement_ref=settlement_ref,
                )
        except Exception as exc:
            self._journal.mark_after_failure(
                intent_id,
                IntentStatus.SETTLED,
                settlement_ref=settlement_ref,
                last_error=f"{type(exc).__name__}: {exc}",
            )
            error = SettledButNotRecorded(
                intent_kind=str(IntentKind.WITHDRAW),
                settlement_ref=settlement_ref,
                amount=intent.amount,
                owner_address=intent.owner_address,
                account_id=intent.account_id,
                intent_id=intent_id,
                cause=type(exc).__name__,
            )
            logger.error("settled_but_not_recorded", extra={"extra": error.details()})
            self._log_state(
                WithdrawalState.PENDING_LEDGER_UPDATE,
                WithdrawalState.SETTLED_BUT_NOT_RECORDED,
                settlement_ref=settlement_ref,
            )
            raise error from exc
        self._log_state(
            WithdrawalState.PENDING_LEDGER_UPDATE,
            WithdrawalState.WITHDRAWN,
            settlement_ref=settlement_ref,
        )
        return record

    @staticmethod
    def _log_state(previous: WithdrawalState, current: WithdrawalState, **fields: object) -> None:
        logger.info(
            "withdrawal_state_transition",
            extra={"extra": {"from": str(previous), "to": str(current), **fields}},
        )
