from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation

from timelock.domain.errors import (
    SettledButNotRecorded,
    SettlementFailed,
    SettlementUnconfirmed,
    TimelockError,
    ValidationError,
)
from timelock.domain.models import (
    AccountRecord,
    IntentKind,
    IntentStatus,
    STROOP,
    NewAccount,
    SettlementIntent,
    parse_amount,
)
from timelock.logging_context import with_logging_context
from timelock.services.intent_journal import IntentJournal
from timelock.services.ledger_store import LedgerStore
from timelock.services.settlement import (
    SettlementClient,
    SettlementReceipt,
    TransferRequest,
    timelock_memo,
)
from timelock.services.settlement_errors import to_settlement_error
from timelock.services.withdrawal_guard import WithdrawalGuard, WithdrawalOutcome

logger = logging.getLogger(__name__)


class TransactionOrchestrator:
    """Sequences external settlement and ledger writes for every mutation."""

    def __init__(
        self,
        ledger: LedgerStore,
        settlement: SettlementClient,
        *,
        lock_holder_address: str,
        guard: WithdrawalGuard | None = None,
        journal: IntentJournal | None = None,
    ) -> None:
        self.ledger = ledger
        self.settlement = settlement
        self.lock_holder_address = lock_holder_address
        self.journal = journal or IntentJournal(ledger)
        self.guard = guard or WithdrawalGuard(
            ledger,
            settlement,
            lock_holder_address=lock_holder_address,
            journal=self.journal,
        )

    def _validated_terms(
        self, owner_address: str, amount: object, lock_period: object
    ) -> tuple[str, Decimal, int, Decimal]:
        owner = (owner_address or "").strip()
        if not owner:
            raise ValidationError("ownerAddress is required")
        principal = parse_amount(amount)
        if principal <= 0:
            raise ValidationError("amount must be > 0")
        try:
            settled = principal.quantize(STROOP)
        except InvalidOperation as exc:
            raise ValidationError("amount is too large") from exc
        if settled != principal:
            raise ValidationError("amount must have at most 7 decimal places")
        self.ledger.schedule.rate_for(lock_period)
        period = int(lock_period)  # type: ignore[arg-type]
        interest = self.ledger.schedule.interest_for(principal, period)
        return owner, principal, period, interest

    def open_lock(self, owner_address: str, amount: object, lock_period: object) -> AccountRecord:
        """Settle the deposit into the lock holder, then record the lock."""
        owner, principal, period, interest = self._validated_terms(owner_address, amount, lock_period)
        unlock_at = self.ledger.schedule.unlock_at(self.ledger.clock(), period)
        intent = self.journal.open(
            kind=IntentKind.CREATE,
            owner_address=owner,
            amount=principal,
            lock_period_days=period,
            interest_amount=interest,
        )
        with with_logging_context(intent_id=intent.intent_id):
            request = TransferRequest(
                source=owner,
                destination=self.lock_holder_address,
                amount=principal,
                memo=timelock_memo(int(unlock_at.timestamp())),
            )
            try:
                receipt = self.settlement.transfer(request)
            except Exception as exc:
                error = to_settlement_error(exc, action="deposit", submitted=True)
                if isinstance(error, SettlementUnconfirmed):
                    self.journal.mark_after_failure(
                        intent.intent_id,
                        IntentStatus.UNCONFIRMED,
                        settlement_ref=error.settlement_ref,
                        last_error=error.message,
                    )
                else:
                    self.journal.mark_after_failure(
                        intent.intent_id, IntentStatus.FAILED, last_error=str(error)
                    )
                if error is exc:
                    raise
                raise error from exc
            if not receipt.successful:
                self.journal.mark_after_failure(
                    intent.intent_id,
                    IntentStatus.FAILED,
                    settlement_ref=receipt.settlement_ref,
                    last_error="deposit transaction was not successful",
                )
                raise SettlementFailed(f"deposit {receipt.settlement_ref} was not successful")
            with with_logging_context(settlement_ref=receipt.settlement_ref):
                return self.complete_creation(intent.intent_id, receipt.settlement_ref)

    def complete_creation(self, intent_id: str, settlement_ref: str) -> AccountRecord:
        """Insert the lock for a settled deposit and close its intent in one transaction."""
        intent = self.journal.get(intent_id)
        if intent.kind != IntentKind.CREATE:
            raise ValidationError(f"intent {intent_id} is not a lock creation")
        account = _account_from_intent(intent, settlement_ref)
        try:
            with self.ledger.writer() as uow:
                record = self.ledger.insert_in(uow, account)
                uow.intents.transition(
                    intent_id,
                    IntentStatus.RECORDED,
                    now=self.ledger.clock(),
                    settlement_ref=settlement_ref,
                    account_id=record.id,
                )
        except Exception as exc:
            self.journal.mark_after_failure(
                intent_id,
                IntentStatus.SETTLED,
                settlement_ref=settlement_ref,
                last_error=f"{type(exc).__name__}: {exc}",
            )
            error = SettledButNotRecorded(
                intent_kind=str(IntentKind.CREATE),
                settlement_ref=settlement_ref,
                amount=intent.amount,
                owner_address=intent.owner_address,
                intent_id=intent_id,
                cause=type(exc).__name__,
            )
            logger.error("settled_but_not_recorded", extra={"extra": error.details()})
            raise error from exc
        logger.info(
            "lock_opened",
            extra={"extra": {"account_id": record.id, "unlock_at": record.unlock_at.isoformat()}},
        )
        return record

    def record_lock(
        self,
        owner_address: str,
        amount: object,
        lock_period: object,
        settlement_ref: str,
    ) -> AccountRecord:
        """Record a lock whose deposit the owner already settled from their own wallet."""
        ref = (settlement_ref or "").strip()
        if not ref:
            raise ValidationError("settlementRef must not be empty")
        owner, principal, period, interest = self._validated_terms(owner_address, amount, lock_period)
        with with_logging_context(settlement_ref=ref):
            receipt = self.settlement.confirm(ref)
            check_deposit_receipt(
                receipt, owner, lock_holder_address=self.lock_holder_address, principal=principal
            )
            try:
                record = self.ledger.insert(
                    NewAccount(
                        owner_address=owner,
                        principal=principal,
                        lock_period_days=period,
                        interest_amount=interest,
                        settlement_ref=receipt.settlement_ref,
                    )
                )
            except TimelockError:
                raise
            except Exception as exc:
                error = SettledButNotRecorded(
                    intent_kind=str(IntentKind.CREATE),
                    settlement_ref=receipt.settlement_ref,
                    amount=principal,
                    owner_address=owner,
                    cause=type(exc).__name__,
                )
                logger.error("settled_but_not_recorded", extra={"extra": error.details()})
                raise error from exc
        logger.info("lock_recorded", extra={"extra": {"account_id": record.id}})
        return record

    def withdraw(self, account_id: str) -> WithdrawalOutcome:
        return self.guard.withdraw(account_id)


def check_deposit_receipt(
    receipt: SettlementReceipt,
    owner_address: str,
    *,
    lock_holder_address: str,
    principal: Decimal,
) -> None:
    """Reject a receipt unless it shows ``principal`` moving from the owner to the lock holder."""
    ref = receipt.settlement_ref
    if not receipt.successful:
        raise SettlementFailed(f"deposit {ref} was not successful")
    if receipt.source is not None and receipt.source != owner_address:
        raise ValidationError(f"deposit {ref} was sent by {receipt.source}, not {owner_address}")
    if receipt.memo is not None and not receipt.memo.startswith("TIMELOCK:"):
        raise ValidationError(f"deposit {ref} is not a time-lock deposit")
    if receipt.destination is None or receipt.amount is None:
        raise ValidationError(f"deposit {ref} carries no payment to the lock holder")
    if receipt.destination != lock_holder_address:
        raise ValidationError(f"deposit {ref} paid {receipt.destination}, not the lock holder")
    if receipt.amount != principal:
        raise ValidationError(f"deposit {ref} moved {receipt.amount}, not {principal}")


def _account_from_intent(intent: SettlementIntent, settlement_ref: str) -> NewAccount:
    if intent.lock_period_days is None or intent.interest_amount is None:
        raise ValidationError(f"intent {intent.intent_id} is missing lock terms")
    return NewAccount(
        owner_address=intent.owner_address,
        principal=intent.amount,
        lock_period_days=intent.lock_period_days,
        interest_amount=intent.interest_amount,
        settlement_ref=settlement_ref,
    )
