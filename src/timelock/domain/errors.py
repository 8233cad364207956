from __future__ import annotations

from decimal import Decimal


class TimelockError(Exception):
    """Base for every error the ledger surfaces to a caller.

    ``kind`` is the machine-distinguishable name; ``message`` is for humans.
    """

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    @property
    def kind(self) -> str:
        return type(self).__name__

    def details(self) -> dict[str, object]:
        return {}


class ConfigurationError(ValueError):
    """Raised when required runtime configuration is missing or invalid."""


class ValidationError(TimelockError):
    """Bad input; nothing was settled or written."""


class UnsupportedPeriod(ValidationError):
    def __init__(self, period: object, supported: tuple[int, ...]) -> None:
        super().__init__(
            f"lock period {period!r} is not supported; choose one of {list(supported)}"
        )
        self.period = period
        self.supported = supported

    def details(self) -> dict[str, object]:
        return {"period": self.period, "supported": list(self.supported)}


class NotFound(TimelockError):
    def __init__(self, account_id: str) -> None:
        super().__init__(f"account {account_id} not found")
        self.account_id = account_id

    def details(self) -> dict[str, object]:
        return {"accountId": self.account_id}


class NotMatured(TimelockError):
    def __init__(self, account_id: str, unlock_at: object) -> None:
        super().__init__(f"account {account_id} cannot be withdrawn before {unlock_at}")
        self.account_id = account_id
        self.unlock_at = unlock_at

    def details(self) -> dict[str, object]:
        return {"accountId": self.account_id, "unlockAt": str(self.unlock_at)}


class AlreadyWithdrawn(TimelockError):
    def __init__(self, account_id: str, reason: str = "already withdrawn") -> None:
        super().__init__(f"account {account_id}: {reason}")
        self.account_id = account_id
        self.reason = reason

    def details(self) -> dict[str, object]:
        return {"accountId": self.account_id}


class SettlementFailed(TimelockError):
    """The settlement layer rejected the transfer; no funds moved."""

    def __init__(self, message: str, *, status_code: int | None = None, result_codes: object = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.result_codes = result_codes

    def details(self) -> dict[str, object]:
        details: dict[str, object] = {}
        if self.result_codes is not None:
            details["resultCodes"] = self.result_codes
        return details


class SettlementUnconfirmed(TimelockError):
    """Outcome unknown (timeout or ambiguous response); re-check before retrying."""

    def __init__(
        self,
        message: str,
        *,
        envelope: str | None = None,
        settlement_ref: str | None = None,
    ) -> None:
        super().__init__(message)
        self.envelope = envelope
        self.settlement_ref = settlement_ref

    def details(self) -> dict[str, object]:
        if self.settlement_ref is None:
            return {}
        return {"settlementRef": self.settlement_ref}


class SettledButNotRecorded(TimelockError):
    """Funds moved but the ledger write failed; reconciliation is required."""

    def __init__(
        self,
        *,
        intent_kind: str,
        settlement_ref: str,
        amount: Decimal,
        owner_address: str,
        account_id: str | None = None,
        intent_id: str | None = None,
        cause: str = "",
    ) -> None:
        target = f"account {account_id}" if account_id else f"new lock for {owner_address}"
        super().__init__(
            f"{intent_kind} settled as {settlement_ref} but the ledger write for {target} failed"
            + (f": {cause}" if cause else "")
        )
        self.intent_kind = intent_kind
        self.settlement_ref = settlement_ref
        self.amount = amount
        self.owner_address = owner_address
        self.account_id = account_id
        self.intent_id = intent_id

    def details(self) -> dict[str, object]:
        return {
            "intentKind": self.intent_kind,
            "intentId": self.intent_id,
            "accountId": self.account_id,
            "ownerAddress": self.owner_address,
            "amount": str(self.amount),
            "settlementRef": self.settlement_ref,
        }


class IntentNotFound(TimelockError):
    def __init__(self, intent_id: str) -> None:
        super().__init__(f"settlement intent {intent_id} not found")
        self.intent_id = intent_id

    def details(self) -> dict[str, object]:
        return {"intentId": self.intent_id}
