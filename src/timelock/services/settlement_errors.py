from __future__ import annotations

from enum import Enum

import httpx

from timelock.domain.errors import SettlementFailed, SettlementUnconfirmed, TimelockError


class HorizonError(RuntimeError):
    """Raised when the network API answers with an error payload."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        title: str | None = None,
        result_codes: object = None,
        request_path: str | None = None,
        request_method: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.title = title
        self.result_codes = result_codes
        self.request_path = request_path
        self.request_method = request_method


class SettlementErrorCategory(str, Enum):
    RATE_LIMIT = "rate_limit"
    TRANSIENT = "transient"
    REJECT = "reject"
    UNCERTAIN = "uncertain"
    FATAL = "fatal"


def classify_settlement_error(exc: Exception, *, submitted: bool = False) -> SettlementErrorCategory:
    """Map a transport or API error to what it says about funds movement.

    ``submitted`` marks errors raised after the envelope may have reached the
    network; server-side failures are then ambiguous rather than transient.
    """
    if isinstance(exc, httpx.ConnectError | httpx.ConnectTimeout | httpx.PoolTimeout):
        return SettlementErrorCategory.TRANSIENT
    if isinstance(exc, httpx.TimeoutException):
        return SettlementErrorCategory.UNCERTAIN if submitted else SettlementErrorCategory.TRANSIENT
    if isinstance(exc, httpx.HTTPStatusError) and exc.response is not None:
        status = int(exc.response.status_code)
    elif isinstance(exc, HorizonError):
        status = int(exc.status_code) if exc.status_code is not None else None
    else:
        status = None

    if status == 429:
        return SettlementErrorCategory.RATE_LIMIT
    if status is not None and status >= 500:
        return SettlementErrorCategory.UNCERTAIN if submitted else SettlementErrorCategory.TRANSIENT
    if status is not None and 400 <= status < 500:
        return SettlementErrorCategory.REJECT
    if isinstance(exc, httpx.TransportError):
        return SettlementErrorCategory.UNCERTAIN if submitted else SettlementErrorCategory.TRANSIENT
    if isinstance(exc, TimeoutError):
        return SettlementErrorCategory.UNCERTAIN
    return SettlementErrorCategory.FATAL


def to_settlement_error(
    exc: Exception,
    *,
    action: str,
    submitted: bool = False,
    envelope: str | None = None,
) -> TimelockError:
    if isinstance(exc, TimelockError):
        return exc
    category = classify_settlement_error(exc, submitted=submitted)
    if category == SettlementErrorCategory.UNCERTAIN:
        return SettlementUnconfirmed(
            f"{action} outcome unknown ({type(exc).__name__}); check settlement status before retrying",
            envelope=envelope,
        )
    status_code = getattr(exc, "status_code", None)
    if status_code is None and isinstance(exc, httpx.HTTPStatusError):
        status_code = exc.response.status_code
    return SettlementFailed(
        f"{action} failed ({category.value}): {exc}",
        status_code=status_code,
        result_codes=getattr(exc, "result_codes", None),
    )
