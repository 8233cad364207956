from __future__ import annotations

import logging
from collections.abc import Callable
from decimal import Decimal, InvalidOperation
from uuid import uuid4

import httpx

from timelock.domain.errors import SettlementFailed, SettlementUnconfirmed
from timelock.security.redaction import sanitize_text
from timelock.services.retry import RetryAttempt, RetryPolicy, retry_with_backoff
from timelock.services.settlement import SettlementReceipt
from timelock.services.settlement_errors import HorizonError, to_settlement_error

logger = logging.getLogger(__name__)

_ERROR_SNIPPET_LIMIT = 240


def _should_retry_read(exc: Exception) -> bool:
    if isinstance(exc, httpx.TimeoutException):
        return True
    if isinstance(exc, httpx.HTTPStatusError) and exc.response is not None:
        return exc.response.status_code == 429 or exc.response.status_code >= 500
    if isinstance(exc, httpx.TransportError):
        return not isinstance(exc, httpx.UnsupportedProtocol | httpx.LocalProtocolError)
    return False


def _retry_after(exc: Exception) -> str | None:
    response = getattr(exc, "response", None)
    if response is None:
        return None
    return response.headers.get("Retry-After")


def _response_snippet(response: httpx.Response) -> str:
    text = response.text.strip().replace("\n", " ")
    return sanitize_text(text[:_ERROR_SNIPPET_LIMIT])


def _json_object(response: httpx.Response) -> dict:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if not isinstance(payload, dict):
        raise HorizonError(
            f"Horizon returned a non-object payload status={response.status_code}",
            status_code=response.status_code,
        )
    return payload


def _json_or_empty(response: httpx.Response) -> dict:
    try:
        payload = response.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


def parse_transaction(payload: dict) -> SettlementReceipt:
    tx_hash = payload.get("hash") or payload.get("id")
    if not tx_hash:
        raise HorizonError("Horizon transaction payload has no hash")
    ledger = payload.get("ledger")
    memo = payload.get("memo") if payload.get("memo_type") in (None, "text") else None
    return SettlementReceipt(
        settlement_ref=str(tx_hash),
        successful=bool(payload.get("successful", True)),
        source=payload.get("source_account"),
        ledger=int(ledger) if ledger is not None else None,
        memo=str(memo) if memo is not None else None,
    )


def parse_payment(payload: dict) -> tuple[str, Decimal] | None:
    """First native payment among a transaction's operations, as (destination, amount)."""
    embedded = payload.get("_embedded")
    records = embedded.get("records") if isinstance(embedded, dict) else None
    if not isinstance(records, list):
        raise HorizonError("Horizon operations payload has no records")
    for record in records:
        if not isinstance(record, dict):
            continue
        if record.get("type") != "payment" or record.get("asset_type") != "native":
            continue
        try:
            return str(record["to"]), Decimal(str(record["amount"]))
        except (KeyError, InvalidOperation) as exc:
            raise HorizonError("Horizon payment operation is missing to or amount") from exc
    return None


class HorizonHttpClient:
    """Minimal Horizon REST client: account sequence, submission, lookup.

    Reads are retried with backoff. Submission is never retried here: a
    repeated POST of a signed envelope is only safe once its fate is known.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float | httpx.Timeout = 30.0,
        transport: httpx.BaseTransport | None = None,
        retry_policy: RetryPolicy | None = None,
        sleep_fn: Callable[[float], None] | None = None,
    ) -> None:
        resolved_timeout = (
            timeout
            if isinstance(timeout, httpx.Timeout)
            else httpx.Timeout(timeout=timeout, connect=min(timeout, 5.0))
        )
        self.client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=resolved_timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )
        self._retry_policy = retry_policy or RetryPolicy()
        self._sleep_fn = sleep_fn

    def _get(self, path: str) -> httpx.Response:
        request_id = uuid4().hex

        def _call() -> httpx.Response:
            response = self.client.get(path, headers={"X-Request-ID": request_id})
            if response.status_code >= 500 or response.status_code == 429:
                response.raise_for_status()
            return response

        def _on_retry(attempt: RetryAttempt) -> None:
            logger.warning(
                "horizon_retry",
                extra={
                    "extra": {
                        "path": path,
                        "attempt": attempt.attempt,
                        "delay_ms": attempt.delay_ms,
                        "error_type": attempt.error_type,
                    }
                },
            )

        return retry_with_backoff(
            _call,
            policy=self._retry_policy,
            retry_on=_should_retry_read,
            sleep_fn=self._sleep_fn,
            on_retry=_on_retry,
            retry_after_getter=_retry_after,
        )

    def load_sequence(self, account_id: str) -> int:
        path = f"/accounts/{account_id}"
        try:
            response = self._get(path)
            if response.status_code == 404:
                raise SettlementFailed(f"account {account_id} does not exist on the network", status_code=404)
            if response.status_code >= 400:
                raise HorizonError(
                    f"Horizon account lookup failed status={response.status_code} body={_response_snippet(response)}",
                    status_code=response.status_code,
                    request_path=path,
                    request_method="GET",
                )
            payload = _json_object(response)
            return int(payload["sequence"])
        except (KeyError, TypeError, ValueError) as exc:
            raise SettlementFailed(f"account {account_id} returned no usable sequence") from exc
        except (httpx.HTTPError, HorizonError) as exc:
            raise to_settlement_error(exc, action="account lookup") from exc

    def submit_transaction(self, envelope_xdr: str) -> SettlementReceipt:
        try:
            response = self.client.post("/transactions", data={"tx": envelope_xdr})
        except httpx.HTTPError as exc:
            logger.warning(
                "horizon_submit_transport_error",
                extra={"extra": {"error_type": type(exc).__name__}},
            )
            raise to_settlement_error(exc, action="submission", submitted=True, envelope=envelope_xdr) from exc

        if response.status_code == 200:
            try:
                return parse_transaction(_json_object(response))
            except HorizonError as exc:
                raise SettlementUnconfirmed(
                    "Horizon accepted the transaction but the response was unreadable",
                    envelope=envelope_xdr,
                ) from exc

        payload = _json_or_empty(response)
        extras = payload.get("extras") if isinstance(payload.get("extras"), dict) else {}
        logger.warning(
            "horizon_submit_rejected",
            extra={
                "extra": {
                    "status_code": response.status_code,
                    "title": payload.get("title"),
                    "result_codes": extras.get("result_codes"),
                }
            },
        )
        if response.status_code == 400:
            raise SettlementFailed(
                f"transaction rejected: {payload.get('title') or _response_snippet(response)}",
                status_code=400,
                result_codes=extras.get("result_codes"),
            )
        if response.status_code >= 500:
            raise SettlementUnconfirmed(
                f"Horizon answered {response.status_code}; the transaction may still be applied",
                envelope=envelope_xdr,
                settlement_ref=extras.get("hash"),
            )
        error = HorizonError(
            f"Horizon submission failed status={response.status_code}",
            status_code=response.status_code,
            title=payload.get("title"),
            result_codes=extras.get("result_codes"),
            request_path="/transactions",
            request_method="POST",
        )
        raise to_settlement_error(error, action="submission", submitted=True, envelope=envelope_xdr)

    def get_transaction(self, tx_hash: str) -> SettlementReceipt | None:
        path = f"/transactions/{tx_hash}"
        try:
            response = self._get(path)
        except httpx.HTTPError as exc:
            raise SettlementUnconfirmed(
                f"could not look up {tx_hash} ({type(exc).__name__})", settlement_ref=tx_hash
            ) from exc
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise SettlementFailed(
                f"lookup of {tx_hash} rejected status={response.status_code}",
                status_code=response.status_code,
            )
        try:
            return parse_transaction(_json_object(response))
        except HorizonError as exc:
            raise SettlementUnconfirmed(f"unreadable lookup response for {tx_hash}", settlement_ref=tx_hash) from exc

    def get_payment(self, tx_hash: str) -> tuple[str, Decimal] | None:
        path = f"/transactions/{tx_hash}/operations"
        try:
            response = self._get(path)
        except httpx.HTTPError as exc:
            raise SettlementUnconfirmed(
                f"could not look up operations of {tx_hash} ({type(exc).__name__})", settlement_ref=tx_hash
            ) from exc
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise SettlementFailed(
                f"operations lookup of {tx_hash} rejected status={response.status_code}",
                status_code=response.status_code,
            )
        try:
            return parse_payment(_json_object(response))
        except HorizonError as exc:
            raise SettlementUnconfirmed(
                f"unreadable operations response for {tx_hash}", settlement_ref=tx_hash
            ) from exc

    def close(self) -> None:
        self.client.close()
