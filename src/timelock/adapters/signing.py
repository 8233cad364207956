from __future__ import annotations

import importlib
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

import httpx

from timelock.domain.errors import ConfigurationError, SettlementFailed
from timelock.domain.models import STROOP
from timelock.security.redaction import sanitize_text

logger = logging.getLogger(__name__)

# Keys under which wallet signers have been seen to return the envelope.
SIGNED_ENVELOPE_KEYS = ("signed_transaction", "signed_envelope_xdr", "signedXDR", "signedTxXdr")


@dataclass(frozen=True)
class UnsignedTransfer:
    """Everything a signer needs to build and sign a single payment."""

    source: str
    destination: str
    amount: Decimal
    memo: str
    sequence: int
    network_passphrase: str
    timeout_seconds: int
    base_fee: int = 100

    def to_payload(self) -> dict[str, object]:
        return {
            "source": self.source,
            "destination": self.destination,
            "amount": format(self.amount.quantize(STROOP), "f"),
            "asset": "native",
            "memo": self.memo,
            "sequence": str(self.sequence),
            "networkPassphrase": self.network_passphrase,
            "timeoutSeconds": self.timeout_seconds,
            "baseFee": self.base_fee,
        }


class LocalSigner(Protocol):
    """Builds and signs the envelope with a secret held by this process."""

    def __call__(self, transfer: UnsignedTransfer, secret: str) -> str: ...


class ExternalSigner(Protocol):
    def sign(self, transfer: UnsignedTransfer) -> str: ...


def normalize_signed_envelope(payload: object) -> str:
    """Accept a bare envelope string or any of the known wallet response shapes."""
    if isinstance(payload, str) and payload.strip():
        return payload.strip()
    if isinstance(payload, dict):
        for key in SIGNED_ENVELOPE_KEYS:
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
        if payload.get("error"):
            raise SettlementFailed(f"signer declined: {sanitize_text(str(payload['error']))}")
    raise SettlementFailed("signer returned no signed envelope")


def load_local_signer(spec: str) -> LocalSigner:
    """Resolve ``package.module:callable`` to a local signer."""
    module_name, _, attr = spec.partition(":")
    if not module_name or not attr:
        raise ConfigurationError("LOCAL_SIGNER must look like 'package.module:callable'")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigurationError(f"LOCAL_SIGNER module {module_name!r} cannot be imported") from exc
    signer = getattr(module, attr, None)
    if not callable(signer):
        raise ConfigurationError(f"LOCAL_SIGNER {spec!r} is not callable")
    return signer


class HttpExternalSigner:
    """Asks a wallet bridge over HTTP to sign; the secret never reaches this process."""

    def __init__(
        self,
        signer_url: str,
        *,
        timeout: float = 120.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.client = httpx.Client(timeout=timeout, transport=transport)
        self._signer_url = signer_url

    def sign(self, transfer: UnsignedTransfer) -> str:
        try:
            response = self.client.post(self._signer_url, json=transfer.to_payload())
        except httpx.HTTPError as exc:
            # Nothing has been submitted yet, so a signer outage is a clean failure.
            raise SettlementFailed(f"signer unreachable ({type(exc).__name__})") from exc
        if response.status_code >= 400:
            logger.warning(
                "external_signer_rejected",
                extra={"extra": {"status_code": response.status_code}},
            )
            raise SettlementFailed(
                f"signer rejected the request status={response.status_code}",
                status_code=response.status_code,
            )
        content_type = response.headers.get("content-type", "")
        if "json" in content_type:
            try:
                payload: object = response.json()
            except ValueError as exc:
                raise SettlementFailed("signer returned malformed JSON") from exc
        else:
            payload = response.text
        return normalize_signed_envelope(payload)

    def close(self) -> None:
        self.client.close()
