from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from typing import Any

REDACTED = "***REDACTED***"

SENSITIVE_KEYS = {
    "SECRET",
    "SECRET_KEY",
    "SEED",
    "SIGNATURE",
    "AUTHORIZATION",
    "TOKEN",
    "PASSWORD",
    "PASSPHRASE",
    "LOCAL_SIGNER_SECRET",
}

_SENSITIVE_PARTS = tuple(part.casefold() for part in SENSITIVE_KEYS)
# The network passphrase is public configuration, not a credential.
_PUBLIC_KEYS = {"network_passphrase"}

# Stellar secret seeds: "S" followed by 55 base32 characters.
_SECRET_SEED_PATTERN = re.compile(r"\bS[A-Z2-7]{55}\b")
_PLAIN_SECRET_PATTERNS = (
    re.compile(r"(?im)(authorization\s*[:=]\s*)(bearer\s+)?([^\s,;]+)"),
    re.compile(r"(?im)(secret(?:_key)?\s*[:=]\s*)([^\s,;]+)"),
    re.compile(r"(?im)(token\s*[:=]\s*)([^\s,;]+)"),
    re.compile(r"(?im)(local_signer_secret\s*[:=]\s*)([^\s,;]+)"),
)
_JSON_KEY_VALUE_PATTERN = re.compile(
    r'("(?:secret|secretKey|secret_key|seed|token|password|signature|authorization)"\s*:\s*")([^"\\]*)(")',
    re.IGNORECASE,
)


def _is_sensitive_key(key: object) -> bool:
    normalized = str(key).replace("-", "_").casefold()
    if normalized in _PUBLIC_KEYS:
        return False
    return any(part in normalized for part in _SENSITIVE_PARTS)


def _mask_secret(value: str) -> str:
    if not value:
        return REDACTED
    if len(value) > 8:
        return f"{value[:2]}{'*' * (len(value) - 4)}{value[-2:]}"
    return "*" * len(value)


def _redact_match(match: re.Match[str]) -> str:
    prefix = match.group(1)
    optional_scheme = ""
    if match.lastindex and match.lastindex >= 3:
        optional_scheme = match.group(2) or ""
    return f"{prefix}{optional_scheme}[REDACTED]"


def sanitize_text(text: str, known_secrets: Iterable[str] = ()) -> str:
    redacted = str(text)
    for secret in known_secrets:
        if secret:
            redacted = redacted.replace(secret, _mask_secret(str(secret)))

    redacted = _SECRET_SEED_PATTERN.sub(REDACTED, redacted)
    for pattern in _PLAIN_SECRET_PATTERNS:
        redacted = pattern.sub(_redact_match, redacted)
    return _JSON_KEY_VALUE_PATTERN.sub(
        lambda m: f"{m.group(1)}{_mask_secret(m.group(2))}{m.group(3)}", redacted
    )


def sanitize_mapping(d: Mapping[str, Any]) -> dict[str, Any]:
    sanitized: dict[str, Any] = {}
    for key, value in d.items():
        key_str = str(key)
        if _is_sensitive_key(key_str):
            sanitized[key_str] = _mask_secret(str(value)) if value is not None else REDACTED
            continue
        sanitized[key_str] = redact_data(value)
    return sanitized


def redact_data(value: Any) -> Any:
    if isinstance(value, Mapping):
        return sanitize_mapping(value)
    if isinstance(value, list):
        return [redact_data(item) for item in value]
    if isinstance(value, tuple):
        return tuple(redact_data(item) for item in value)
    if isinstance(value, str):
        return sanitize_text(value)
    return value
