"""Masking for secrets that could reach log sinks.

The payout signer key, the webhook bearer secret and the hosting-provider
password are the values that matter here; they show up as mapping keys in
structured log payloads, as ``NAME=value`` pairs in config dumps and as
``Authorization`` headers in HTTP error snippets.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from typing import Any

REDACTED = "***REDACTED***"
INLINE_REDACTED = "[REDACTED]"

SENSITIVE_KEYS = frozenset(
    {
        "payout_private_key",
        "private_key",
        "privatekey",
        "webhook_secret",
        "hosting_password",
        "password",
        "passphrase",
        "mnemonic",
        "secret",
        "token",
        "authorization",
        "auth",
        "key",
    }
)
_SENSITIVE_FRAGMENTS = (
    "private_key",
    "privatekey",
    "secret",
    "password",
    "passphrase",
    "mnemonic",
    "token",
    "authorization",
)

_AUTH_HEADER = re.compile(r"(?im)\b(authorization\s*[:=]\s*)((?:bearer|basic)\s+)?([^\s,;]+)")
_ENV_ASSIGNMENT = re.compile(
    r"(?im)\b((?:payout_private_key|webhook_secret|hosting_password)\s*[:=]\s*)([^\s,;]+)"
)
_JSON_SECRET_FIELD = re.compile(
    r'("(?:secret|password|token|authorization|auth|private_key|privateKey)"\s*:\s*")'
    r'([^"\\]*)(")',
    re.IGNORECASE,
)


def is_sensitive_key(key: object) -> bool:
    normalized = str(key).strip().replace("-", "_").casefold()
    if normalized in SENSITIVE_KEYS:
        return True
    return any(fragment in normalized for fragment in _SENSITIVE_FRAGMENTS)


def mask_secret(value: str) -> str:
    """Keep just enough of a long secret to tell two of them apart."""
    if not value:
        return REDACTED
    if len(value) > 8:
        return value[:4] + "*" * (len(value) - 8) + value[-4:]
    if len(value) <= 2:
        return "*" * len(value)
    return "*" * (len(value) - 2) + value[-2:]


def sanitize_text(text: str, known_secrets: Iterable[str] = ()) -> str:
    redacted = str(text)
    for secret in known_secrets:
        if secret:
            redacted = redacted.replace(secret, mask_secret(secret))

    redacted = _AUTH_HEADER.sub(
        lambda m: f"{m.group(1)}{m.group(2) or ''}{INLINE_REDACTED}", redacted
    )
    redacted = _ENV_ASSIGNMENT.sub(lambda m: f"{m.group(1)}{INLINE_REDACTED}", redacted)
    return _JSON_SECRET_FIELD.sub(
        lambda m: f"{m.group(1)}{mask_secret(m.group(2))}{m.group(3)}", redacted
    )


def sanitize_mapping(data: Mapping[Any, Any]) -> dict[str, Any]:
    sanitized: dict[str, Any] = {}
    for key, value in data.items():
        name = str(key)
        if not is_sensitive_key(name):
            sanitized[name] = _redact(value)
        elif value is None:
            sanitized[name] = REDACTED
        else:
            sanitized[name] = mask_secret(str(value))
    return sanitized


def _redact(value: Any) -> Any:
    if isinstance(value, Mapping):
        return sanitize_mapping(value)
    if isinstance(value, list):
        return [_redact(item) for item in value]
    if isinstance(value, tuple):
        return tuple(_redact(item) for item in value)
    if isinstance(value, str):
        return sanitize_text(value)
    return value


def redact_data(value: Any) -> Any:
    try:
        return _redact(value)
    except Exception:  # noqa: BLE001
        return REDACTED
