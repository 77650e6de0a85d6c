"""Mapping from match ids to fixed-width ledger keys.

A match id is either a non-negative decimal integer, a ``0x``-prefixed hex
string, or a UUID. The integer value is written as hex and left-padded with
zeros to the ledger word size, so the mapping is deterministic and injective
for any single id scheme.
"""

from __future__ import annotations

import re
import uuid

DEFAULT_KEY_BYTES = 32

_DECIMAL_RE = re.compile(r"^[0-9]+$")
_HEX_RE = re.compile(r"^0[xX][0-9a-fA-F]+$")


def match_id_to_int(match_id: str | int) -> int:
    if isinstance(match_id, bool):
        raise ValueError("match id must not be a boolean")
    if isinstance(match_id, int):
        value = match_id
    else:
        candidate = str(match_id).strip()
        if _DECIMAL_RE.match(candidate):
            value = int(candidate, 10)
        elif _HEX_RE.match(candidate):
            value = int(candidate[2:], 16)
        else:
            try:
                value = uuid.UUID(candidate).int
            except ValueError as exc:
                raise ValueError(f"unsupported match id format: {match_id!r}") from exc
    if value < 0:
        raise ValueError("match id must be non-negative")
    return value


def ledger_key_for(match_id: str | int, *, key_bytes: int = DEFAULT_KEY_BYTES) -> str:
    if key_bytes <= 0:
        raise ValueError("key_bytes must be > 0")
    value = match_id_to_int(match_id)
    width = key_bytes * 2
    encoded = format(value, "x")
    if len(encoded) > width:
        raise ValueError(f"match id {match_id!r} does not fit in {key_bytes} bytes")
    return "0x" + encoded.rjust(width, "0")


def ledger_key_bytes(ledger_key: str) -> bytes:
    if not _HEX_RE.match(ledger_key):
        raise ValueError(f"ledger key must be 0x-prefixed hex: {ledger_key!r}")
    return bytes.fromhex(ledger_key[2:])
