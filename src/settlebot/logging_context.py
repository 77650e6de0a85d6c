"""Correlation fields stamped onto every JSON log line.

A webhook delivery, a janitor pass and a manual ``settlebot settle`` all end up
in the same settlement pipeline; these fields let one match be followed across
them. Values live in contextvars so threads and request handlers stay isolated.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar, Token

RUN_ID: ContextVar[str | None] = ContextVar("run_id", default=None)
CYCLE_ID: ContextVar[str | None] = ContextVar("cycle_id", default=None)
MATCH_ID: ContextVar[str | None] = ContextVar("match_id", default=None)
LOCK_ID: ContextVar[str | None] = ContextVar("lock_id", default=None)
TX_REF: ContextVar[str | None] = ContextVar("tx_ref", default=None)

CONTEXT_VARS: dict[str, ContextVar[str | None]] = {
    var.name: var for var in (RUN_ID, CYCLE_ID, MATCH_ID, LOCK_ID, TX_REF)
}
CONTEXT_FIELDS = tuple(CONTEXT_VARS)


def get_logging_context() -> dict[str, str]:
    """Return only the fields that are currently bound."""
    bound: dict[str, str] = {}
    for name, var in CONTEXT_VARS.items():
        value = var.get()
        if value is not None:
            bound[name] = value
    return bound


@contextmanager
def with_logging_context(**fields: str | None) -> Iterator[None]:
    unknown = sorted(set(fields) - set(CONTEXT_VARS))
    if unknown:
        raise TypeError(f"unknown logging context fields: {', '.join(unknown)}")

    tokens: list[tuple[ContextVar[str | None], Token[str | None]]] = []
    for name, value in fields.items():
        # None leaves an outer binding in place
        if value is None:
            continue
        var = CONTEXT_VARS[name]
        tokens.append((var, var.set(str(value))))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


@contextmanager
def with_cycle_context(cycle_id: str, run_id: str | None = None) -> Iterator[None]:
    with with_logging_context(cycle_id=cycle_id, run_id=run_id):
        yield
