from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any

from settlebot.domain.match_key import DEFAULT_KEY_BYTES, ledger_key_for
from settlebot.domain.models import (
    EventSource,
    LifecycleStatus,
    MatchSettlement,
    PayoutStatus,
    SettlementKind,
)
from settlebot.persistence.sqlite_connection import (
    create_sqlite_connection,
    ensure_settlement_schema,
)

logger = logging.getLogger(__name__)

_NOT_TERMINAL = "payout_status NOT IN ('PAID', 'REFUNDED')"
_TX_REF_COLUMNS = {
    "payout": "payout_tx_ref",
    1: "refund_tx_ref_1",
    2: "refund_tx_ref_2",
}


def _epoch_now() -> int:
    return int(datetime.now(UTC).timestamp())


def _row_to_match(row: sqlite3.Row) -> MatchSettlement:
    kind = row["settlement_kind"]
    return MatchSettlement(
        match_id=str(row["match_id"]),
        ledger_match_id=str(row["ledger_match_id"]),
        player1=row["player1"],
        player2=row["player2"],
        stake_wei=int(row["stake_wei"] or 0),
        lifecycle_status=LifecycleStatus(row["lifecycle_status"]),
        payout_status=PayoutStatus(row["payout_status"]),
        winner_address=row["winner_address"],
        settlement_kind=SettlementKind(kind) if kind else None,
        lock_id=row["lock_id"],
        lock_acquired_at=row["lock_acquired_at"],
        settlement_attempts=int(row["settlement_attempts"]),
        payout_tx_ref=row["payout_tx_ref"],
        refund_tx_ref_1=row["refund_tx_ref_1"],
        refund_tx_ref_2=row["refund_tx_ref_2"],
        last_settlement_error=row["last_settlement_error"],
        settled_at=row["settled_at"],
        correlation_id=row["correlation_id"],
        server_id=row["server_id"],
        payout_event_id=row["payout_event_id"],
        hosting_status_snapshot=row["hosting_status_snapshot"],
        match_started_at=row["match_started_at"],
        created_at=int(row["created_at"]),
        updated_at=int(row["updated_at"]),
    )


class MatchStore:
    """Durable per-match settlement record shared by every executor process.

    All coordination happens through conditional UPDATE statements; no write
    here is a read-then-write. Writes that would mutate a record already in a
    terminal payout state match zero rows and report ``False``.
    """

    def __init__(
        self,
        db_path: str,
        *,
        now_fn: Callable[[], int] | None = None,
        key_bytes: int = DEFAULT_KEY_BYTES,
    ) -> None:
        self.db_path = db_path
        self.key_bytes = key_bytes
        self._now_fn = now_fn or _epoch_now
        self._local = threading.local()
        with self._connect() as conn:
            ensure_settlement_schema(conn)

    def now(self) -> int:
        return int(self._now_fn())

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        tx_conn = getattr(self._local, "transaction_conn", None)
        if tx_conn is not None:
            yield tx_conn
            return
        conn = create_sqlite_connection(self.db_path)
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        tx_conn = getattr(self._local, "transaction_conn", None)
        if tx_conn is not None:
            yield tx_conn
            return
        conn = create_sqlite_connection(self.db_path)
        conn.execute("BEGIN IMMEDIATE")
        self._local.transaction_conn = conn
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            self._local.transaction_conn = None
            conn.close()

    def create_match(
        self,
        match_id: str,
        *,
        player1: str | None = None,
        player2: str | None = None,
        stake_wei: int = 0,
        correlation_id: str | None = None,
        server_id: str | None = None,
        lifecycle_status: LifecycleStatus = LifecycleStatus.LOBBY,
    ) -> MatchSettlement:
        now = self.now()
        ledger_match_id = ledger_key_for(match_id, key_bytes=self.key_bytes)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO matches (
                    match_id, ledger_match_id, player1, player2, stake_wei,
                    lifecycle_status, payout_status, correlation_id, server_id,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(match_id),
                    ledger_match_id,
                    player1,
                    player2,
                    str(int(stake_wei)),
                    LifecycleStatus(lifecycle_status).value,
                    PayoutStatus.PENDING.value,
                    correlation_id,
                    server_id,
                    now,
                    now,
                ),
            )
        created = self.get(str(match_id))
        if created is None:  # pragma: no cover
            raise RuntimeError(f"match {match_id} vanished after insert")
        return created

    def get(self, match_id: str) -> MatchSettlement | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM matches WHERE match_id = ?", (match_id,)).fetchone()
        return _row_to_match(row) if row is not None else None

    def find_by_correlation_id(self, correlation_id: str) -> MatchSettlement | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM matches WHERE correlation_id = ?", (correlation_id,)
            ).fetchone()
        return _row_to_match(row) if row is not None else None

    def assign_players(self, match_id: str, player1: str | None, player2: str | None) -> bool:
        """Fill empty player slots; slots already set are never overwritten."""
        with self._connect() as conn:
            cursor = conn.execute(
                f"""
                UPDATE matches
                SET player1 = COALESCE(player1, ?),
                    player2 = COALESCE(player2, ?),
                    updated_at = ?
                WHERE match_id = ?
                  AND (player1 IS NULL OR player2 IS NULL)
                  AND {_NOT_TERMINAL}
                """,
                (player1, player2, self.now(), match_id),
            )
        return cursor.rowcount == 1

    def set_lifecycle(
        self,
        match_id: str,
        status: LifecycleStatus,
        *,
        match_started_at: int | None = None,
    ) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                f"""
                UPDATE matches
                SET lifecycle_status = ?,
                    match_started_at = COALESCE(?, match_started_at),
                    updated_at = ?
                WHERE match_id = ?
                  AND lifecycle_status NOT IN ('COMPLETE', 'CANCELLED')
                  AND {_NOT_TERMINAL}
                """,
                (LifecycleStatus(status).value, match_started_at, self.now(), match_id),
            )
        return cursor.rowcount == 1

    def record_snapshot(self, match_id: str, snapshot: Mapping[str, Any]) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                f"""
                UPDATE matches
                SET hosting_status_snapshot = ?, updated_at = ?
                WHERE match_id = ? AND {_NOT_TERMINAL}
                """,
                (json.dumps(dict(snapshot), default=str, sort_keys=True), self.now(), match_id),
            )
        return cursor.rowcount == 1

    def compare_and_set_lock(
        self,
        match_id: str,
        *,
        lock_id: str,
        stale_before: int,
        max_attempts: int,
    ) -> MatchSettlement | None:
        """Claim the settlement lock in one conditional UPDATE.

        The claim succeeds only when the record is non-terminal, below the
        attempt ceiling and either unlocked or locked strictly before
        ``stale_before`` (epoch seconds).
        """
        now = self.now()
        with self.transaction() as conn:
            cursor = conn.execute(
                f"""
                UPDATE matches
                SET payout_status = 'PROCESSING',
                    lock_id = ?,
                    lock_acquired_at = ?,
                    updated_at = ?
                WHERE match_id = ?
                  AND {_NOT_TERMINAL}
                  AND settlement_attempts < ?
                  AND (
                      lock_id IS NULL
                      OR lock_acquired_at IS NULL
                      OR lock_acquired_at < ?
                  )
                """,
                (lock_id, now, now, match_id, max_attempts, stale_before),
            )
            if cursor.rowcount != 1:
                return None
            row = conn.execute(
                "SELECT * FROM matches WHERE match_id = ? AND lock_id = ?",
                (match_id, lock_id),
            ).fetchone()
        return _row_to_match(row) if row is not None else None

    def release_lock(
        self,
        match_id: str,
        lock_id: str,
        *,
        payout_status: PayoutStatus | None = None,
    ) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                f"""
                UPDATE matches
                SET lock_id = NULL,
                    lock_acquired_at = NULL,
                    payout_status = COALESCE(?, payout_status),
                    updated_at = ?
                WHERE match_id = ? AND lock_id = ? AND {_NOT_TERMINAL}
                """,
                (
                    PayoutStatus(payout_status).value if payout_status else None,
                    self.now(),
                    match_id,
                    lock_id,
                ),
            )
        return cursor.rowcount == 1

    def mark_intent(
        self,
        match_id: str,
        lock_id: str,
        *,
        kind: SettlementKind,
        payout_status: PayoutStatus,
        winner_address: str | None = None,
        payout_event_id: str | None = None,
    ) -> MatchSettlement | None:
        """Record settlement intent; ``None`` when ``lock_id`` no longer holds the record."""
        with self.transaction() as conn:
            cursor = conn.execute(
                f"""
                UPDATE matches
                SET settlement_kind = ?,
                    payout_status = ?,
                    winner_address = ?,
                    payout_event_id = COALESCE(?, payout_event_id),
                    last_settlement_error = NULL,
                    updated_at = ?
                WHERE match_id = ? AND lock_id = ? AND {_NOT_TERMINAL}
                """,
                (
                    SettlementKind(kind).value,
                    PayoutStatus(payout_status).value,
                    winner_address,
                    payout_event_id,
                    self.now(),
                    match_id,
                    lock_id,
                ),
            )
            if cursor.rowcount != 1:
                return None
            row = conn.execute("SELECT * FROM matches WHERE match_id = ?", (match_id,)).fetchone()
        return _row_to_match(row)

    def record_payout_tx_ref(self, match_id: str, tx_ref: str) -> bool:
        return self._record_tx_ref(match_id, _TX_REF_COLUMNS["payout"], tx_ref)

    def record_refund_tx_ref(self, match_id: str, leg: int, tx_ref: str) -> bool:
        if leg not in (1, 2):
            raise ValueError(f"refund leg must be 1 or 2, got {leg!r}")
        return self._record_tx_ref(match_id, _TX_REF_COLUMNS[leg], tx_ref)

    def _record_tx_ref(self, match_id: str, column: str, tx_ref: str) -> bool:
        # Not fenced by lock_id: a broadcast transaction must be recorded even
        # if its executor lost the lock to a stale reclaim meanwhile.
        with self._connect() as conn:
            cursor = conn.execute(
                f"""
                UPDATE matches
                SET {column} = ?, updated_at = ?
                WHERE match_id = ? AND {_NOT_TERMINAL}
                """,
                (tx_ref, self.now(), match_id),
            )
        return cursor.rowcount == 1

    def finalize_paid(
        self,
        match_id: str,
        *,
        winner_address: str,
        tx_ref: str | None = None,
    ) -> bool:
        now = self.now()
        with self._connect() as conn:
            cursor = conn.execute(
                f"""
                UPDATE matches
                SET lifecycle_status = 'COMPLETE',
                    payout_status = 'PAID',
                    settlement_kind = 'PAYOUT',
                    winner_address = ?,
                    payout_tx_ref = COALESCE(?, payout_tx_ref),
                    last_settlement_error = NULL,
                    lock_id = NULL,
                    lock_acquired_at = NULL,
                    settled_at = ?,
                    updated_at = ?
                WHERE match_id = ? AND {_NOT_TERMINAL}
                """,
                (winner_address, tx_ref, now, now, match_id),
            )
        return cursor.rowcount == 1

    def finalize_refunded(self, match_id: str) -> bool:
        now = self.now()
        with self._connect() as conn:
            cursor = conn.execute(
                f"""
                UPDATE matches
                SET lifecycle_status = 'CANCELLED',
                    payout_status = 'REFUNDED',
                    settlement_kind = 'REFUND',
                    winner_address = NULL,
                    last_settlement_error = NULL,
                    lock_id = NULL,
                    lock_acquired_at = NULL,
                    settled_at = ?,
                    updated_at = ?
                WHERE match_id = ? AND {_NOT_TERMINAL}
                """,
                (now, now, match_id),
            )
        return cursor.rowcount == 1

    def record_failure(self, match_id: str, *, payout_status: PayoutStatus, error: str) -> bool:
        """Mark a failed attempt; the lock stays in place until it goes stale."""
        with self._connect() as conn:
            cursor = conn.execute(
                f"""
                UPDATE matches
                SET payout_status = ?,
                    last_settlement_error = ?,
                    settlement_attempts = settlement_attempts + 1,
                    updated_at = ?
                WHERE match_id = ? AND {_NOT_TERMINAL}
                """,
                (PayoutStatus(payout_status).value, error, self.now(), match_id),
            )
        return cursor.rowcount == 1

    def record_error(self, match_id: str, error: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                f"""
                UPDATE matches
                SET last_settlement_error = ?, updated_at = ?
                WHERE match_id = ? AND {_NOT_TERMINAL}
                """,
                (error, self.now(), match_id),
            )
        return cursor.rowcount == 1

    def list_settlement_candidates(
        self,
        *,
        depositing_grace_seconds: int,
        live_grace_seconds: int,
        max_attempts: int,
        limit: int = 100,
    ) -> list[MatchSettlement]:
        now = self.now()
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM matches
                WHERE {_NOT_TERMINAL}
                  AND settlement_attempts < ?
                  AND correlation_id IS NOT NULL
                  AND (
                      (lifecycle_status = 'DEPOSITING' AND created_at <= ?)
                      OR (lifecycle_status = 'LIVE' AND updated_at <= ?)
                      OR payout_status IN (
                          'PROCESSING', 'FAILED', 'REFUND_PROCESSING', 'REFUND_FAILED'
                      )
                  )
                ORDER BY updated_at ASC, match_id ASC
                LIMIT ?
                """,
                (
                    max_attempts,
                    now - depositing_grace_seconds,
                    now - live_grace_seconds,
                    limit,
                ),
            ).fetchall()
        return [_row_to_match(row) for row in rows]

    def append_event(
        self,
        match_id: str,
        *,
        source: EventSource,
        event_type: str | None,
        event_id: str | None,
        payload: Mapping[str, Any],
    ) -> bool:
        """Append to the audit trail; a repeated ``event_id`` from the same source is ignored."""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO match_events (
                    match_id, source, event_type, event_id, payload_json, created_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    match_id,
                    EventSource(source).value,
                    event_type,
                    event_id,
                    json.dumps(dict(payload), default=str, sort_keys=True),
                    self.now(),
                ),
            )
        inserted = cursor.rowcount == 1
        if not inserted:
            logger.info(
                "match_event_duplicate_ignored",
                extra={
                    "extra": {"match_id": match_id, "source": str(source), "event_id": event_id}
                },
            )
        return inserted

    def list_events(self, match_id: str) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT source, event_type, event_id, payload_json, created_at
                FROM match_events
                WHERE match_id = ?
                ORDER BY id ASC
                """,
                (match_id,),
            ).fetchall()
        return [
            {
                "source": row["source"],
                "event_type": row["event_type"],
                "event_id": row["event_id"],
                "payload": json.loads(row["payload_json"]),
                "created_at": row["created_at"],
            }
            for row in rows
        ]

