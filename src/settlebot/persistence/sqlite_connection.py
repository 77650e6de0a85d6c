from __future__ import annotations

import sqlite3


def create_sqlite_connection(db_path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=30.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA busy_timeout = 5000")
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


def ensure_settlement_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS matches (
            match_id TEXT PRIMARY KEY,
            ledger_match_id TEXT NOT NULL,
            player1 TEXT,
            player2 TEXT,
            stake_wei TEXT NOT NULL DEFAULT '0',
            lifecycle_status TEXT NOT NULL,
            payout_status TEXT NOT NULL DEFAULT 'PENDING',
            winner_address TEXT,
            settlement_kind TEXT,
            lock_id TEXT,
            lock_acquired_at INTEGER,
            settlement_attempts INTEGER NOT NULL DEFAULT 0,
            payout_tx_ref TEXT,
            refund_tx_ref_1 TEXT,
            refund_tx_ref_2 TEXT,
            last_settlement_error TEXT,
            settled_at INTEGER,
            correlation_id TEXT,
            server_id TEXT,
            payout_event_id TEXT,
            hosting_status_snapshot TEXT,
            match_started_at INTEGER,
            created_at INTEGER NOT NULL,
            updated_at INTEGER NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_matches_ledger_match_id_unique
        ON matches(ledger_match_id)
        """
    )
    conn.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_matches_correlation_id_unique
        ON matches(correlation_id)
        WHERE correlation_id IS NOT NULL
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_matches_payout_status ON matches(payout_status)"
    )
    match_columns = {str(row["name"]) for row in conn.execute("PRAGMA table_info(matches)")}
    if "lock_acquired_at" not in match_columns:
        conn.execute("ALTER TABLE matches ADD COLUMN lock_acquired_at INTEGER")
    if "match_started_at" not in match_columns:
        conn.execute("ALTER TABLE matches ADD COLUMN match_started_at INTEGER")

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS match_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            match_id TEXT NOT NULL,
            source TEXT NOT NULL,
            event_type TEXT,
            event_id TEXT,
            payload_json TEXT NOT NULL,
            created_at INTEGER NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_match_events_dedupe
        ON match_events(match_id, source, event_id)
        WHERE event_id IS NOT NULL
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_match_events_match ON match_events(match_id)")
