"""
Migration 003: Add match_hint_events table.

Outbox written together with each precision_search_hint; the link
finalizer consumes it instead of watching file updates.
"""

import sqlite3

VERSION = 3
NAME = "match_hint_events"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create match_hint_events table."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS match_hint_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            file_id TEXT NOT NULL,
            transaction_id TEXT NOT NULL,
            user_id TEXT NOT NULL,
            score INTEGER,
            strategy TEXT NOT NULL,
            created_at TEXT NOT NULL,
            consumed_at TEXT,
            FOREIGN KEY (file_id) REFERENCES files(id)
        )
    """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_match_hint_events_pending "
        "ON match_hint_events(consumed_at, id)"
    )


def downgrade(conn: sqlite3.Connection) -> None:
    """Remove match_hint_events table."""
    conn.execute("DROP TABLE IF EXISTS match_hint_events")
