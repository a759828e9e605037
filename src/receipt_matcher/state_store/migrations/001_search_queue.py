"""
Migration 001: Add search_queue table.

Resumable queue items; continuation state lives in the counters and
last_processed_transaction_id.
"""

import sqlite3

VERSION = 1
NAME = "search_queue"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create search_queue table."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS search_queue (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            scope TEXT NOT NULL,  -- single_transaction, all_incomplete
            transaction_id TEXT,
            integration_id TEXT,
            triggered_by TEXT NOT NULL,  -- manual, scheduled, gmail_sync
            strategies TEXT NOT NULL,  -- JSON array
            status TEXT NOT NULL DEFAULT 'pending',
            transactions_to_process INTEGER NOT NULL DEFAULT 0,
            transactions_processed INTEGER NOT NULL DEFAULT 0,
            transactions_with_matches INTEGER NOT NULL DEFAULT 0,
            total_files_connected INTEGER NOT NULL DEFAULT 0,
            last_processed_transaction_id TEXT,
            errors TEXT,  -- JSON array
            retry_count INTEGER NOT NULL DEFAULT 0,
            max_retries INTEGER NOT NULL DEFAULT 3,
            last_error TEXT,
            created_at TEXT NOT NULL,
            started_at TEXT,
            completed_at TEXT
        )
    """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_search_queue_status ON search_queue(status, created_at)"
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_search_queue_user ON search_queue(user_id)")


def downgrade(conn: sqlite3.Connection) -> None:
    """Remove search_queue table."""
    conn.execute("DROP TABLE IF EXISTS search_queue")
