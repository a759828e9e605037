"""
Migration 002: Add transaction_searches table.

One audit record per (transaction, queue item); attempts are appended.
"""

import sqlite3

VERSION = 2
NAME = "transaction_searches"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create transaction_searches table."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS transaction_searches (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            transaction_id TEXT NOT NULL,
            queue_item_id INTEGER NOT NULL,
            triggered_by TEXT NOT NULL,
            strategies_attempted TEXT NOT NULL,  -- JSON array, unique
            attempts TEXT NOT NULL,  -- JSON array of attempt objects
            total_files_connected INTEGER NOT NULL DEFAULT 0,
            automation_source TEXT,
            total_llm_calls INTEGER NOT NULL DEFAULT 0,
            total_llm_tokens INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            started_at TEXT,
            UNIQUE (transaction_id, queue_item_id)
        )
    """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_transaction_searches_tx "
        "ON transaction_searches(transaction_id)"
    )


def downgrade(conn: sqlite3.Connection) -> None:
    """Remove transaction_searches table."""
    conn.execute("DROP TABLE IF EXISTS transaction_searches")
