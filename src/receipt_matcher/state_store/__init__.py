"""
State Store (SQLite-based).

Persistent DB for tracking:
- Transactions, files, partners and mailbox integrations
- Search queue items and per-transaction search audit
- Match hint outbox events

Enforces one file per content hash and one audit record per
(transaction, queue item).
"""

from .sqlite_store import (
    EmailIntegrationRecord,
    FileRecord,
    MatchHint,
    PartnerRecord,
    QueueItemRecord,
    QueueScope,
    QueueStatus,
    StateStore,
    TransactionRecord,
    TriggerSource,
)

__all__ = [
    "StateStore",
    "TransactionRecord",
    "FileRecord",
    "PartnerRecord",
    "EmailIntegrationRecord",
    "QueueItemRecord",
    "QueueStatus",
    "QueueScope",
    "TriggerSource",
    "MatchHint",
]
