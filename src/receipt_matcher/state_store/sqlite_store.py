"""
SQLite-based state store implementation.

Tables:
- transactions: Bank ledger lines (read by the engine, never deleted)
- files: Stored documents with extracted fields and match hints
- partners: Counterparty profiles used as matching context
- email_integrations: Connected mailboxes and their auth/pause state
- search_queue: Resumable queue items (migration 001)
- transaction_searches: Per-transaction audit of search attempts (migration 002)
- match_hint_events: Outbox of "file candidate found" events (migration 003)
"""

import json
import logging
import sqlite3
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def utc_now() -> str:
    """Current UTC time as ISO string with Z suffix."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _load_json(value: str | None, default: Any) -> Any:
    if not value:
        return default
    return json.loads(value)


class QueueStatus(str, Enum):
    """State of a search queue item."""

    PENDING = "pending"
    PROCESSING = "processing"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"

    def can_transition_to(self, target: "QueueStatus") -> bool:
        """Check whether the state machine allows moving to target."""
        return target in _QUEUE_TRANSITIONS[self]

    @property
    def is_terminal(self) -> bool:
        return self in (QueueStatus.COMPLETED, QueueStatus.FAILED)


_QUEUE_TRANSITIONS: dict[QueueStatus, set[QueueStatus]] = {
    QueueStatus.PENDING: {QueueStatus.PROCESSING, QueueStatus.PAUSED},
    QueueStatus.PROCESSING: {
        QueueStatus.PENDING,
        QueueStatus.PAUSED,
        QueueStatus.COMPLETED,
        QueueStatus.FAILED,
    },
    QueueStatus.PAUSED: {QueueStatus.PENDING},
    QueueStatus.COMPLETED: set(),
    QueueStatus.FAILED: set(),
}


class QueueScope(str, Enum):
    """What a queue item searches for."""

    SINGLE_TRANSACTION = "single_transaction"
    ALL_INCOMPLETE = "all_incomplete"


class TriggerSource(str, Enum):
    """Who created a queue item."""

    MANUAL = "manual"
    SCHEDULED = "scheduled"
    GMAIL_SYNC = "gmail_sync"


@dataclass
class TransactionRecord:
    """A bank ledger line."""

    id: str
    user_id: str
    amount: int  # signed, minor units
    currency: str
    date: str  # YYYY-MM-DD
    name: str
    description: str | None = None
    reference: str | None = None
    partner_name: str | None = None
    partner_id: str | None = None
    partner_iban: str | None = None
    is_complete: bool = False
    file_ids: list[str] = field(default_factory=list)
    rejected_file_ids: list[str] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "TransactionRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            amount=row["amount"],
            currency=row["currency"],
            date=row["date"],
            name=row["name"],
            description=row["description"],
            reference=row["reference"],
            partner_name=row["partner_name"],
            partner_id=row["partner_id"],
            partner_iban=row["partner_iban"],
            is_complete=bool(row["is_complete"]),
            file_ids=_load_json(row["file_ids"], []),
            rejected_file_ids=_load_json(row["rejected_file_ids"], []),
        )

    def has_rejected(self, file_id: str) -> bool:
        """True if the user manually unlinked this file from the transaction."""
        return file_id in self.rejected_file_ids


@dataclass
class FileRecord:
    """A stored document (PDF or image)."""

    id: str
    user_id: str
    file_name: str
    mime_type: str
    content_hash: str
    file_size: int = 0
    storage_path: str | None = None
    download_url: str | None = None
    source_type: str = "upload"
    extraction_complete: bool = False
    extracted_amount: int | None = None
    extracted_currency: str | None = None
    extracted_date: str | None = None
    extracted_partner: str | None = None
    extracted_text: str | None = None
    extracted_iban: str | None = None
    extracted_vat_id: str | None = None
    partner_id: str | None = None
    transaction_ids: list[str] = field(default_factory=list)
    deleted_at: str | None = None
    precision_search_hint: dict[str, Any] | None = None
    transaction_match_complete: bool = False
    gmail_message_id: str | None = None
    gmail_attachment_id: str | None = None
    gmail_integration_id: str | None = None
    gmail_integration_email: str | None = None
    gmail_subject: str | None = None
    gmail_sender_email: str | None = None
    gmail_sender_domain: str | None = None
    gmail_sender_name: str | None = None
    gmail_email_date: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "FileRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            file_name=row["file_name"],
            mime_type=row["mime_type"],
            content_hash=row["content_hash"],
            file_size=row["file_size"] or 0,
            storage_path=row["storage_path"],
            download_url=row["download_url"],
            source_type=row["source_type"],
            extraction_complete=bool(row["extraction_complete"]),
            extracted_amount=row["extracted_amount"],
            extracted_currency=row["extracted_currency"],
            extracted_date=row["extracted_date"],
            extracted_partner=row["extracted_partner"],
            extracted_text=row["extracted_text"],
            extracted_iban=row["extracted_iban"],
            extracted_vat_id=row["extracted_vat_id"],
            partner_id=row["partner_id"],
            transaction_ids=_load_json(row["transaction_ids"], []),
            deleted_at=row["deleted_at"],
            precision_search_hint=_load_json(row["precision_search_hint"], None),
            transaction_match_complete=bool(row["transaction_match_complete"]),
            gmail_message_id=row["gmail_message_id"],
            gmail_attachment_id=row["gmail_attachment_id"],
            gmail_integration_id=row["gmail_integration_id"],
            gmail_integration_email=row["gmail_integration_email"],
            gmail_subject=row["gmail_subject"],
            gmail_sender_email=row["gmail_sender_email"],
            gmail_sender_domain=row["gmail_sender_domain"],
            gmail_sender_name=row["gmail_sender_name"],
            gmail_email_date=row["gmail_email_date"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


@dataclass
class PartnerRecord:
    """A counterparty profile."""

    id: str
    user_id: str
    name: str
    aliases: list[str] = field(default_factory=list)
    vat_id: str | None = None
    ibans: list[str] = field(default_factory=list)
    website: str | None = None
    email_domains: list[str] = field(default_factory=list)
    file_source_patterns: list[dict[str, Any]] = field(default_factory=list)
    invoice_links: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "PartnerRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            aliases=_load_json(row["aliases"], []),
            vat_id=row["vat_id"],
            ibans=_load_json(row["ibans"], []),
            website=row["website"],
            email_domains=_load_json(row["email_domains"], []),
            file_source_patterns=_load_json(row["file_source_patterns"], []),
            invoice_links=_load_json(row["invoice_links"], []),
        )


@dataclass
class EmailIntegrationRecord:
    """A connected mailbox."""

    id: str
    user_id: str
    email: str
    access_token: str | None
    token_expires_at: str | None
    is_active: bool
    needs_reauth: bool
    is_paused: bool
    last_error: str | None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "EmailIntegrationRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            email=row["email"],
            access_token=row["access_token"],
            token_expires_at=row["token_expires_at"],
            is_active=bool(row["is_active"]),
            needs_reauth=bool(row["needs_reauth"]),
            is_paused=bool(row["is_paused"]),
            last_error=row["last_error"],
        )


@dataclass
class QueueItemRecord:
    """A persisted, resumable unit of search work."""

    id: int
    user_id: str
    scope: QueueScope
    transaction_id: str | None
    integration_id: str | None
    triggered_by: TriggerSource
    strategies: list[str]
    status: QueueStatus
    transactions_to_process: int
    transactions_processed: int
    transactions_with_matches: int
    total_files_connected: int
    last_processed_transaction_id: str | None
    errors: list[str]
    retry_count: int
    max_retries: int
    last_error: str | None
    created_at: str
    started_at: str | None
    completed_at: str | None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "QueueItemRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            scope=QueueScope(row["scope"]),
            transaction_id=row["transaction_id"],
            integration_id=row["integration_id"],
            triggered_by=TriggerSource(row["triggered_by"]),
            strategies=_load_json(row["strategies"], []),
            status=QueueStatus(row["status"]),
            transactions_to_process=row["transactions_to_process"],
            transactions_processed=row["transactions_processed"],
            transactions_with_matches=row["transactions_with_matches"],
            total_files_connected=row["total_files_connected"],
            last_processed_transaction_id=row["last_processed_transaction_id"],
            errors=_load_json(row["errors"], []),
            retry_count=row["retry_count"],
            max_retries=row["max_retries"],
            last_error=row["last_error"],
            created_at=row["created_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
        )


@dataclass
class MatchHint:
    """Non-authoritative proposal that a file belongs to a transaction."""

    transaction_id: str
    transaction_amount: int
    transaction_date: str
    search_strategy: str
    match_confidence: int | None = None
    searched_at: str = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "transaction_id": self.transaction_id,
            "transaction_amount": self.transaction_amount,
            "transaction_date": self.transaction_date,
            "search_strategy": self.search_strategy,
            "match_confidence": self.match_confidence,
            "searched_at": self.searched_at,
        }


# Columns callers may set on create_file() besides the required ones
FILE_OPTIONAL_COLUMNS = {
    "extraction_complete",
    "extracted_amount",
    "extracted_currency",
    "extracted_date",
    "extracted_partner",
    "extracted_text",
    "extracted_iban",
    "extracted_vat_id",
    "partner_id",
    "transaction_ids",
    "deleted_at",
    "gmail_message_id",
    "gmail_attachment_id",
    "gmail_integration_id",
    "gmail_integration_email",
    "gmail_subject",
    "gmail_sender_email",
    "gmail_sender_domain",
    "gmail_sender_name",
    "gmail_email_date",
}

# Queue columns that may be changed after creation
QUEUE_MUTABLE_COLUMNS = {
    "status",
    "transactions_processed",
    "transactions_with_matches",
    "total_files_connected",
    "last_processed_transaction_id",
    "errors",
    "retry_count",
    "last_error",
    "started_at",
    "completed_at",
}


def _to_db_value(value: Any) -> Any:
    """Serialize lists/dicts/enums/bools for SQLite columns."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (list, dict)):
        return json.dumps(value)
    if isinstance(value, bool):
        return int(value)
    return value


class StateStore:
    """
    SQLite-based state store for the matching engine.

    Provides persistent tracking of:
    - Transactions, files and partners (matching context)
    - Mailbox integrations
    - Search queue items and their audit trail
    - Match hint outbox events

    Every mutation is a targeted column update so concurrent writers
    (extraction, link finalizer, UI) are not clobbered.
    """

    SCHEMA_VERSION = 1

    def __init__(self, db_path: Path | str, run_migrations: bool = True):
        """
        Initialize state store.

        Args:
            db_path: Path to SQLite database file
            run_migrations: Whether to run pending migrations (default True)
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()
        if run_migrations:
            self._run_migrations()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with row factory."""
        conn = sqlite3.connect(str(self.db_path), timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        """Context manager for database transactions.

        Args:
            immediate: Take the write lock up front (BEGIN IMMEDIATE) so a
                read-then-write sequence is atomic against other writers.
        """
        conn = self._get_connection()
        try:
            if immediate:
                conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS transactions (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    amount INTEGER NOT NULL,  -- signed, minor units
                    currency TEXT NOT NULL DEFAULT 'EUR',
                    date TEXT NOT NULL,  -- YYYY-MM-DD
                    name TEXT NOT NULL DEFAULT '',
                    description TEXT,
                    reference TEXT,
                    partner_name TEXT,
                    partner_id TEXT,
                    partner_iban TEXT,
                    is_complete INTEGER NOT NULL DEFAULT 0,
                    file_ids TEXT,  -- JSON array
                    rejected_file_ids TEXT,  -- JSON array
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS files (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    file_name TEXT NOT NULL,
                    mime_type TEXT NOT NULL,
                    file_size INTEGER NOT NULL DEFAULT 0,
                    storage_path TEXT,
                    download_url TEXT,
                    content_hash TEXT NOT NULL,
                    source_type TEXT NOT NULL DEFAULT 'upload',
                    extraction_complete INTEGER NOT NULL DEFAULT 0,
                    extracted_amount INTEGER,
                    extracted_currency TEXT,
                    extracted_date TEXT,
                    extracted_partner TEXT,
                    extracted_text TEXT,
                    extracted_iban TEXT,
                    extracted_vat_id TEXT,
                    partner_id TEXT,
                    transaction_ids TEXT,  -- JSON array
                    deleted_at TEXT,
                    precision_search_hint TEXT,  -- JSON object
                    transaction_match_complete INTEGER NOT NULL DEFAULT 0,
                    gmail_message_id TEXT,
                    gmail_attachment_id TEXT,
                    gmail_integration_id TEXT,
                    gmail_integration_email TEXT,
                    gmail_subject TEXT,
                    gmail_sender_email TEXT,
                    gmail_sender_domain TEXT,
                    gmail_sender_name TEXT,
                    gmail_email_date TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS partners (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    aliases TEXT,  -- JSON array
                    vat_id TEXT,
                    ibans TEXT,  -- JSON array
                    website TEXT,
                    email_domains TEXT,  -- JSON array
                    file_source_patterns TEXT,  -- JSON array of objects
                    invoice_links TEXT,  -- JSON array of objects
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS email_integrations (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    email TEXT NOT NULL,
                    access_token TEXT,
                    token_expires_at TEXT,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    needs_reauth INTEGER NOT NULL DEFAULT 0,
                    is_paused INTEGER NOT NULL DEFAULT 0,
                    last_error TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """
            )

            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_transactions_incomplete "
                "ON transactions(user_id, is_complete, date DESC, id DESC)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_files_hash ON files(user_id, content_hash)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_files_partner ON files(user_id, partner_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_files_gmail ON files(user_id, gmail_message_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_integrations_user ON email_integrations(user_id)"
            )

            conn.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)", (self.SCHEMA_VERSION,)
            )

    def _run_migrations(self) -> None:
        """Run pending database migrations."""
        from .migrations import MigrationRunner

        conn = self._get_connection()
        try:
            runner = MigrationRunner(conn)
            runner.run_pending()
        finally:
            conn.close()

    # === Transaction Methods ===

    def upsert_transaction(
        self,
        transaction_id: str,
        user_id: str,
        amount: int,
        date: str,
        name: str = "",
        currency: str = "EUR",
        description: str | None = None,
        reference: str | None = None,
        partner_name: str | None = None,
        partner_id: str | None = None,
        partner_iban: str | None = None,
        is_complete: bool = False,
        file_ids: list[str] | None = None,
        rejected_file_ids: list[str] | None = None,
    ) -> None:
        """Insert or update a transaction record (import path)."""
        now = utc_now()
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO transactions
                (id, user_id, amount, currency, date, name, description, reference,
                 partner_name, partner_id, partner_iban, is_complete, file_ids,
                 rejected_file_ids, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    amount = excluded.amount,
                    currency = excluded.currency,
                    date = excluded.date,
                    name = excluded.name,
                    description = excluded.description,
                    reference = excluded.reference,
                    partner_name = excluded.partner_name,
                    partner_id = excluded.partner_id,
                    partner_iban = excluded.partner_iban,
                    is_complete = excluded.is_complete,
                    file_ids = excluded.file_ids,
                    rejected_file_ids = excluded.rejected_file_ids,
                    updated_at = excluded.updated_at
            """,
                (
                    transaction_id,
                    user_id,
                    amount,
                    currency,
                    date,
                    name,
                    description,
                    reference,
                    partner_name,
                    partner_id,
                    partner_iban,
                    int(is_complete),
                    json.dumps(file_ids or []),
                    json.dumps(rejected_file_ids or []),
                    now,
                    now,
                ),
            )

    def get_transaction(self, transaction_id: str) -> TransactionRecord | None:
        """Get a transaction by id."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM transactions WHERE id = ?", (transaction_id,)
            ).fetchone()
            return TransactionRecord.from_row(row) if row else None

    def count_incomplete_transactions(self, user_id: str) -> int:
        """Count transactions without a linked receipt."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM transactions WHERE user_id = ? AND is_complete = 0",
                (user_id,),
            ).fetchone()
            return row[0]

    def get_incomplete_transactions(
        self,
        user_id: str,
        limit: int,
        after_transaction_id: str | None = None,
    ) -> list[TransactionRecord]:
        """
        Page through incomplete transactions, newest first.

        Ordering is (date DESC, id DESC). When after_transaction_id is given,
        the page starts strictly after that transaction in this ordering. An
        unknown cursor id starts from the beginning.
        """
        with self._transaction() as conn:
            params: list[Any] = [user_id]
            where = "user_id = ? AND is_complete = 0"

            if after_transaction_id:
                cursor_row = conn.execute(
                    "SELECT date, id FROM transactions WHERE id = ?", (after_transaction_id,)
                ).fetchone()
                if cursor_row:
                    where += " AND (date < ? OR (date = ? AND id < ?))"
                    params.extend([cursor_row["date"], cursor_row["date"], cursor_row["id"]])

            params.append(limit)
            rows = conn.execute(
                f"SELECT * FROM transactions WHERE {where} ORDER BY date DESC, id DESC LIMIT ?",
                params,
            ).fetchall()
            return [TransactionRecord.from_row(r) for r in rows]

    def reject_file_for_transaction(self, transaction_id: str, file_id: str) -> None:
        """Record a manual unlink: the file must never be suggested again."""
        with self._transaction(immediate=True) as conn:
            row = conn.execute(
                "SELECT file_ids, rejected_file_ids FROM transactions WHERE id = ?",
                (transaction_id,),
            ).fetchone()
            if not row:
                return
            file_ids = [f for f in _load_json(row["file_ids"], []) if f != file_id]
            rejected = _load_json(row["rejected_file_ids"], [])
            if file_id not in rejected:
                rejected.append(file_id)
            conn.execute(
                """
                UPDATE transactions
                SET file_ids = ?, rejected_file_ids = ?, is_complete = ?, updated_at = ?
                WHERE id = ?
            """,
                (json.dumps(file_ids), json.dumps(rejected), int(bool(file_ids)), utc_now(),
                 transaction_id),
            )

    def link_file_to_transaction(self, transaction_id: str, file_id: str) -> None:
        """Link a file and mark the transaction complete (link finalizer path)."""
        with self._transaction(immediate=True) as conn:
            tx_row = conn.execute(
                "SELECT file_ids FROM transactions WHERE id = ?", (transaction_id,)
            ).fetchone()
            file_row = conn.execute(
                "SELECT transaction_ids FROM files WHERE id = ?", (file_id,)
            ).fetchone()
            if not tx_row or not file_row:
                return
            now = utc_now()
            file_ids = _load_json(tx_row["file_ids"], [])
            if file_id not in file_ids:
                file_ids.append(file_id)
            tx_ids = _load_json(file_row["transaction_ids"], [])
            if transaction_id not in tx_ids:
                tx_ids.append(transaction_id)
            conn.execute(
                "UPDATE transactions SET file_ids = ?, is_complete = 1, updated_at = ? WHERE id = ?",
                (json.dumps(file_ids), now, transaction_id),
            )
            conn.execute(
                """
                UPDATE files
                SET transaction_ids = ?, transaction_match_complete = 1, updated_at = ?
                WHERE id = ?
            """,
                (json.dumps(tx_ids), now, file_id),
            )

    # === File Methods ===

    def create_file(
        self,
        user_id: str,
        file_name: str,
        mime_type: str,
        content_hash: str,
        file_size: int = 0,
        storage_path: str | None = None,
        download_url: str | None = None,
        source_type: str = "upload",
        file_id: str | None = None,
        **extra: Any,
    ) -> str:
        """
        Create a file record.

        Args:
            extra: Optional columns from FILE_OPTIONAL_COLUMNS

        Returns:
            The new file id
        """
        unknown = set(extra) - FILE_OPTIONAL_COLUMNS
        if unknown:
            raise ValueError(f"Unknown file columns: {sorted(unknown)}")

        file_id = file_id or uuid.uuid4().hex
        now = utc_now()
        columns = {
            "id": file_id,
            "user_id": user_id,
            "file_name": file_name,
            "mime_type": mime_type,
            "content_hash": content_hash,
            "file_size": file_size,
            "storage_path": storage_path,
            "download_url": download_url,
            "source_type": source_type,
            "transaction_ids": [],
            "created_at": now,
            "updated_at": now,
        }
        columns.update(extra)

        names = ", ".join(columns)
        placeholders = ", ".join("?" for _ in columns)
        with self._transaction() as conn:
            conn.execute(
                f"INSERT INTO files ({names}) VALUES ({placeholders})",
                [_to_db_value(v) for v in columns.values()],
            )
        return file_id

    def get_file(self, file_id: str) -> FileRecord | None:
        """Get a file by id (soft-deleted files included)."""
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM files WHERE id = ?", (file_id,)).fetchone()
            return FileRecord.from_row(row) if row else None

    def find_file_by_hash(self, user_id: str, content_hash: str) -> FileRecord | None:
        """Find the file owning a content hash, soft-deleted files included.

        Active files win over soft-deleted ones when both exist.
        """
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT * FROM files
                WHERE user_id = ? AND content_hash = ?
                ORDER BY deleted_at IS NOT NULL, created_at
                LIMIT 1
            """,
                (user_id, content_hash),
            ).fetchone()
            return FileRecord.from_row(row) if row else None

    def count_active_files_by_hash(self, user_id: str, content_hash: str) -> int:
        """Count non-deleted files with a content hash."""
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) FROM files
                WHERE user_id = ? AND content_hash = ? AND deleted_at IS NULL
            """,
                (user_id, content_hash),
            ).fetchone()
            return row[0]

    def find_file_by_gmail_attachment(
        self, user_id: str, message_id: str, attachment_id: str
    ) -> FileRecord | None:
        """Find a file previously created from a mailbox attachment."""
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT * FROM files
                WHERE user_id = ? AND gmail_message_id = ? AND gmail_attachment_id = ?
                LIMIT 1
            """,
                (user_id, message_id, attachment_id),
            ).fetchone()
            return FileRecord.from_row(row) if row else None

    def find_html_invoice_file(self, user_id: str, message_id: str) -> FileRecord | None:
        """Find a PDF previously rendered from an e-mail body."""
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT * FROM files
                WHERE user_id = ? AND gmail_message_id = ? AND source_type = 'gmail_html_invoice'
                LIMIT 1
            """,
                (user_id, message_id),
            ).fetchone()
            return FileRecord.from_row(row) if row else None

    def get_unlinked_partner_files(
        self, user_id: str, partner_id: str, limit: int = 50
    ) -> list[FileRecord]:
        """Extraction-complete, non-deleted files of a partner with no links."""
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM files
                WHERE user_id = ? AND partner_id = ? AND extraction_complete = 1
                  AND deleted_at IS NULL
                  AND (transaction_ids IS NULL OR transaction_ids = '[]')
                ORDER BY created_at DESC
                LIMIT ?
            """,
                (user_id, partner_id, limit),
            ).fetchall()
            return [FileRecord.from_row(r) for r in rows]

    def get_unlinked_files_in_date_range(
        self, user_id: str, date_from: str, date_to: str, limit: int = 100
    ) -> list[FileRecord]:
        """Extraction-complete, non-deleted, unlinked files by extracted date."""
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM files
                WHERE user_id = ? AND extraction_complete = 1
                  AND extracted_date >= ? AND extracted_date <= ?
                  AND deleted_at IS NULL
                  AND (transaction_ids IS NULL OR transaction_ids = '[]')
                ORDER BY extracted_date DESC
                LIMIT ?
            """,
                (user_id, date_from, date_to, limit),
            ).fetchall()
            return [FileRecord.from_row(r) for r in rows]

    def undelete_file(self, file_id: str, file_name: str, mime_type: str) -> None:
        """Restore a soft-deleted file and force re-extraction."""
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE files
                SET deleted_at = NULL, file_name = ?, mime_type = ?,
                    extraction_complete = 0, updated_at = ?
                WHERE id = ?
            """,
                (file_name, mime_type, utc_now(), file_id),
            )

    def soft_delete_file(self, file_id: str) -> None:
        """Soft-delete a file (user action)."""
        now = utc_now()
        with self._transaction() as conn:
            conn.execute(
                "UPDATE files SET deleted_at = ?, updated_at = ? WHERE id = ?",
                (now, now, file_id),
            )

    def update_file_extraction(self, file_id: str, **fields: Any) -> None:
        """Store extracted fields (external extraction step) and mark complete."""
        allowed = {f for f in FILE_OPTIONAL_COLUMNS if f.startswith("extracted_")} | {"partner_id"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Unknown extraction columns: {sorted(unknown)}")

        assignments = ", ".join(f"{name} = ?" for name in fields)
        values = [_to_db_value(v) for v in fields.values()]
        prefix = f"{assignments}, " if assignments else ""
        with self._transaction() as conn:
            conn.execute(
                f"UPDATE files SET {prefix}extraction_complete = 1, updated_at = ? WHERE id = ?",
                [*values, utc_now(), file_id],
            )

    def set_precision_search_hint(self, file_id: str, hint: MatchHint) -> bool:
        """
        Write a match hint on a file and emit an outbox event.

        The transaction's rejected files are re-read inside the same write
        transaction; a rejected file never receives a hint for it.

        Returns:
            True if the hint was written, False if refused or file missing
        """
        with self._transaction(immediate=True) as conn:
            tx_row = conn.execute(
                "SELECT user_id, rejected_file_ids FROM transactions WHERE id = ?",
                (hint.transaction_id,),
            ).fetchone()
            rejected = _load_json(tx_row["rejected_file_ids"], []) if tx_row else []
            if file_id in rejected:
                logger.info(
                    f"Refusing hint: file {file_id} was rejected by transaction "
                    f"{hint.transaction_id}"
                )
                return False

            now = utc_now()
            cursor = conn.execute(
                """
                UPDATE files
                SET precision_search_hint = ?, transaction_match_complete = 0, updated_at = ?
                WHERE id = ?
            """,
                (json.dumps(hint.to_dict()), now, file_id),
            )
            if cursor.rowcount == 0:
                return False

            user_row = conn.execute(
                "SELECT user_id FROM files WHERE id = ?", (file_id,)
            ).fetchone()
            conn.execute(
                """
                INSERT INTO match_hint_events
                (file_id, transaction_id, user_id, score, strategy, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """,
                (
                    file_id,
                    hint.transaction_id,
                    user_row["user_id"],
                    hint.match_confidence,
                    hint.search_strategy,
                    now,
                ),
            )
        return True

    # === Partner Methods ===

    def upsert_partner(
        self,
        partner_id: str,
        user_id: str,
        name: str,
        aliases: list[str] | None = None,
        vat_id: str | None = None,
        ibans: list[str] | None = None,
        website: str | None = None,
        email_domains: list[str] | None = None,
        file_source_patterns: list[dict[str, Any]] | None = None,
    ) -> None:
        """Insert or update a partner profile (invoice links are preserved)."""
        now = utc_now()
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO partners
                (id, user_id, name, aliases, vat_id, ibans, website, email_domains,
                 file_source_patterns, invoice_links, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, '[]', ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    aliases = excluded.aliases,
                    vat_id = excluded.vat_id,
                    ibans = excluded.ibans,
                    website = excluded.website,
                    email_domains = excluded.email_domains,
                    file_source_patterns = excluded.file_source_patterns,
                    updated_at = excluded.updated_at
            """,
                (
                    partner_id,
                    user_id,
                    name,
                    json.dumps(aliases or []),
                    vat_id,
                    json.dumps(ibans or []),
                    website,
                    json.dumps(email_domains or []),
                    json.dumps(file_source_patterns or []),
                    now,
                    now,
                ),
            )

    def get_partner(self, partner_id: str) -> PartnerRecord | None:
        """Get a partner by id."""
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM partners WHERE id = ?", (partner_id,)).fetchone()
            return PartnerRecord.from_row(row) if row else None

    def add_partner_invoice_links(self, partner_id: str, links: list[dict[str, Any]]) -> int:
        """
        Append discovered invoice links to a partner (set semantics by URL).

        Returns:
            Number of links actually added
        """
        with self._transaction(immediate=True) as conn:
            row = conn.execute(
                "SELECT invoice_links FROM partners WHERE id = ?", (partner_id,)
            ).fetchone()
            if not row:
                return 0
            existing = _load_json(row["invoice_links"], [])
            known_urls = {link.get("url") for link in existing}
            added = 0
            for link in links:
                if link.get("url") in known_urls:
                    continue
                existing.append(link)
                known_urls.add(link.get("url"))
                added += 1
            if added:
                conn.execute(
                    "UPDATE partners SET invoice_links = ?, updated_at = ? WHERE id = ?",
                    (json.dumps(existing), utc_now(), partner_id),
                )
            return added

    # === Email Integration Methods ===

    def upsert_email_integration(
        self,
        integration_id: str,
        user_id: str,
        email: str,
        access_token: str | None = None,
        token_expires_at: str | None = None,
        is_active: bool = True,
    ) -> None:
        """Insert or update a mailbox integration; a new token clears needs_reauth."""
        now = utc_now()
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO email_integrations
                (id, user_id, email, access_token, token_expires_at, is_active,
                 needs_reauth, is_paused, last_error, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, 0, 0, NULL, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    email = excluded.email,
                    access_token = excluded.access_token,
                    token_expires_at = excluded.token_expires_at,
                    is_active = excluded.is_active,
                    needs_reauth = 0,
                    last_error = NULL,
                    updated_at = excluded.updated_at
            """,
                (integration_id, user_id, email, access_token, token_expires_at,
                 int(is_active), now, now),
            )

    def get_email_integration(self, integration_id: str) -> EmailIntegrationRecord | None:
        """Get a mailbox integration by id."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM email_integrations WHERE id = ?", (integration_id,)
            ).fetchone()
            return EmailIntegrationRecord.from_row(row) if row else None

    def get_usable_email_integrations(
        self, user_id: str, limit: int = 5
    ) -> list[EmailIntegrationRecord]:
        """Active, authorized and unpaused integrations of a user."""
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM email_integrations
                WHERE user_id = ? AND is_active = 1 AND needs_reauth = 0 AND is_paused = 0
                ORDER BY created_at
                LIMIT ?
            """,
                (user_id, limit),
            ).fetchall()
            return [EmailIntegrationRecord.from_row(r) for r in rows]

    def mark_integration_needs_reauth(self, integration_id: str, error: str) -> None:
        """Flag an integration whose credentials were refused."""
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE email_integrations
                SET needs_reauth = 1, last_error = ?, updated_at = ?
                WHERE id = ?
            """,
                (error, utc_now(), integration_id),
            )

    def set_integration_paused(self, integration_id: str, paused: bool) -> None:
        """Pause or resume an integration."""
        with self._transaction() as conn:
            conn.execute(
                "UPDATE email_integrations SET is_paused = ?, updated_at = ? WHERE id = ?",
                (int(paused), utc_now(), integration_id),
            )

    # === Search Queue Methods ===

    def create_queue_item(
        self,
        user_id: str,
        scope: QueueScope,
        strategies: list[str],
        triggered_by: TriggerSource,
        transaction_id: str | None = None,
        integration_id: str | None = None,
        transactions_to_process: int = 0,
        transactions_processed: int = 0,
        transactions_with_matches: int = 0,
        total_files_connected: int = 0,
        last_processed_transaction_id: str | None = None,
        errors: list[str] | None = None,
        retry_count: int = 0,
        max_retries: int = 3,
        last_error: str | None = None,
    ) -> int:
        """Create a pending queue item and return its id."""
        with self._transaction() as conn:
            cursor = self._insert_queue_item(
                conn,
                user_id=user_id,
                scope=scope,
                strategies=strategies,
                triggered_by=triggered_by,
                transaction_id=transaction_id,
                integration_id=integration_id,
                transactions_to_process=transactions_to_process,
                transactions_processed=transactions_processed,
                transactions_with_matches=transactions_with_matches,
                total_files_connected=total_files_connected,
                last_processed_transaction_id=last_processed_transaction_id,
                errors=errors or [],
                retry_count=retry_count,
                max_retries=max_retries,
                last_error=last_error,
            )
            return cursor.lastrowid

    def _insert_queue_item(self, conn: sqlite3.Connection, **values: Any) -> sqlite3.Cursor:
        values["status"] = QueueStatus.PENDING
        values["created_at"] = utc_now()
        names = ", ".join(values)
        placeholders = ", ".join("?" for _ in values)
        return conn.execute(
            f"INSERT INTO search_queue ({names}) VALUES ({placeholders})",
            [_to_db_value(v) for v in values.values()],
        )

    def get_queue_item(self, item_id: int) -> QueueItemRecord | None:
        """Get a queue item by id."""
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM search_queue WHERE id = ?", (item_id,)).fetchone()
            return QueueItemRecord.from_row(row) if row else None

    def get_queue_items(
        self, status: QueueStatus | None = None, limit: int = 50
    ) -> list[QueueItemRecord]:
        """List queue items, newest first."""
        with self._transaction() as conn:
            if status:
                rows = conn.execute(
                    "SELECT * FROM search_queue WHERE status = ? ORDER BY id DESC LIMIT ?",
                    (status.value, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM search_queue ORDER BY id DESC LIMIT ?", (limit,)
                ).fetchall()
            return [QueueItemRecord.from_row(r) for r in rows]

    def claim_queue_item(self, item_id: int) -> bool:
        """Atomically flip one pending item to processing.

        Returns:
            True if this caller won the claim
        """
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE search_queue SET status = ?, started_at = ?
                WHERE id = ? AND status = ?
            """,
                (QueueStatus.PROCESSING.value, utc_now(), item_id, QueueStatus.PENDING.value),
            )
            return cursor.rowcount == 1

    def claim_next_pending_queue_item(self) -> QueueItemRecord | None:
        """Atomically claim the oldest pending item.

        The select and the conditional update run under one write lock, so
        two concurrent callers can never claim the same item.
        """
        with self._transaction(immediate=True) as conn:
            row = conn.execute(
                """
                SELECT id FROM search_queue WHERE status = ?
                ORDER BY created_at, id
                LIMIT 1
            """,
                (QueueStatus.PENDING.value,),
            ).fetchone()
            if not row:
                return None
            cursor = conn.execute(
                """
                UPDATE search_queue SET status = ?, started_at = ?
                WHERE id = ? AND status = ?
            """,
                (QueueStatus.PROCESSING.value, utc_now(), row["id"], QueueStatus.PENDING.value),
            )
            if cursor.rowcount != 1:
                return None
            claimed = conn.execute(
                "SELECT * FROM search_queue WHERE id = ?", (row["id"],)
            ).fetchone()
            return QueueItemRecord.from_row(claimed)

    def update_queue_item(self, item_id: int, **fields: Any) -> None:
        """Targeted update of mutable queue columns."""
        unknown = set(fields) - QUEUE_MUTABLE_COLUMNS
        if unknown:
            raise ValueError(f"Unknown queue columns: {sorted(unknown)}")
        if not fields:
            return
        assignments = ", ".join(f"{name} = ?" for name in fields)
        values = [_to_db_value(v) for v in fields.values()]
        with self._transaction() as conn:
            conn.execute(
                f"UPDATE search_queue SET {assignments} WHERE id = ?", [*values, item_id]
            )

    def recreate_queue_item(self, item: QueueItemRecord, **overrides: Any) -> int:
        """
        Delete a queue item and insert a fresh pending copy in one transaction.

        Counters, cursor and strategies carry over unless overridden.

        Returns:
            The id of the new item
        """
        values: dict[str, Any] = {
            "user_id": item.user_id,
            "scope": item.scope,
            "transaction_id": item.transaction_id,
            "integration_id": item.integration_id,
            "triggered_by": item.triggered_by,
            "strategies": item.strategies,
            "transactions_to_process": item.transactions_to_process,
            "transactions_processed": item.transactions_processed,
            "transactions_with_matches": item.transactions_with_matches,
            "total_files_connected": item.total_files_connected,
            "last_processed_transaction_id": item.last_processed_transaction_id,
            "errors": item.errors,
            "retry_count": item.retry_count,
            "max_retries": item.max_retries,
            "last_error": item.last_error,
        }
        values.update(overrides)
        with self._transaction(immediate=True) as conn:
            conn.execute("DELETE FROM search_queue WHERE id = ?", (item.id,))
            cursor = self._insert_queue_item(conn, **values)
            return cursor.lastrowid

    def delete_queue_item(self, item_id: int) -> bool:
        """Delete a queue item."""
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM search_queue WHERE id = ?", (item_id,))
            return cursor.rowcount > 0

    def reset_stale_queue_items(self, started_before: str) -> int:
        """Put items stuck in processing (crashed runs) back to pending."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE search_queue SET status = ?, started_at = NULL
                WHERE status = ? AND started_at IS NOT NULL AND started_at < ?
            """,
                (QueueStatus.PENDING.value, QueueStatus.PROCESSING.value, started_before),
            )
            return cursor.rowcount

    # === Transaction Search Audit Methods ===

    def log_search_attempt(
        self,
        transaction_id: str,
        queue_item_id: int,
        triggered_by: str,
        attempt: dict[str, Any],
    ) -> None:
        """Append an attempt to the transaction's search record for a queue item."""
        connected = len(attempt.get("file_ids_connected", []))
        llm_calls = attempt.get("llm_calls", 0) or 0
        llm_tokens = attempt.get("llm_tokens_used", 0) or 0
        strategy = attempt["strategy"]

        with self._transaction(immediate=True) as conn:
            row = conn.execute(
                """
                SELECT * FROM transaction_searches
                WHERE transaction_id = ? AND queue_item_id = ?
            """,
                (transaction_id, queue_item_id),
            ).fetchone()

            if row is None:
                conn.execute(
                    """
                    INSERT INTO transaction_searches
                    (transaction_id, queue_item_id, triggered_by, strategies_attempted,
                     attempts, total_files_connected, automation_source,
                     total_llm_calls, total_llm_tokens, created_at, started_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                    (
                        transaction_id,
                        queue_item_id,
                        triggered_by,
                        json.dumps([strategy]),
                        json.dumps([attempt]),
                        connected,
                        strategy if connected else None,
                        llm_calls,
                        llm_tokens,
                        utc_now(),
                        attempt.get("started_at"),
                    ),
                )
                return

            strategies = _load_json(row["strategies_attempted"], [])
            if strategy not in strategies:
                strategies.append(strategy)
            attempts = _load_json(row["attempts"], [])
            attempts.append(attempt)
            conn.execute(
                """
                UPDATE transaction_searches
                SET strategies_attempted = ?, attempts = ?,
                    total_files_connected = total_files_connected + ?,
                    automation_source = ?,
                    total_llm_calls = total_llm_calls + ?,
                    total_llm_tokens = total_llm_tokens + ?
                WHERE id = ?
            """,
                (
                    json.dumps(strategies),
                    json.dumps(attempts),
                    connected,
                    strategy if connected else row["automation_source"],
                    llm_calls,
                    llm_tokens,
                    row["id"],
                ),
            )

    def get_transaction_searches(self, transaction_id: str) -> list[dict[str, Any]]:
        """Audit trail of a transaction, oldest first."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM transaction_searches WHERE transaction_id = ? ORDER BY id",
                (transaction_id,),
            ).fetchall()
            results = []
            for row in rows:
                record = dict(row)
                record["strategies_attempted"] = _load_json(row["strategies_attempted"], [])
                record["attempts"] = _load_json(row["attempts"], [])
                results.append(record)
            return results

    # === Match Hint Outbox Methods ===

    def get_pending_hint_events(self, limit: int = 100) -> list[dict[str, Any]]:
        """Unconsumed "file candidate found" events, oldest first."""
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM match_hint_events
                WHERE consumed_at IS NULL
                ORDER BY id
                LIMIT ?
            """,
                (limit,),
            ).fetchall()
            return [dict(row) for row in rows]

    def mark_hint_event_consumed(self, event_id: int) -> bool:
        """Mark an outbox event as handled by the link finalizer."""
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE match_hint_events SET consumed_at = ? WHERE id = ? AND consumed_at IS NULL",
                (utc_now(), event_id),
            )
            return cursor.rowcount == 1

    def get_stats(self) -> dict[str, Any]:
        """Summary counters for the status command."""
        with self._transaction() as conn:
            stats: dict[str, Any] = {
                "transactions_total": conn.execute(
                    "SELECT COUNT(*) FROM transactions"
                ).fetchone()[0],
                "transactions_incomplete": conn.execute(
                    "SELECT COUNT(*) FROM transactions WHERE is_complete = 0"
                ).fetchone()[0],
                "files_total": conn.execute(
                    "SELECT COUNT(*) FROM files WHERE deleted_at IS NULL"
                ).fetchone()[0],
                "files_with_hint": conn.execute(
                    "SELECT COUNT(*) FROM files WHERE precision_search_hint IS NOT NULL"
                ).fetchone()[0],
                "pending_hint_events": conn.execute(
                    "SELECT COUNT(*) FROM match_hint_events WHERE consumed_at IS NULL"
                ).fetchone()[0],
            }
            queue_rows = conn.execute(
                "SELECT status, COUNT(*) AS n FROM search_queue GROUP BY status"
            ).fetchall()
            stats["queue"] = {row["status"]: row["n"] for row in queue_rows}
            return stats
