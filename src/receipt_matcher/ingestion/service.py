"""
File ingestion with content-hash deduplication.

Every file that enters the system from a mailbox goes through
FileIngestionService.ingest(). Identical bytes never produce a second
record for the same user: an active duplicate is returned as an
"existing:<id>" reference, a soft-deleted duplicate is restored.
"""

import logging
import time
from dataclasses import dataclass, fields
from typing import TYPE_CHECKING, Any, Optional

from ..schemas.dedupe import (
    compute_content_hash,
    make_existing_ref,
    normalize_mime_type,
    sanitize_filename,
)
from .blob_store import LocalBlobStore

if TYPE_CHECKING:
    from ..mail_client import EmailMessage
    from ..state_store import EmailIntegrationRecord, MatchHint, StateStore

logger = logging.getLogger(__name__)


@dataclass
class IngestionSource:
    """Where a file came from; stored as provenance columns on the record."""

    source_type: str = "upload"
    gmail_message_id: Optional[str] = None
    gmail_attachment_id: Optional[str] = None
    gmail_integration_id: Optional[str] = None
    gmail_integration_email: Optional[str] = None
    gmail_subject: Optional[str] = None
    gmail_sender_email: Optional[str] = None
    gmail_sender_domain: Optional[str] = None
    gmail_sender_name: Optional[str] = None
    gmail_email_date: Optional[str] = None

    @classmethod
    def from_message(
        cls,
        message: "EmailMessage",
        integration: "EmailIntegrationRecord",
        attachment_id: Optional[str] = None,
        source_type: str = "gmail",
    ) -> "IngestionSource":
        """Provenance for an attachment or a rendered mail body."""
        return cls(
            source_type=source_type,
            gmail_message_id=message.id,
            gmail_attachment_id=attachment_id,
            gmail_integration_id=integration.id,
            gmail_integration_email=integration.email,
            gmail_subject=message.subject,
            gmail_sender_email=message.sender_email,
            gmail_sender_domain=message.sender_domain,
            gmail_sender_name=message.sender_name,
            gmail_email_date=(
                message.date.isoformat().replace("+00:00", "Z") if message.date else None
            ),
        )

    def provenance_columns(self) -> dict[str, Any]:
        """Non-empty gmail_* columns for the file record."""
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name.startswith("gmail_") and getattr(self, f.name) is not None
        }


class FileIngestionService:
    """
    Stores new files and resolves duplicates.

    Hints are always written through StateStore.set_precision_search_hint
    so rejected files are never re-proposed.
    """

    def __init__(self, store: "StateStore", blob_store: LocalBlobStore):
        self.store = store
        self.blob_store = blob_store

    def ingest(
        self,
        user_id: str,
        data: bytes,
        filename: str,
        mime_type: Optional[str],
        source: IngestionSource,
        match_hint: Optional["MatchHint"] = None,
    ) -> Optional[str]:
        """
        Ingest file bytes.

        Args:
            user_id: Owner of the file
            data: Raw bytes
            filename: Original file name
            mime_type: Type reported by the source (octet-stream is normalized)
            source: Provenance
            match_hint: Optional hint to attach

        Returns:
            New file id, "existing:<id>" for a known hash, or None for empty data
        """
        if not data:
            logger.warning(f"Refusing to ingest empty payload {filename!r}")
            return None

        content_hash = compute_content_hash(data)
        content_type = normalize_mime_type(mime_type, filename)

        existing = self.store.find_file_by_hash(user_id, content_hash)
        if existing is not None:
            if not existing.is_deleted:
                logger.info(f"File exists by hash: {filename} ({existing.id})")
                return make_existing_ref(existing.id)

            logger.info(f"Restoring soft-deleted file: {filename} ({existing.id})")
            if existing.storage_path and self.blob_store.exists(existing.storage_path):
                self.blob_store.set_content_type(existing.storage_path, content_type)
            self.store.undelete_file(existing.id, filename, content_type)
            if match_hint is not None:
                self.store.set_precision_search_hint(existing.id, match_hint)
            return make_existing_ref(existing.id)

        timestamp = int(time.time() * 1000)
        storage_path = f"files/{user_id}/{timestamp}_{sanitize_filename(filename)}"
        blob = self.blob_store.put(storage_path, data, content_type)

        file_id = self.store.create_file(
            user_id=user_id,
            file_name=filename,
            mime_type=content_type,
            content_hash=content_hash,
            file_size=len(data),
            storage_path=blob.path,
            download_url=blob.download_url,
            source_type=source.source_type,
            extraction_complete=False,
            **source.provenance_columns(),
        )
        logger.info(f"Ingested {filename} as {file_id} ({content_type}, {len(data)} bytes)")

        if match_hint is not None:
            self.store.set_precision_search_hint(file_id, match_hint)
        return file_id
