"""Tests for file ingestion, content-hash dedupe and the blob store."""

import pytest

from receipt_matcher.ingestion import (
    BlobStoreError,
    FileIngestionService,
    IngestionSource,
    LocalBlobStore,
)
from receipt_matcher.schemas.dedupe import (
    compute_content_hash,
    normalize_mime_type,
    parse_existing_ref,
    sanitize_filename,
)
from receipt_matcher.state_store import MatchHint

from conftest import USER_ID

PDF_BYTES = b"%PDF-1.4\n% netflix invoice 49,99\n%%EOF"


@pytest.fixture
def blob_store(tmp_path) -> LocalBlobStore:
    return LocalBlobStore(tmp_path / "blobs")


@pytest.fixture
def ingestion(store, blob_store) -> FileIngestionService:
    return FileIngestionService(store, blob_store)


class TestDedupeHelpers:
    """Tests for dedupe key helpers."""

    def test_content_hash(self):
        digest = compute_content_hash(b"abc")
        assert digest == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"

    def test_octet_stream_inferred_from_extension(self):
        assert normalize_mime_type("application/octet-stream", "Invoice.PDF") == "application/pdf"
        assert normalize_mime_type(None, "photo.jpeg") == "image/jpeg"
        assert normalize_mime_type("application/octet-stream", "data.bin") == (
            "application/octet-stream"
        )

    def test_reported_type_kept(self):
        assert normalize_mime_type("image/png", "scan.pdf") == "image/png"

    def test_existing_ref(self):
        assert parse_existing_ref("existing:abc") == "abc"
        assert parse_existing_ref("abc") is None

    def test_sanitize_filename(self):
        assert sanitize_filename("Rechnung März 2024 (1).pdf") == "Rechnung_M_rz_2024__1_.pdf"


class TestFileIngestion:
    """Tests for FileIngestionService.ingest()."""

    def test_new_file_stored(self, store, blob_store, ingestion):
        source = IngestionSource(
            source_type="gmail", gmail_message_id="msg-1", gmail_attachment_id="att-1"
        )
        file_id = ingestion.ingest(USER_ID, PDF_BYTES, "invoice.pdf", "application/pdf", source)

        assert parse_existing_ref(file_id) is None
        record = store.get_file(file_id)
        assert record.content_hash == compute_content_hash(PDF_BYTES)
        assert record.file_size == len(PDF_BYTES)
        assert record.source_type == "gmail"
        assert record.extraction_complete is False
        assert record.gmail_message_id == "msg-1"
        assert record.gmail_attachment_id == "att-1"
        assert record.storage_path.startswith(f"files/{USER_ID}/")
        assert blob_store.get(record.storage_path) == PDF_BYTES
        assert blob_store.get_content_type(record.storage_path) == "application/pdf"
        assert record.download_url.startswith("file://")

    def test_same_bytes_return_existing(self, store, ingestion):
        """Identical bytes never create a second record."""
        first = ingestion.ingest(USER_ID, PDF_BYTES, "a.pdf", "application/pdf", IngestionSource())
        second = ingestion.ingest(USER_ID, PDF_BYTES, "b.pdf", "application/pdf", IngestionSource())

        assert second == f"existing:{first}"
        assert store.count_active_files_by_hash(USER_ID, compute_content_hash(PDF_BYTES)) == 1

    def test_same_bytes_other_user_is_new(self, ingestion):
        first = ingestion.ingest(USER_ID, PDF_BYTES, "a.pdf", "application/pdf", IngestionSource())
        other = ingestion.ingest("user-2", PDF_BYTES, "a.pdf", "application/pdf", IngestionSource())
        assert parse_existing_ref(other) is None
        assert other != first

    def test_soft_deleted_file_restored(self, store, blob_store, ingestion):
        """A deleted duplicate is undeleted with the new name and type."""
        file_id = ingestion.ingest(
            USER_ID, PDF_BYTES, "old.bin", "application/octet-stream", IngestionSource()
        )
        store.update_file_extraction(file_id, extracted_amount=4999)
        store.soft_delete_file(file_id)

        result = ingestion.ingest(
            USER_ID, PDF_BYTES, "invoice.pdf", "application/octet-stream", IngestionSource()
        )

        assert result == f"existing:{file_id}"
        record = store.get_file(file_id)
        assert record.is_deleted is False
        assert record.file_name == "invoice.pdf"
        assert record.mime_type == "application/pdf"
        assert record.extraction_complete is False
        assert blob_store.get_content_type(record.storage_path) == "application/pdf"

    def test_restored_file_gets_hint(self, store, ingestion, make_transaction):
        tx = make_transaction()
        file_id = ingestion.ingest(USER_ID, PDF_BYTES, "a.pdf", "application/pdf", IngestionSource())
        store.soft_delete_file(file_id)
        hint = MatchHint(
            transaction_id=tx.id,
            transaction_amount=tx.amount,
            transaction_date=tx.date,
            search_strategy="email_invoice",
            match_confidence=80,
        )

        ingestion.ingest(
            USER_ID, PDF_BYTES, "a.pdf", "application/pdf", IngestionSource(), match_hint=hint
        )

        assert store.get_file(file_id).precision_search_hint["transaction_id"] == tx.id

    def test_octet_stream_normalized(self, store, ingestion):
        file_id = ingestion.ingest(
            USER_ID, PDF_BYTES, "invoice.pdf", "application/octet-stream", IngestionSource()
        )
        assert store.get_file(file_id).mime_type == "application/pdf"

    def test_empty_payload_refused(self, ingestion):
        assert ingestion.ingest(USER_ID, b"", "a.pdf", "application/pdf", IngestionSource()) is None

    def test_new_file_with_hint(self, store, ingestion, make_transaction):
        tx = make_transaction()
        hint = MatchHint(
            transaction_id=tx.id,
            transaction_amount=tx.amount,
            transaction_date=tx.date,
            search_strategy="email_invoice",
            match_confidence=90,
        )
        file_id = ingestion.ingest(
            USER_ID, PDF_BYTES, "a.pdf", "application/pdf", IngestionSource(), match_hint=hint
        )

        record = store.get_file(file_id)
        assert record.precision_search_hint["search_strategy"] == "email_invoice"
        assert record.precision_search_hint["match_confidence"] == 90
        assert len(store.get_pending_hint_events()) == 1


class TestLocalBlobStore:
    """Tests for LocalBlobStore."""

    def test_path_escape_rejected(self, blob_store):
        with pytest.raises(BlobStoreError):
            blob_store.put("../outside.pdf", b"x", "application/pdf")

    def test_missing_blob(self, blob_store):
        assert blob_store.exists("files/none.pdf") is False
        with pytest.raises(BlobStoreError):
            blob_store.get("files/none.pdf")

    def test_set_content_type(self, blob_store):
        blob_store.put("files/a.bin", b"x", "application/octet-stream")
        blob_store.set_content_type("files/a.bin", "application/pdf")
        assert blob_store.get_content_type("files/a.bin") == "application/pdf"
