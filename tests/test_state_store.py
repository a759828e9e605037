"""Tests for state store."""

import pytest

from receipt_matcher.state_store import MatchHint, QueueScope, QueueStatus, StateStore, TriggerSource
from receipt_matcher.state_store.migrations import MigrationRunner, get_all_migrations

from conftest import USER_ID


def _hint(transaction_id="tx-netflix", strategy="amount_files", score=80) -> MatchHint:
    return MatchHint(
        transaction_id=transaction_id,
        transaction_amount=-4999,
        transaction_date="2024-03-10",
        search_strategy=strategy,
        match_confidence=score,
    )


class TestStateStore:
    """Tests for SQLite state store."""

    def test_init_creates_db(self, temp_db):
        """Initializing creates database file."""
        StateStore(temp_db)
        assert temp_db.exists()

    def test_init_creates_tables(self, store):
        """Base tables and migrated tables exist."""
        conn = store._get_connection()
        try:
            tables = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
            table_names = [t[0] for t in tables]

            assert "transactions" in table_names
            assert "files" in table_names
            assert "partners" in table_names
            assert "email_integrations" in table_names
            assert "search_queue" in table_names
            assert "transaction_searches" in table_names
            assert "match_hint_events" in table_names
        finally:
            conn.close()

    def test_migrations_applied_once(self, temp_db):
        store = StateStore(temp_db)
        StateStore(temp_db)

        conn = store._get_connection()
        try:
            runner = MigrationRunner(conn)
            assert runner.get_applied_versions() == {1, 2, 3}
            assert runner.run_pending() == []
        finally:
            conn.close()

    def test_migrations_sorted(self):
        assert [m.version for m in get_all_migrations()] == [1, 2, 3]

    def test_rollback_and_reapply(self, store):
        """Rolling back the hint outbox drops it; the next run restores it."""
        conn = store._get_connection()
        try:
            runner = MigrationRunner(conn)
            latest = get_all_migrations()[-1]

            runner.rollback(latest)
            tables = {
                row[0]
                for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
            }
            assert "match_hint_events" not in tables
            assert runner.get_applied_versions() == {1, 2}

            assert runner.run_pending() == [3]
        finally:
            conn.close()


class TestTransactionOperations:
    """Tests for transaction operations."""

    def test_upsert_and_get(self, store):
        store.upsert_transaction(
            transaction_id="tx-1",
            user_id=USER_ID,
            amount=-4999,
            date="2024-03-10",
            name="NETFLIX.COM",
            partner_name="Netflix",
        )

        tx = store.get_transaction("tx-1")

        assert tx.amount == -4999
        assert tx.currency == "EUR"
        assert tx.partner_name == "Netflix"
        assert tx.is_complete is False
        assert tx.file_ids == []

    def test_incomplete_paging(self, store, make_transaction):
        """Pages are (date DESC, id DESC) and continue strictly after the cursor."""
        make_transaction("tx-a", date="2024-03-01")
        make_transaction("tx-b", date="2024-03-05")
        make_transaction("tx-c", date="2024-03-05")
        make_transaction("tx-d", date="2024-03-09", is_complete=True)

        first = store.get_incomplete_transactions(USER_ID, limit=2)
        rest = store.get_incomplete_transactions(
            USER_ID, limit=2, after_transaction_id=first[-1].id
        )

        assert [t.id for t in first] == ["tx-c", "tx-b"]
        assert [t.id for t in rest] == ["tx-a"]
        assert store.count_incomplete_transactions(USER_ID) == 3

    def test_unknown_cursor_starts_over(self, store, make_transaction):
        make_transaction("tx-a")
        page = store.get_incomplete_transactions(USER_ID, limit=5, after_transaction_id="gone")
        assert [t.id for t in page] == ["tx-a"]

    def test_reject_file(self, store, make_transaction, make_file):
        file = make_file()
        make_transaction()
        store.link_file_to_transaction("tx-netflix", file.id)

        store.reject_file_for_transaction("tx-netflix", file.id)

        tx = store.get_transaction("tx-netflix")
        assert tx.file_ids == []
        assert tx.is_complete is False
        assert tx.has_rejected(file.id)

    def test_link_file(self, store, make_transaction, make_file):
        file = make_file()
        make_transaction()

        store.link_file_to_transaction("tx-netflix", file.id)

        assert store.get_transaction("tx-netflix").is_complete is True
        assert store.get_file(file.id).transaction_ids == ["tx-netflix"]


class TestFileOperations:
    """Tests for file records and dedupe lookups."""

    def test_unknown_column_rejected(self, store):
        with pytest.raises(ValueError):
            store.create_file(USER_ID, "a.pdf", "application/pdf", "h", colour="red")

    def test_find_by_hash_prefers_active(self, store):
        deleted = store.create_file(
            USER_ID, "old.pdf", "application/pdf", "same", deleted_at="2024-01-01T00:00:00Z"
        )
        active = store.create_file(USER_ID, "new.pdf", "application/pdf", "same")

        assert store.find_file_by_hash(USER_ID, "same").id == active
        assert store.count_active_files_by_hash(USER_ID, "same") == 1
        assert store.get_file(deleted).is_deleted is True

    def test_find_by_hash_scoped_to_user(self, store):
        store.create_file(USER_ID, "a.pdf", "application/pdf", "h1")
        assert store.find_file_by_hash("user-2", "h1") is None

    def test_soft_delete_and_undelete(self, store, make_file):
        file = make_file()
        store.soft_delete_file(file.id)
        assert store.get_file(file.id).is_deleted is True

        store.undelete_file(file.id, "restored.pdf", "application/pdf")

        record = store.get_file(file.id)
        assert record.is_deleted is False
        assert record.file_name == "restored.pdf"
        assert record.extraction_complete is False

    def test_update_extraction(self, store):
        file_id = store.create_file(USER_ID, "a.pdf", "application/pdf", "h")

        store.update_file_extraction(file_id, extracted_amount=4999, extracted_date="2024-03-09")

        record = store.get_file(file_id)
        assert record.extraction_complete is True
        assert record.extracted_amount == 4999

    def test_update_extraction_unknown_field(self, store, make_file):
        with pytest.raises(ValueError):
            store.update_file_extraction(make_file().id, precision_search_hint="{}")

    def test_gmail_lookups(self, store):
        store.create_file(
            USER_ID,
            "invoice.pdf",
            "application/pdf",
            "h1",
            source_type="gmail",
            gmail_message_id="msg-1",
            gmail_attachment_id="att-1",
        )
        store.create_file(
            USER_ID,
            "Receipt_2024-03-09.pdf",
            "application/pdf",
            "h2",
            source_type="gmail_html_invoice",
            gmail_message_id="msg-2",
        )

        assert store.find_file_by_gmail_attachment(USER_ID, "msg-1", "att-1") is not None
        assert store.find_file_by_gmail_attachment(USER_ID, "msg-1", "att-2") is None
        assert store.find_html_invoice_file(USER_ID, "msg-2") is not None
        assert store.find_html_invoice_file(USER_ID, "msg-1") is None

    def test_unlinked_partner_files(self, store, make_file):
        wanted = make_file(partner_id="p-1")
        make_file(partner_id="p-1", transaction_ids=["tx-x"])
        make_file(partner_id="p-1", extraction_complete=False)
        make_file(partner_id="p-2")

        files = store.get_unlinked_partner_files(USER_ID, "p-1")

        assert [f.id for f in files] == [wanted.id]


class TestMatchHints:
    """Tests for the rejection-guarded hint write and its outbox."""

    def test_hint_written_with_event(self, store, make_transaction, make_file):
        make_transaction()
        file = make_file()

        assert store.set_precision_search_hint(file.id, _hint()) is True

        hint = store.get_file(file.id).precision_search_hint
        assert hint["transaction_id"] == "tx-netflix"
        assert hint["match_confidence"] == 80
        [event] = store.get_pending_hint_events()
        assert event["file_id"] == file.id
        assert event["strategy"] == "amount_files"
        assert event["user_id"] == USER_ID

    def test_rejected_file_refused(self, store, make_transaction, make_file):
        make_transaction()
        file = make_file()
        store.reject_file_for_transaction("tx-netflix", file.id)

        assert store.set_precision_search_hint(file.id, _hint()) is False
        assert store.get_file(file.id).precision_search_hint is None
        assert store.get_pending_hint_events() == []

    def test_missing_file(self, store, make_transaction):
        make_transaction()
        assert store.set_precision_search_hint("nope", _hint()) is False

    def test_event_consumed_once(self, store, make_transaction, make_file):
        make_transaction()
        file = make_file()
        store.set_precision_search_hint(file.id, _hint())
        [event] = store.get_pending_hint_events()

        assert store.mark_hint_event_consumed(event["id"]) is True
        assert store.mark_hint_event_consumed(event["id"]) is False
        assert store.get_pending_hint_events() == []


class TestPartnerOperations:
    """Tests for partner profiles."""

    def test_invoice_links_deduplicated_by_url(self, store, make_partner):
        partner = make_partner()

        added = store.add_partner_invoice_links(
            partner.id,
            [{"url": "https://a.test/1"}, {"url": "https://a.test/1"}, {"url": "https://a.test/2"}],
        )
        again = store.add_partner_invoice_links(partner.id, [{"url": "https://a.test/2"}])

        assert added == 2
        assert again == 0
        assert [link["url"] for link in store.get_partner(partner.id).invoice_links] == [
            "https://a.test/1",
            "https://a.test/2",
        ]

    def test_upsert_keeps_invoice_links(self, store, make_partner):
        partner = make_partner()
        store.add_partner_invoice_links(partner.id, [{"url": "https://a.test/1"}])

        make_partner(name="Netflix International", aliases=["*netflix*"])

        updated = store.get_partner(partner.id)
        assert updated.name == "Netflix International"
        assert updated.aliases == ["*netflix*"]
        assert len(updated.invoice_links) == 1

    def test_links_for_missing_partner(self, store):
        assert store.add_partner_invoice_links("nope", [{"url": "https://a.test"}]) == 0


class TestEmailIntegrations:
    """Tests for mailbox integration state."""

    def test_usable_filter(self, store):
        store.upsert_email_integration("int-1", USER_ID, "a@example.com", access_token="t")
        store.upsert_email_integration("int-2", USER_ID, "b@example.com", access_token="t")
        store.upsert_email_integration(
            "int-3", USER_ID, "c@example.com", access_token="t", is_active=False
        )
        store.mark_integration_needs_reauth("int-2", "401")

        usable = store.get_usable_email_integrations(USER_ID)

        assert [i.id for i in usable] == ["int-1"]

    def test_new_token_clears_reauth(self, store):
        store.upsert_email_integration("int-1", USER_ID, "a@example.com", access_token="old")
        store.mark_integration_needs_reauth("int-1", "401")

        store.upsert_email_integration("int-1", USER_ID, "a@example.com", access_token="new")

        integration = store.get_email_integration("int-1")
        assert integration.needs_reauth is False
        assert integration.last_error is None


class TestQueueOperations:
    """Tests for queue persistence."""

    def _create(self, store, **overrides):
        values = {
            "user_id": USER_ID,
            "scope": QueueScope.ALL_INCOMPLETE,
            "strategies": ["amount_files"],
            "triggered_by": TriggerSource.MANUAL,
        }
        values.update(overrides)
        return store.create_queue_item(**values)

    def test_create_and_get(self, store):
        item_id = self._create(store, transactions_to_process=7)

        item = store.get_queue_item(item_id)

        assert item.status == QueueStatus.PENDING
        assert item.scope == QueueScope.ALL_INCOMPLETE
        assert item.strategies == ["amount_files"]
        assert item.transactions_to_process == 7
        assert item.errors == []

    def test_update_rejects_immutable_columns(self, store):
        item_id = self._create(store)
        with pytest.raises(ValueError):
            store.update_queue_item(item_id, user_id="someone-else")

    def test_recreate_carries_progress(self, store):
        item_id = self._create(store)
        store.update_queue_item(
            item_id,
            transactions_processed=20,
            last_processed_transaction_id="tx-026",
            errors=["boom"],
        )
        item = store.get_queue_item(item_id)

        new_id = store.recreate_queue_item(item, retry_count=1)

        assert new_id != item_id
        assert store.get_queue_item(item_id) is None
        copy = store.get_queue_item(new_id)
        assert copy.status == QueueStatus.PENDING
        assert copy.transactions_processed == 20
        assert copy.last_processed_transaction_id == "tx-026"
        assert copy.errors == ["boom"]
        assert copy.retry_count == 1

    def test_reset_stale(self, store):
        item_id = self._create(store)
        store.claim_queue_item(item_id)

        assert store.reset_stale_queue_items("2000-01-01T00:00:00Z") == 0
        assert store.reset_stale_queue_items("9999-01-01T00:00:00Z") == 1
        item = store.get_queue_item(item_id)
        assert item.status == QueueStatus.PENDING
        assert item.started_at is None

    def test_delete(self, store):
        item_id = self._create(store)
        assert store.delete_queue_item(item_id) is True
        assert store.delete_queue_item(item_id) is False

    def test_status_transitions(self):
        assert QueueStatus.PENDING.can_transition_to(QueueStatus.PROCESSING)
        assert QueueStatus.PAUSED.can_transition_to(QueueStatus.PENDING)
        assert not QueueStatus.PAUSED.can_transition_to(QueueStatus.PROCESSING)
        assert not QueueStatus.COMPLETED.can_transition_to(QueueStatus.PENDING)
        assert QueueStatus.FAILED.is_terminal

    def test_stats(self, store, make_transaction):
        make_transaction()
        self._create(store)

        stats = store.get_stats()

        assert stats["transactions_total"] == 1
        assert stats["transactions_incomplete"] == 1
        assert stats["queue"] == {"pending": 1}
