"""Test fixtures and utilities."""

from datetime import datetime, timezone
from pathlib import Path

import pytest

from receipt_matcher.config import Config, StorageConfig
from receipt_matcher.mail_client import EmailAttachment, EmailMessage, MessageSearchResult
from receipt_matcher.mail_client.messages import extract_domain, parse_sender
from receipt_matcher.search_ai import EmailInvoiceAnalysis, QueryGenerationResult, QuerySuggestion
from receipt_matcher.state_store import StateStore

USER_ID = "user-1"

SAMPLE_INVOICE_HTML = """
<html>
<head><style>body { font-family: Arial; }</style></head>
<body>
<h1>Thanks for your order</h1>
<p>Netflix International B.V.</p>
<table>
<tr><td>Premium plan</td><td>49,99 EUR</td></tr>
<tr><td>Total</td><td>49,99 EUR</td></tr>
</table>
<p>Receipt for your payment &amp; subscription</p>
<script>track();</script>
</body>
</html>
"""


@pytest.fixture
def temp_db(tmp_path) -> Path:
    """Temporary database path for testing."""
    return tmp_path / "test_state.db"


@pytest.fixture
def store(temp_db) -> StateStore:
    """Fresh state store with all migrations applied."""
    return StateStore(temp_db)


@pytest.fixture
def config(tmp_path, temp_db) -> Config:
    """Default config pointing at temporary storage."""
    return Config(
        storage=StorageConfig(blob_root=tmp_path / "blobs"),
        state_db_path=temp_db,
    )


@pytest.fixture
def make_transaction(store):
    """Factory inserting a transaction and returning the stored record."""

    def _make(transaction_id: str = "tx-netflix", **overrides):
        values = {
            "user_id": USER_ID,
            "amount": -4999,
            "date": "2024-03-10",
            "name": "NETFLIX.COM",
        }
        values.update(overrides)
        store.upsert_transaction(transaction_id=transaction_id, **values)
        return store.get_transaction(transaction_id)

    return _make


@pytest.fixture
def make_file(store):
    """Factory inserting an extraction-complete file and returning the record."""
    counter = {"n": 0}

    def _make(**overrides):
        counter["n"] += 1
        values = {
            "user_id": USER_ID,
            "file_name": f"scan_{counter['n']:03d}.pdf",
            "mime_type": "application/pdf",
            "content_hash": f"hash-{counter['n']}",
            "extraction_complete": True,
        }
        values.update(overrides)
        file_id = store.create_file(**values)
        return store.get_file(file_id)

    return _make


@pytest.fixture
def make_partner(store):
    """Factory inserting a partner profile and returning the record."""

    def _make(partner_id: str = "partner-netflix", **overrides):
        values = {"user_id": USER_ID, "name": "Netflix"}
        values.update(overrides)
        store.upsert_partner(partner_id=partner_id, **values)
        return store.get_partner(partner_id)

    return _make


def make_message(
    message_id: str = "msg-1",
    subject: str = "Your Netflix invoice",
    snippet: str = "Total 49,99 EUR",
    sender: str = "Netflix <info@account.netflix.com>",
    date: datetime | None = None,
    attachments: list[EmailAttachment] | None = None,
    html_body: str | None = None,
    text_body: str | None = None,
) -> EmailMessage:
    """Build a parsed mailbox message without going through the API."""
    sender_name, sender_email = parse_sender(sender)
    return EmailMessage(
        id=message_id,
        thread_id=f"thread-{message_id}",
        subject=subject,
        sender=sender,
        sender_name=sender_name,
        sender_email=sender_email,
        sender_domain=extract_domain(sender_email),
        snippet=snippet,
        date=date or datetime(2024, 3, 9, 18, 30, tzinfo=timezone.utc),
        attachments=attachments or [],
        html_body=html_body,
        text_body=text_body,
    )


class FakeMailClient:
    """In-memory stand-in for GmailClient."""

    def __init__(self, messages=None, attachments=None, search_error=None):
        self.messages = {m.id: m for m in (messages or [])}
        self.attachments = attachments or {}
        self.search_error = search_error
        self.queries: list[str] = []
        self.downloads: list[tuple[str, str]] = []

    def search_messages(self, query, page_token=None, max_results=20):
        self.queries.append(query)
        if self.search_error is not None:
            raise self.search_error
        return MessageSearchResult(ids=list(self.messages)[:max_results])

    def get_message(self, message_id):
        return self.messages[message_id]

    def get_attachment_bytes(self, message_id, attachment_id):
        self.downloads.append((message_id, attachment_id))
        return self.attachments[(message_id, attachment_id)]


class FakeProvider:
    """MailboxProvider stand-in handing out prepared connections."""

    def __init__(self, connections=None, paused=None):
        self.connections = connections or []
        self.paused: set[str] = set(paused or [])
        self.reauth: list[tuple[str, str]] = []

    def get_clients(self, user_id):
        return list(self.connections)

    def mark_needs_reauth(self, integration_id, error):
        self.reauth.append((integration_id, error))

    def is_paused(self, integration_id):
        return integration_id in self.paused


class FakeAIService:
    """SearchAIService stand-in with canned answers."""

    def __init__(self, queries=None, analysis=None):
        self.queries = queries or ["netflix"]
        self.analysis = analysis or EmailInvoiceAnalysis(reasoning="LLM disabled")
        self.classified: list[str] = []

    def generate_queries(self, transaction, partner=None, max_queries=None):
        return QueryGenerationResult(
            suggestions=[
                QuerySuggestion(query=q, type="company_name", score=90 - i)
                for i, q in enumerate(self.queries)
            ]
        )

    def classify_email_content(self, subject, sender, html_body, text_body, transaction):
        self.classified.append(subject)
        return self.analysis


class FakeClock:
    """Monotonic clock the tests advance by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()
