"""
Tests for the Gmail client, message parsing and mail classification.

HTTP calls are mocked with the responses library.
"""

import base64
from datetime import date, datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
import responses

from receipt_matcher.config import Config
from receipt_matcher.mail_client import (
    EmailAttachment,
    EmailMessage,
    GmailClient,
    MailboxAPIError,
    MailboxAuthError,
    MailboxProvider,
    build_search_query,
    classify_email,
    is_email_date_in_range,
)
from receipt_matcher.mail_client.messages import decode_base64url, html_to_text, parse_sender

from conftest import SAMPLE_INVOICE_HTML, USER_ID


def _b64(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode()).decode().rstrip("=")


def _message_payload(message_id: str = "msg-1") -> dict:
    return {
        "id": message_id,
        "threadId": "thread-1",
        "snippet": "Your invoice for March",
        "internalDate": "1710009000000",
        "payload": {
            "mimeType": "multipart/mixed",
            "headers": [
                {"name": "Subject", "value": "Netflix invoice"},
                {"name": "From", "value": '"Netflix" <Info@Account.Netflix.com>'},
            ],
            "parts": [
                {
                    "mimeType": "multipart/alternative",
                    "parts": [
                        {"mimeType": "text/plain", "body": {"data": _b64("Total 49,99 EUR")}},
                        {"mimeType": "text/html", "body": {"data": _b64("<p>Total 49,99</p>")}},
                    ],
                },
                {
                    "mimeType": "application/octet-stream",
                    "filename": "invoice_march.pdf",
                    "body": {"attachmentId": "att-1", "size": 1234},
                },
                {
                    "mimeType": "image/png",
                    "filename": "logo.png",
                    "body": {"attachmentId": "att-2", "size": 99},
                },
            ],
        },
    }


class TestGmailClient:
    """Test Gmail REST client."""

    BASE_URL = "https://gmail.test/gmail/v1"
    TOKEN = "test-token-12345"

    @pytest.fixture
    def client(self) -> GmailClient:
        return GmailClient(self.TOKEN, base_url=self.BASE_URL, min_request_interval=0)

    @responses.activate
    def test_search_messages(self, client):
        """Search returns message ids and sends the query."""
        responses.add(
            responses.GET,
            f"{self.BASE_URL}/users/me/messages",
            json={"messages": [{"id": "a"}, {"id": "b"}], "nextPageToken": "next"},
            status=200,
        )

        result = client.search_messages("netflix has:attachment", max_results=5)

        assert result.ids == ["a", "b"]
        assert result.next_page_token == "next"
        request = responses.calls[0].request
        assert "maxResults=5" in request.url
        assert request.headers["Authorization"] == f"Bearer {self.TOKEN}"

    @responses.activate
    def test_search_without_results(self, client):
        responses.add(
            responses.GET, f"{self.BASE_URL}/users/me/messages", json={"resultSizeEstimate": 0}
        )
        assert client.search_messages("nothing").ids == []

    @responses.activate
    def test_get_message_parses_payload(self, client):
        """Full messages are parsed into bodies, sender and attachments."""
        responses.add(
            responses.GET,
            f"{self.BASE_URL}/users/me/messages/msg-1",
            json=_message_payload(),
            status=200,
        )

        message = client.get_message("msg-1")

        assert message.subject == "Netflix invoice"
        assert message.sender_name == "Netflix"
        assert message.sender_email == "info@account.netflix.com"
        assert message.sender_domain == "account.netflix.com"
        assert message.text_body == "Total 49,99 EUR"
        assert message.html_body == "<p>Total 49,99</p>"
        assert message.date == datetime.fromtimestamp(1710009000, tz=timezone.utc)
        assert [a.filename for a in message.attachments] == ["invoice_march.pdf", "logo.png"]
        assert message.has_pdf_attachment is True

    @responses.activate
    def test_get_attachment_bytes(self, client):
        payload = b"%PDF-1.4 fake"
        responses.add(
            responses.GET,
            f"{self.BASE_URL}/users/me/messages/msg-1/attachments/att-1",
            json={"data": base64.urlsafe_b64encode(payload).decode().rstrip("="), "size": 13},
        )
        assert client.get_attachment_bytes("msg-1", "att-1") == payload

    @responses.activate
    def test_unauthorized_raises_auth_error(self, client):
        """401 is reported as an auth error, not retried."""
        responses.add(responses.GET, f"{self.BASE_URL}/users/me/messages", status=401)

        with pytest.raises(MailboxAuthError):
            client.search_messages("netflix")
        assert len(responses.calls) == 1

    @responses.activate
    def test_api_error(self, client):
        responses.add(
            responses.GET,
            f"{self.BASE_URL}/users/me/messages/missing",
            json={"error": {"message": "Not Found"}},
            status=404,
        )

        with pytest.raises(MailboxAPIError) as exc_info:
            client.get_message("missing")
        assert exc_info.value.status_code == 404

    @patch("receipt_matcher.mail_client.client.time")
    def test_throttle_waits_between_requests(self, mock_time: MagicMock):
        """A second call inside the interval sleeps for the remainder."""
        mock_time.monotonic.side_effect = [0.0, 0.0, 0.05, 0.2]
        client = GmailClient(self.TOKEN, base_url=self.BASE_URL, min_request_interval=0.2, jitter=0)

        client._throttle()
        client._throttle()

        mock_time.sleep.assert_called_once()
        assert mock_time.sleep.call_args[0][0] == pytest.approx(0.15)

    @patch("receipt_matcher.mail_client.client.time")
    def test_throttle_no_wait_after_interval(self, mock_time: MagicMock):
        mock_time.monotonic.side_effect = [0.0, 0.0, 1.0, 1.0]
        client = GmailClient(self.TOKEN, base_url=self.BASE_URL, min_request_interval=0.2, jitter=0)

        client._throttle()
        client._throttle()

        mock_time.sleep.assert_not_called()


class TestMailboxProvider:
    """Tests for MailboxProvider."""

    def test_returns_usable_integrations(self, store):
        store.upsert_email_integration("int-1", USER_ID, "me@example.com", access_token="tok-1")
        store.upsert_email_integration("int-2", USER_ID, "other@example.com", access_token="tok-2")
        store.set_integration_paused("int-2", True)
        factory = MagicMock(side_effect=lambda token: f"client:{token}")

        provider = MailboxProvider(store, Config(), client_factory=factory)
        connections = provider.get_clients(USER_ID)

        assert [c.integration.id for c in connections] == ["int-1"]
        assert connections[0].client == "client:tok-1"

    def test_expired_token_flags_reauth(self, store):
        expired = (datetime.now(timezone.utc) - timedelta(hours=1)).isoformat()
        store.upsert_email_integration(
            "int-1", USER_ID, "me@example.com", access_token="tok", token_expires_at=expired
        )

        provider = MailboxProvider(store, Config(), client_factory=MagicMock())

        assert provider.get_clients(USER_ID) == []
        integration = store.get_email_integration("int-1")
        assert integration.needs_reauth is True
        assert integration.last_error == "Access token expired"

    def test_mark_needs_reauth(self, store):
        store.upsert_email_integration("int-1", USER_ID, "me@example.com", access_token="tok")
        provider = MailboxProvider(store, Config(), client_factory=MagicMock())

        provider.mark_needs_reauth("int-1", "Gmail rejected the access token (401)")

        assert provider.get_clients(USER_ID) == []
        assert store.get_email_integration("int-1").needs_reauth is True


class TestMessageParsing:
    """Tests for message helpers."""

    def test_octet_stream_pdf_detected(self):
        message = EmailMessage.from_api_response(_message_payload())
        pdf, png = message.attachments
        assert pdf.is_pdf is True
        assert png.is_pdf is False
        assert png.is_receipt_like is True

    def test_non_receipt_attachment(self):
        attachment = EmailAttachment("a", "calendar.ics", "text/calendar")
        assert attachment.is_receipt_like is False

    def test_decode_base64url_without_padding(self):
        assert decode_base64url(_b64("hello?")) == b"hello?"

    def test_parse_sender(self):
        assert parse_sender("Netflix <info@netflix.com>") == ("Netflix", "info@netflix.com")
        assert parse_sender("INFO@NETFLIX.COM") == (None, "info@netflix.com")
        assert parse_sender(None) == (None, None)

    def test_html_to_text_strips_markup(self):
        text = html_to_text(SAMPLE_INVOICE_HTML)
        assert "font-family" not in text
        assert "track()" not in text
        assert "Receipt for your payment & subscription" in text

    def test_html_to_text_keep_lines(self):
        lines = html_to_text(SAMPLE_INVOICE_HTML, keep_lines=True).split("\n")
        assert "Thanks for your order" in lines
        assert "Total 49,99 EUR" in lines

    def test_html_to_text_attributes_and_comments(self):
        """Markup inside attribute values and comments never leaks into the text."""
        html = (
            '<div title="a > b"><!-- <p>hidden</p> -->Amount<br>'
            '<a href="https://x.test/?q=1&amp;r=2">49,99&nbsp;EUR</a></div>'
        )

        assert html_to_text(html) == "Amount 49,99 EUR"
        assert html_to_text(html, keep_lines=True).split("\n") == ["Amount", "49,99 EUR"]


class TestClassification:
    """Tests for classify_email()."""

    def test_mail_invoice(self):
        result = classify_email("Order confirmation #123", "Thanks!", [])
        assert result.possible_mail_invoice is True
        assert result.has_pdf_attachment is False
        assert result.confidence == 30

    def test_pdf_is_never_mail_invoice(self):
        attachment = EmailAttachment("a", "invoice.pdf", "application/pdf")
        result = classify_email("Order confirmation", "", [attachment])
        assert result.possible_mail_invoice is False
        assert result.has_pdf_attachment is True
        assert result.confidence == 70

    def test_pdf_minimum_confidence(self):
        attachment = EmailAttachment("a", "invoice.pdf", "application/pdf")
        assert classify_email("Hello", "", [attachment]).confidence == 50

    def test_invoice_link_german(self):
        result = classify_email("Ihre Rechnung", "Rechnung herunterladen", [])
        assert result.possible_invoice_link is True
        assert "rechnung herunterladen" in result.matched_keywords


class TestSearchHelpers:
    """Tests for query building and date range checks."""

    def test_build_search_query(self):
        query = build_search_query(
            "netflix",
            sender="netflix.com",
            date_from=date(2024, 3, 1),
            date_to=date(2024, 3, 31),
            has_attachments=True,
        )
        assert query == "netflix from:netflix.com after:2024/03/01 before:2024/03/31 has:attachment"

    def test_date_in_range(self):
        tx_date = date(2024, 3, 10)
        near = datetime(2024, 4, 1, tzinfo=timezone.utc)
        far = datetime(2023, 1, 1, tzinfo=timezone.utc)
        assert is_email_date_in_range(near, tx_date) is True
        assert is_email_date_in_range(far, tx_date) is False
        assert is_email_date_in_range(None, tx_date) is True
