"""
Gmail message parsing and e-mail classification.

Turns the `format=full` message JSON into an EmailMessage with decoded
bodies and a flat attachment list, and classifies mails by keyword into
"has PDF", "body is the invoice" and "contains an invoice link".
"""

import base64
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Optional

from bs4 import BeautifulSoup

PDF_MIME_TYPE = "application/pdf"
OCTET_STREAM = "application/octet-stream"
IMAGE_MIME_TYPES = {"image/jpeg", "image/png", "image/webp", "image/gif"}
BLOCK_TAGS = ["p", "div", "tr", "li", "h1", "h2", "h3", "h4", "h5", "h6"]

# Mail body IS the invoice (English + German)
MAIL_INVOICE_KEYWORDS = [
    "order confirmation",
    "payment received",
    "payment confirmation",
    "your purchase",
    "order summary",
    "receipt for your",
    "thank you for your order",
    "your order has been",
    "purchase confirmation",
    "bestellbestätigung",
    "zahlungsbestätigung",
    "zahlungseingang",
    "ihre bestellung",
    "kaufbestätigung",
    "vielen dank für ihre bestellung",
    "ihre zahlung",
    "buchungsbestätigung",
]

# Mail links to a downloadable invoice (English + German)
INVOICE_LINK_KEYWORDS = [
    "download your invoice",
    "view your invoice",
    "download invoice",
    "view invoice",
    "click here to download",
    "access your invoice",
    "get your receipt",
    "download pdf",
    "download receipt",
    "rechnung herunterladen",
    "rechnung anzeigen",
    "rechnung abrufen",
    "hier klicken",
    "pdf herunterladen",
    "beleg herunterladen",
    "rechnung ansehen",
    "zum download",
]

_SENDER_RE = re.compile(r"^\s*\"?([^\"<]*?)\"?\s*<([^>]+)>\s*$")
_DOMAIN_RE = re.compile(r"@([a-z0-9.-]+\.[a-z]{2,})", re.IGNORECASE)


def decode_base64url(data: str) -> bytes:
    """Decode Gmail's URL-safe base64 (padding optional)."""
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded)


def is_pdf_attachment(filename: str, mime_type: str) -> bool:
    """PDF by type, or a generic octet-stream with a .pdf name."""
    mime = (mime_type or "").lower()
    return mime == PDF_MIME_TYPE or (mime == OCTET_STREAM and filename.lower().endswith(".pdf"))


def is_receipt_like_attachment(filename: str, mime_type: str) -> bool:
    """PDFs and common image formats; everything else is ignored."""
    return is_pdf_attachment(filename, mime_type) or (mime_type or "").lower() in IMAGE_MIME_TYPES


def parse_sender(value: Optional[str]) -> tuple[Optional[str], Optional[str]]:
    """Split a From header into (display name, address)."""
    if not value:
        return None, None
    match = _SENDER_RE.match(value)
    if match:
        name = match.group(1).strip() or None
        return name, match.group(2).strip().lower()
    return None, value.strip().lower()


def extract_domain(email: Optional[str]) -> Optional[str]:
    if not email:
        return None
    match = _DOMAIN_RE.search(email.lower())
    return match.group(1) if match else None


@dataclass
class EmailAttachment:
    """Attachment reference inside a message (bytes fetched separately)."""

    attachment_id: str
    filename: str
    mime_type: str
    size: int = 0

    @property
    def is_pdf(self) -> bool:
        return is_pdf_attachment(self.filename, self.mime_type)

    @property
    def is_receipt_like(self) -> bool:
        return is_receipt_like_attachment(self.filename, self.mime_type)


@dataclass
class EmailMessage:
    """A parsed Gmail message."""

    id: str
    thread_id: Optional[str]
    subject: str
    sender: Optional[str]  # raw From header
    sender_name: Optional[str]
    sender_email: Optional[str]
    sender_domain: Optional[str]
    snippet: str
    date: Optional[datetime]
    attachments: list[EmailAttachment] = field(default_factory=list)
    html_body: Optional[str] = None
    text_body: Optional[str] = None
    payload: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_api_response(cls, data: dict) -> "EmailMessage":
        """Create from a Gmail `messages.get?format=full` response."""
        payload = data.get("payload") or {}
        headers = {
            h.get("name", "").lower(): h.get("value", "")
            for h in payload.get("headers", [])
        }
        sender = headers.get("from")
        sender_name, sender_email = parse_sender(sender)

        message_date = None
        if data.get("internalDate"):
            message_date = datetime.fromtimestamp(
                int(data["internalDate"]) / 1000, tz=timezone.utc
            )

        html_body, text_body = extract_bodies(payload)
        return cls(
            id=data["id"],
            thread_id=data.get("threadId"),
            subject=headers.get("subject", ""),
            sender=sender,
            sender_name=sender_name,
            sender_email=sender_email,
            sender_domain=extract_domain(sender_email),
            snippet=data.get("snippet", ""),
            date=message_date,
            attachments=extract_attachments(payload),
            html_body=html_body,
            text_body=text_body,
            payload=payload,
        )

    @property
    def has_pdf_attachment(self) -> bool:
        return any(a.is_pdf for a in self.attachments)


def extract_attachments(payload: dict) -> list[EmailAttachment]:
    """Walk the MIME tree and collect every part with an attachment id and filename."""
    attachments: list[EmailAttachment] = []

    def walk(parts: list[dict]) -> None:
        for part in parts:
            body = part.get("body") or {}
            if body.get("attachmentId") and part.get("filename"):
                attachments.append(
                    EmailAttachment(
                        attachment_id=body["attachmentId"],
                        filename=part["filename"],
                        mime_type=part.get("mimeType", OCTET_STREAM),
                        size=body.get("size", 0) or 0,
                    )
                )
            if part.get("parts"):
                walk(part["parts"])

    walk(payload.get("parts") or [])
    return attachments


def extract_bodies(payload: dict) -> tuple[Optional[str], Optional[str]]:
    """Decode the HTML and plain-text bodies; later parts win."""
    html: Optional[str] = None
    text: Optional[str] = None

    def take(mime_type: str, data: str) -> None:
        nonlocal html, text
        decoded = decode_base64url(data).decode("utf-8", errors="replace")
        if mime_type == "text/html":
            html = decoded
        elif mime_type == "text/plain":
            text = decoded

    body = payload.get("body") or {}
    if body.get("data"):
        take(payload.get("mimeType", ""), body["data"])

    def walk(parts: list[dict]) -> None:
        for part in parts:
            part_body = part.get("body") or {}
            if part_body.get("data"):
                take(part.get("mimeType", ""), part_body["data"])
            if part.get("parts"):
                walk(part["parts"])

    walk(payload.get("parts") or [])
    return html, text


@dataclass
class EmailClassification:
    """Keyword classification of a mail."""

    has_pdf_attachment: bool
    possible_mail_invoice: bool
    possible_invoice_link: bool
    confidence: int
    matched_keywords: list[str] = field(default_factory=list)


def classify_email(
    subject: str, snippet: str, attachments: list[EmailAttachment]
) -> EmailClassification:
    """
    Classify a mail from subject, snippet and attachment list.

    A mail with a PDF is never a "mail invoice"; its body is handled by the
    attachment path instead.
    """
    combined = f"{subject or ''} {snippet or ''}".lower()
    matched: list[str] = []

    has_pdf = any(a.is_pdf for a in attachments)

    mail_invoice = next((k for k in MAIL_INVOICE_KEYWORDS if k in combined), None)
    if mail_invoice:
        matched.append(mail_invoice)
    invoice_link = next((k for k in INVOICE_LINK_KEYWORDS if k in combined), None)
    if invoice_link:
        matched.append(invoice_link)

    confidence = 0
    if has_pdf:
        confidence += 40
    if mail_invoice:
        confidence += 30
    if invoice_link:
        confidence += 25
    confidence = min(confidence, 100)
    if has_pdf and confidence < 50:
        confidence = 50

    return EmailClassification(
        has_pdf_attachment=has_pdf,
        possible_mail_invoice=bool(mail_invoice) and not has_pdf,
        possible_invoice_link=bool(invoice_link),
        confidence=confidence,
        matched_keywords=matched,
    )


def build_search_query(
    query: str,
    sender: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    has_attachments: bool = False,
) -> str:
    """Compose a Gmail search string from a base query and filters."""
    parts = [query.strip()] if query and query.strip() else []
    if sender:
        parts.append(f"from:{sender}")
    if date_from:
        parts.append(f"after:{date_from.strftime('%Y/%m/%d')}")
    if date_to:
        parts.append(f"before:{date_to.strftime('%Y/%m/%d')}")
    if has_attachments:
        parts.append("has:attachment")
    return " ".join(parts)


def is_email_date_in_range(
    email_date: Optional[datetime], transaction_date: date, days: int = 180
) -> bool:
    """True if the mail is within +/- days of the transaction (undated mails pass)."""
    if email_date is None:
        return True
    return abs((email_date.date() - transaction_date).days) <= days


def html_to_text(html: Optional[str], keep_lines: bool = False) -> str:
    """Drop style/script blocks and markup from an HTML body, collapsing whitespace.

    With keep_lines, block-level breaks survive as newlines.
    """
    if not html:
        return ""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["style", "script", "noscript"]):
        tag.decompose()
    for br in soup.find_all("br"):
        br.replace_with("\n")
    for block in soup.find_all(BLOCK_TAGS):
        block.append("\n")
    text = soup.get_text(" ")
    if not keep_lines:
        return re.sub(r"\s+", " ", text).strip()
    lines = (re.sub(r"[ \t\r\f\v\xa0]+", " ", line).strip() for line in text.split("\n"))
    return "\n".join(line for line in lines if line)
