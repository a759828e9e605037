"""Match scorer for candidate documents against bank transactions.

This is the single scoring function used by every search strategy. A
candidate is a stored file, a mailbox attachment or a mail body that may
be rendered to PDF. Signals add up on a 0..1 scale, a document-date
multiplier and an amount-mismatch penalty are applied, and the result is
capped at 0.95 and reported as an integer percentage.

Signals:
- Amount (extracted vs transaction): up to +0.40
- Extracted date proximity: up to +0.15
- Partner identity / name similarity: up to +0.20 (awarded once)
- Source type: PDF +0.15, image +0.10
- Receipt keywords in filename / subject / mail text
- Amount string, partner tokens and reference tokens in mail text
- Sender domain and learned mailbox pattern
- Mail classification (mail invoice, invoice link)
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import TYPE_CHECKING

from receipt_matcher.matching.fuzzy import (
    clean_text,
    company_similarity,
    glob_match,
    names_overlap,
    normalize_iban,
    vat_ids_match,
)

if TYPE_CHECKING:
    from receipt_matcher.mail_client.messages import (
        EmailAttachment,
        EmailClassification,
        EmailMessage,
    )
    from receipt_matcher.state_store import FileRecord, PartnerRecord, TransactionRecord

# Receipt/invoice keywords (multilingual)
RECEIPT_KEYWORDS = [
    "invoice",
    "rechnung",
    "receipt",
    "beleg",
    "quittung",
    "faktura",
    "bon",
    "bill",
]

PDF_MIME_TYPE = "application/pdf"
IMAGE_MIME_TYPES = {"image/jpeg", "image/png", "image/webp", "image/gif"}

MAX_SCORE = 0.95
STRONG_LABEL_SCORE = 75
LIKELY_LABEL_SCORE = 40

# Penalty factor when amounts differ by more than 50%
AMOUNT_MISMATCH_FACTOR = 0.4
PARTNER_POINTS = 0.20

# (max days, multiplier) for documents dated before / after the transaction
BEFORE_TRANSACTION_MULTIPLIERS = [(14, 1.0), (30, 0.95), (60, 0.9), (90, 0.85), (180, 0.75)]
BEFORE_TRANSACTION_FLOOR = 0.6
AFTER_TRANSACTION_MULTIPLIERS = [(7, 1.0), (14, 0.9), (30, 0.75), (60, 0.55), (90, 0.4)]
AFTER_TRANSACTION_FLOOR = 0.3

_DOMAIN_RE = re.compile(r"@([a-z0-9.-]+\.[a-z]{2,})", re.IGNORECASE)


def to_date(value: date | datetime | str | None) -> date | None:
    """Coerce a date, datetime or ISO string to a date."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def build_amount_variants(amount_minor: int | None) -> list[str]:
    """Textual renderings of an amount as they appear in mails and filenames.

    4480.00 -> ["4480.00", "4480,00", "4,480.00", "4.480,00", "4480"]
    """
    if amount_minor is None:
        return []
    cents = abs(amount_minor)
    units, fraction = divmod(cents, 100)
    fixed = f"{units}.{fraction:02d}"
    en_us = f"{units:,}.{fraction:02d}"
    de_de = f"{units:,}".replace(",", ".") + f",{fraction:02d}"
    rounded = str((cents + 50) // 100)

    variants: list[str] = []
    for variant in (fixed, fixed.replace(".", ","), en_us, de_de, rounded):
        if variant not in variants:
            variants.append(variant)
    return variants


def extract_tokens(text: str | None) -> list[str]:
    """Lowercase alphanumeric tokens of at least 3 characters."""
    if not text:
        return []
    return [t for t in re.split(r"[^a-z0-9]+", text.lower()) if len(t) >= 3]


def extract_email_domain(email: str | None) -> str | None:
    if not email:
        return None
    match = _DOMAIN_RE.search(email.lower())
    return match.group(1) if match else None


def _contains_any(haystack: str, needles: list[str]) -> bool:
    return any(needle in haystack for needle in needles)


@dataclass
class ScoreCandidate:
    """A document that might be the receipt for a transaction."""

    filename: str
    mime_type: str
    email_subject: str | None = None
    email_from: str | None = None
    email_snippet: str | None = None
    email_body_text: str | None = None
    # Document date used for the distance multiplier
    document_date: date | None = None
    integration_id: str | None = None
    extracted_amount: int | None = None
    extracted_date: date | None = None
    extracted_partner: str | None = None
    extracted_iban: str | None = None
    extracted_vat_id: str | None = None
    is_mail_invoice: bool = False
    has_invoice_link: bool = False

    @classmethod
    def from_file(cls, file: FileRecord) -> ScoreCandidate:
        """Candidate for a stored file; OCR text stands in for the mail body."""
        extracted_date = to_date(file.extracted_date)
        return cls(
            filename=file.file_name or "unknown",
            mime_type=file.mime_type or PDF_MIME_TYPE,
            email_subject=file.gmail_subject,
            email_from=file.gmail_sender_email,
            email_body_text=file.extracted_text,
            document_date=extracted_date,
            integration_id=file.gmail_integration_id,
            extracted_amount=file.extracted_amount,
            extracted_date=extracted_date,
            extracted_partner=file.extracted_partner,
            extracted_iban=file.extracted_iban,
            extracted_vat_id=file.extracted_vat_id,
        )

    @classmethod
    def from_attachment(
        cls,
        attachment: EmailAttachment,
        message: EmailMessage,
        integration_id: str | None = None,
        classification: EmailClassification | None = None,
    ) -> ScoreCandidate:
        """Candidate for a mailbox attachment scored from its mail metadata."""
        return cls(
            filename=attachment.filename,
            mime_type=attachment.mime_type,
            email_subject=message.subject,
            email_from=message.sender,
            email_snippet=message.snippet,
            document_date=to_date(message.date),
            integration_id=integration_id,
            is_mail_invoice=bool(classification and classification.possible_mail_invoice),
            has_invoice_link=bool(classification and classification.possible_invoice_link),
        )

    @classmethod
    def from_email_body(
        cls,
        message: EmailMessage,
        body_text: str,
        integration_id: str | None = None,
        classification: EmailClassification | None = None,
    ) -> ScoreCandidate:
        """Candidate for a mail body that would be rendered to "{subject}.pdf"."""
        return cls(
            filename=f"{message.subject or 'invoice'}.pdf",
            mime_type=PDF_MIME_TYPE,
            email_subject=message.subject,
            email_from=message.sender,
            email_snippet=message.snippet,
            email_body_text=body_text,
            document_date=to_date(message.date),
            integration_id=integration_id,
            is_mail_invoice=bool(classification and classification.possible_mail_invoice),
            has_invoice_link=bool(classification and classification.possible_invoice_link),
        )


@dataclass
class MatchSignal:
    """One fired signal and its contribution on the 0..1 scale."""

    signal: str
    points: float
    detail: str


@dataclass
class ScoreResult:
    """Score of a candidate against a transaction."""

    score: int  # 0-100
    label: str | None  # "Strong", "Likely" or None
    reasons: list[str] = field(default_factory=list)
    signals: list[MatchSignal] = field(default_factory=list)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "score": self.score,
            "label": self.label,
            "reasons": self.reasons,
            "signals": [
                {"signal": s.signal, "points": s.points, "detail": s.detail}
                for s in self.signals
            ],
        }


class MatchScorer:
    """Scores candidate documents against a transaction.

    Pure: no I/O, no state. The same candidate and transaction always
    produce the same result.
    """

    def score(
        self,
        candidate: ScoreCandidate,
        transaction: TransactionRecord,
        partner: PartnerRecord | None = None,
        transaction_partner: str | None = None,
    ) -> ScoreResult:
        """Score a candidate.

        Args:
            candidate: Document under consideration.
            transaction: Transaction the document might belong to.
            partner: Partner profile linked to the transaction, if any.
            transaction_partner: Override for the bank counterparty text
                (defaults to transaction.partner_name).

        Returns:
            ScoreResult with integer score, label and reasons.
        """
        signals: list[MatchSignal] = []
        tx_date = to_date(transaction.date)
        tx_partner = transaction_partner or transaction.partner_name

        amount_signal, amount_mismatch = self._score_amount(
            candidate.extracted_amount, transaction.amount
        )
        if amount_signal:
            signals.append(amount_signal)

        date_signal = self._score_extracted_date(candidate.extracted_date, tx_date)
        if date_signal:
            signals.append(date_signal)

        partner_signal = self._score_partner(candidate, transaction, partner, tx_partner)
        if partner_signal:
            signals.append(partner_signal)

        signals.extend(self._score_mail_signals(candidate, transaction, partner, tx_partner))

        total = sum(s.points for s in signals)
        reasons = [s.detail for s in signals]

        multiplier, direction, days = self._date_multiplier(candidate.document_date, tx_date)
        if direction:
            reasons.append(f"Date distance: {days} days {direction} (x{multiplier:.2f})")
        total *= multiplier

        if amount_mismatch:
            total *= AMOUNT_MISMATCH_FACTOR

        total = min(total, MAX_SCORE)
        percent = round(total * 100)

        if percent >= STRONG_LABEL_SCORE:
            label = "Strong"
        elif percent >= LIKELY_LABEL_SCORE:
            label = "Likely"
        else:
            label = None

        return ScoreResult(score=percent, label=label, reasons=reasons, signals=signals)

    def _score_amount(
        self, extracted: int | None, transaction_amount: int | None
    ) -> tuple[MatchSignal | None, bool]:
        """Numeric amount comparison.

        Returns:
            (signal or None, mismatch flag for the >50% penalty)
        """
        if extracted is None or transaction_amount is None:
            return None, False

        file_amt = abs(extracted)
        tx_amt = abs(transaction_amount)
        delta = abs(file_amt - tx_amt)

        if delta == 0:
            return MatchSignal("amount", 0.40, "Exact amount match"), False

        ratio = delta / tx_amt if tx_amt else float("inf")
        if ratio <= 0.01:
            return MatchSignal("amount", 0.38, "Amount ±1%"), False
        if ratio <= 0.05 or delta <= 5:
            return MatchSignal("amount", 0.30, "Amount ±5%"), False
        if ratio <= 0.10:
            return MatchSignal("amount", 0.20, "Amount ±10%"), False
        if ratio > 0.5:
            pct = "inf" if ratio == float("inf") else f"{ratio * 100:.0f}"
            return MatchSignal("amount", 0.0, f"Amount mismatch: {pct}% diff"), True
        return None, False

    def _score_extracted_date(
        self, extracted: date | None, transaction_date: date | None
    ) -> MatchSignal | None:
        if extracted is None or transaction_date is None:
            return None
        days = abs((extracted - transaction_date).days)
        if days == 0:
            return MatchSignal("date", 0.15, "Same day")
        if days <= 3:
            return MatchSignal("date", 0.12, "Within 3 days")
        if days <= 7:
            return MatchSignal("date", 0.08, "Within 7 days")
        if days <= 14:
            return MatchSignal("date", 0.04, "Within 14 days")
        return None

    def _score_partner(
        self,
        candidate: ScoreCandidate,
        transaction: TransactionRecord,
        partner: PartnerRecord | None,
        tx_partner: str | None,
    ) -> MatchSignal | None:
        """Partner identity or name similarity, awarded at most once."""
        if partner and candidate.extracted_iban:
            iban = normalize_iban(candidate.extracted_iban)
            if iban in {normalize_iban(i) for i in partner.ibans}:
                return MatchSignal("partner", PARTNER_POINTS, "IBAN matches partner")
        if candidate.extracted_iban and transaction.partner_iban:
            if normalize_iban(candidate.extracted_iban) == normalize_iban(transaction.partner_iban):
                return MatchSignal("partner", PARTNER_POINTS, "IBAN matches transaction")
        if partner and vat_ids_match(candidate.extracted_vat_id, partner.vat_id):
            return MatchSignal("partner", PARTNER_POINTS, "VAT ID matches partner")

        file_partner = candidate.extracted_partner
        if not file_partner:
            return None

        names: list[str] = []
        patterns: list[str] = []
        if partner:
            names.append(partner.name)
            for alias in partner.aliases:
                (patterns if "*" in alias else names).append(alias)
        if tx_partner:
            names.append(tx_partner)
        cleaned_name = clean_text(transaction.name)
        if cleaned_name:
            names.append(cleaned_name)

        for name in names:
            if names_overlap(file_partner, name):
                return MatchSignal("partner", PARTNER_POINTS, "File partner matches transaction")
        for pattern in patterns:
            if glob_match(pattern, file_partner):
                return MatchSignal("partner", PARTNER_POINTS, f"File partner matches {pattern}")

        best = max((company_similarity(file_partner, name) for name in names), default=0)
        if 60 <= best < 100:
            fraction = 0.6 + (min(best, 99) - 60) / 39 * 0.3
            return MatchSignal(
                "partner",
                round(PARTNER_POINTS * fraction, 4),
                f"File partner similar to transaction ({best}%)",
            )
        return None

    def _score_mail_signals(
        self,
        candidate: ScoreCandidate,
        transaction: TransactionRecord,
        partner: PartnerRecord | None,
        tx_partner: str | None,
    ) -> list[MatchSignal]:
        signals: list[MatchSignal] = []

        amount_variants = build_amount_variants(transaction.amount)
        partner_tokens = extract_tokens(partner.name if partner else None) + extract_tokens(
            tx_partner
        )
        invoice_tokens = extract_tokens(transaction.name) + extract_tokens(transaction.reference)
        known_domains = [d.lower() for d in (partner.email_domains if partner else [])]
        gmail_patterns = [
            p
            for p in (partner.file_source_patterns if partner else [])
            if p.get("source_type") == "gmail" and p.get("integration_id")
        ]

        combined = " ".join(
            part
            for part in (
                candidate.email_subject,
                candidate.email_snippet,
                candidate.email_from,
                candidate.email_body_text,
            )
            if part
        ).lower()
        filename_lower = candidate.filename.lower()
        subject_lower = (candidate.email_subject or "").lower()
        sender_domain = extract_email_domain(candidate.email_from)
        mime_type = candidate.mime_type.lower()

        if mime_type == PDF_MIME_TYPE:
            signals.append(MatchSignal("source_type", 0.15, "PDF document"))
        elif mime_type in IMAGE_MIME_TYPES:
            signals.append(MatchSignal("source_type", 0.10, "Image document"))

        if _contains_any(filename_lower, RECEIPT_KEYWORDS):
            signals.append(MatchSignal("filename_keyword", 0.25, "Filename has invoice keyword"))
        if _contains_any(subject_lower, RECEIPT_KEYWORDS):
            signals.append(MatchSignal("subject_keyword", 0.15, "Subject has invoice keyword"))
        if _contains_any(combined, RECEIPT_KEYWORDS):
            signals.append(MatchSignal("text_keyword", 0.10, "Email text has invoice keyword"))

        if amount_variants and _contains_any(f"{combined} {filename_lower}", amount_variants):
            signals.append(
                MatchSignal("amount_text", 0.20, "Amount appears in email or filename")
            )
        if partner_tokens and _contains_any(combined, partner_tokens):
            signals.append(MatchSignal("partner_text", 0.10, "Partner name appears in email"))
        if invoice_tokens and _contains_any(f"{combined} {filename_lower}", invoice_tokens):
            signals.append(
                MatchSignal(
                    "reference_text", 0.10, "Invoice reference appears in email or filename"
                )
            )

        if sender_domain and sender_domain in known_domains:
            signals.append(
                MatchSignal("sender_domain", 0.20, f"Sender domain matches {sender_domain}")
            )
        if candidate.integration_id and any(
            p.get("integration_id") == candidate.integration_id for p in gmail_patterns
        ):
            signals.append(MatchSignal("mailbox_pattern", 0.10, "Learned Gmail account pattern"))

        if candidate.is_mail_invoice:
            signals.append(MatchSignal("mail_invoice", 0.10, "Email looks like an invoice"))
        if candidate.has_invoice_link:
            signals.append(MatchSignal("invoice_link", 0.05, "Email has invoice link"))

        return signals

    def _date_multiplier(
        self, document_date: date | None, transaction_date: date | None
    ) -> tuple[float, str | None, int]:
        """Distance multiplier; documents may precede payment by more than follow it.

        Returns:
            (multiplier, "before"/"after" or None, day distance)
        """
        if document_date is None or transaction_date is None:
            return 1.0, None, 0

        days = abs((document_date - transaction_date).days)
        if document_date < transaction_date:
            table, floor, direction = (
                BEFORE_TRANSACTION_MULTIPLIERS,
                BEFORE_TRANSACTION_FLOOR,
                "before",
            )
        else:
            table, floor, direction = (
                AFTER_TRANSACTION_MULTIPLIERS,
                AFTER_TRANSACTION_FLOOR,
                "after",
            )

        for max_days, multiplier in table:
            if days <= max_days:
                return multiplier, direction, days
        return floor, direction, days
