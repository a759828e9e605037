"""Deterministic mailbox search query generation.

Rule-based suggestions derived from the transaction text and the partner
profile. Used on its own when the LLM is disabled or fails, and to fill
the remaining slots after LLM suggestions.

Priorities (higher first):
- invoice_number: 100
- company_name: 90 (partner), 88 (first word), 85/83 (bank counterparty), 80 (aliases)
- email_domain: 78 (known domains), 75 (website)
- iban: 70, vat_id: 68
- pattern: 65 (top 3 learned source patterns)
- fallback: 55/52 ("<name> rechnung"/"<name> invoice"), 50/45 (bank text)
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

from receipt_matcher.matching.fuzzy import clean_text

if TYPE_CHECKING:
    from receipt_matcher.state_store import PartnerRecord, TransactionRecord

VALID_TYPES = [
    "invoice_number",
    "company_name",
    "email_domain",
    "vat_id",
    "iban",
    "pattern",
    "fallback",
]

# Words that are never useful as a query on their own
BLOCKED_WORDS = {
    "money",
    "payment",
    "added",
    "from",
    "to",
    "the",
    "for",
    "and",
    "inc",
    "llc",
    "gmbh",
    "ag",
    "transfer",
    "bank",
    "credit",
    "debit",
    "card",
    "transaction",
    "purchase",
    "order",
}

_UUID_RE = re.compile(r"^[a-f0-9]{8}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{12}$", re.I)

_LETTER_YEAR_RE = re.compile(r"\b([A-Z]{1,3})[-\s]*(\d{4})[.\-/](\d+)\b", re.I)
_PREFIXED_RE = re.compile(
    r"\b(inv|re|rg|rech|invoice|rechnung|bill|order|bestellung)[-_]?\s*#?\s*(\d{3,}[-_.\d]*)",
    re.I,
)
_YEAR_PREFIX_RE = re.compile(r"\b(20\d{2})[-/_](\d{4,})\b")
_ALPHA_NUM_RE = re.compile(r"\b([A-Z]{2,})/?(\d{10,})\b", re.I)
_LONG_NUMBER_RE = re.compile(r"\b(\d{7,})\b")


@dataclass
class QuerySuggestion:
    """A typed, ranked search query."""

    query: str
    type: str
    score: int

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {"query": self.query, "type": self.type, "score": self.score}


def extract_first_word(text: str) -> str:
    """First word of at least two characters of the cleaned text."""
    words = [w for w in clean_text(text).split() if len(w) >= 2]
    return words[0] if words else ""


def extract_invoice_numbers(text: str | None) -> list[str]:
    """Find invoice/reference numbers in free text.

    Recognizes "R- 2024.014", "INV-12345", "2024-12345", "ROC/2024122400589"
    and standalone numbers of 7+ digits (not part of hex ids).
    """
    if not text:
        return []

    results: list[str] = []
    seen: set[str] = set()

    def add(candidate: str) -> None:
        cleaned = re.sub(r"^[-_#\s]+|[-_#\s]+$", "", candidate).strip()
        if len(cleaned) >= 4 and cleaned.lower() not in seen:
            seen.add(cleaned.lower())
            results.append(cleaned)

    for m in _LETTER_YEAR_RE.finditer(text):
        add(f"{m.group(1)}- {m.group(2)}.{m.group(3)}")
        add(f"{m.group(1)}{m.group(2)}{m.group(3)}")

    for m in _PREFIXED_RE.finditer(text):
        add(re.sub(r"\s+", "", m.group(0)))

    for m in _YEAR_PREFIX_RE.finditer(text):
        add(f"{m.group(1)}-{m.group(2)}")

    for m in _ALPHA_NUM_RE.finditer(text):
        add(m.group(2))

    for m in _LONG_NUMBER_RE.finditer(text):
        surrounding = text[max(0, m.start() - 5) : m.end() + 5]
        if not re.search(r"[a-f]", surrounding, re.I):
            add(m.group(1))

    return results


def _normalize_whitespace(value: str) -> str:
    return re.sub(r"\s+", " ", value.strip()).lower()


def generate_deterministic_queries(
    transaction: TransactionRecord,
    partner: PartnerRecord | None = None,
    max_queries: int = 8,
) -> list[QuerySuggestion]:
    """Rule-based queries sorted by priority, then by first appearance."""
    entries: dict[str, dict] = {}

    def add(value: str, query_type: str, score: int) -> None:
        cleaned = _normalize_whitespace(value or "")
        if len(cleaned) < 2:
            return
        existing = entries.get(cleaned)
        if existing is None:
            entries[cleaned] = {"type": query_type, "score": score, "order": len(entries)}
        elif score > existing["score"]:
            existing.update(type=query_type, score=score)

    for text in (transaction.description, transaction.name, transaction.reference):
        for number in extract_invoice_numbers(text):
            add(number, "invoice_number", 100)

    if partner and partner.name:
        cleaned = clean_text(partner.name)
        add(cleaned, "company_name", 90)
        first_word = extract_first_word(partner.name)
        if first_word and first_word.lower() != cleaned.lower():
            add(first_word, "company_name", 88)

    if transaction.partner_name:
        add(clean_text(transaction.partner_name), "company_name", 85)
        first_word = extract_first_word(transaction.partner_name)
        if len(first_word) >= 3:
            add(first_word, "company_name", 83)

    if partner:
        for alias in partner.aliases:
            if "*" in alias:
                continue
            cleaned = clean_text(alias)
            if cleaned:
                add(cleaned, "company_name", 80)

        for domain in partner.email_domains:
            add(f"from:{domain}", "email_domain", 78)

        if partner.website:
            website = re.sub(r"^www\.", "", partner.website, flags=re.I)
            add(f"from:{website}", "email_domain", 75)

        for iban in partner.ibans:
            add(re.sub(r"\s+", "", iban), "iban", 70)

        if partner.vat_id:
            add(partner.vat_id, "vat_id", 68)

        patterns = sorted(
            partner.file_source_patterns,
            key=lambda p: (p.get("usage_count", 0), p.get("confidence", 0)),
            reverse=True,
        )
        for pattern in patterns[:3]:
            value = pattern.get("pattern", "")
            if pattern.get("source_type") == "local":
                value = re.sub(r"\s+", " ", value.replace("*", " ")).strip()
            if value:
                add(value, "pattern", 65)

    if partner and partner.name:
        base_name = clean_text(partner.name)
    elif transaction.partner_name:
        base_name = clean_text(transaction.partner_name)
    else:
        base_name = ""
    if base_name:
        add(f"{base_name} rechnung", "fallback", 55)
        add(f"{base_name} invoice", "fallback", 52)

    if transaction.name and transaction.name != transaction.partner_name:
        first_word = extract_first_word(transaction.name)
        if len(first_word) >= 3:
            add(first_word, "fallback", 50)
        add(clean_text(transaction.name), "fallback", 45)

    ranked = sorted(entries.items(), key=lambda item: (-item[1]["score"], item[1]["order"]))
    return [
        QuerySuggestion(query=query, type=entry["type"], score=entry["score"])
        for query, entry in ranked[:max_queries]
    ]


def normalize_query(value: str) -> str:
    """Lowercase and repair hyphen/number spacing ("r- 2024" -> "r-2024")."""
    normalized = str(value or "").strip().lower()
    normalized = re.sub(r"([a-z])-\s+(\d)", r"\1-\2", normalized)
    normalized = re.sub(r"(\d)\s+-([a-z\d])", r"\1-\2", normalized)
    return normalized


def is_valid_query(query: str) -> bool:
    """Reject generic words, bank boilerplate and bare UUIDs."""
    normalized = query.lower().strip()
    if len(normalized) < 2:
        return False
    if normalized in BLOCKED_WORDS:
        return False
    blocked = sum(1 for word in normalized.split() if word in BLOCKED_WORDS)
    if blocked >= 2:
        return False
    if _UUID_RE.match(normalized):
        return False
    return True


def merge_suggestions(
    llm_suggestions: list[dict],
    deterministic: list[QuerySuggestion],
    max_queries: int = 5,
) -> list[QuerySuggestion]:
    """
    Combine LLM suggestions (kept in model order) with deterministic ones.

    LLM entries are scored 100, 90, 80, ...; deterministic entries continue
    below in steps of 5 and only fill remaining slots. Duplicates (after
    normalization) and invalid queries are dropped.
    """
    seen: set[str] = set()
    results: list[QuerySuggestion] = []

    def add_if_new(query: str, query_type: str, score: int) -> None:
        normalized = normalize_query(query)
        if not normalized or normalized in seen or not is_valid_query(normalized):
            return
        seen.add(normalized)
        if query_type not in VALID_TYPES:
            query_type = "fallback"
        results.append(QuerySuggestion(query=normalized, type=query_type, score=score))

    score = 100
    for item in llm_suggestions:
        if isinstance(item, dict) and item.get("query"):
            add_if_new(str(item["query"]), str(item.get("type") or "fallback"), score)
            score -= 10

    for suggestion in deterministic:
        if len(results) >= max_queries:
            break
        add_if_new(suggestion.query, suggestion.type, score)
        score -= 5

    return results[:max_queries]
