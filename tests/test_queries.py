"""Tests for deterministic search query generation."""

from receipt_matcher.search_ai import (
    QuerySuggestion,
    extract_invoice_numbers,
    generate_deterministic_queries,
    is_valid_query,
    merge_suggestions,
    normalize_query,
)
from receipt_matcher.search_ai.queries import extract_first_word
from receipt_matcher.state_store import PartnerRecord, TransactionRecord


def _transaction(**overrides) -> TransactionRecord:
    values = {
        "id": "tx-1",
        "user_id": "user-1",
        "amount": -4999,
        "currency": "EUR",
        "date": "2024-03-10",
        "name": "NETFLIX.COM",
    }
    values.update(overrides)
    return TransactionRecord(**values)


class TestInvoiceNumbers:
    """Tests for extract_invoice_numbers()."""

    def test_letter_year_number(self):
        assert extract_invoice_numbers("Rechnung R- 2024.014") == ["R- 2024.014", "R2024014"]

    def test_prefixed_number(self):
        assert extract_invoice_numbers("Payment INV-12345 thanks") == ["INV-12345"]

    def test_year_prefixed_number(self):
        assert extract_invoice_numbers("Zahlung 2024-12345") == ["2024-12345"]

    def test_long_number(self):
        assert extract_invoice_numbers("Zahlung 98765432") == ["98765432"]

    def test_long_number_inside_hex_id_ignored(self):
        assert extract_invoice_numbers("id a1b2c3d4e5 1234567 fe") == []

    def test_empty(self):
        assert extract_invoice_numbers(None) == []
        assert extract_invoice_numbers("") == []


class TestDeterministicQueries:
    """Tests for generate_deterministic_queries()."""

    def test_invoice_number_ranks_first(self):
        tx = _transaction(reference="INV-12345")
        queries = generate_deterministic_queries(tx)

        assert queries[0].query == "inv-12345"
        assert queries[0].type == "invoice_number"
        assert queries[0].score == 100

    def test_partner_profile_queries(self):
        partner = PartnerRecord(
            id="p-1",
            user_id="user-1",
            name="Netflix",
            email_domains=["netflix.com"],
            website="www.netflix.com",
        )
        queries = generate_deterministic_queries(_transaction(), partner)
        by_query = {q.query: q for q in queries}

        assert queries[0].query == "netflix"
        assert queries[0].type == "company_name"
        assert by_query["from:netflix.com"].type == "email_domain"
        assert by_query["from:netflix.com"].score == 78
        assert "netflix rechnung" in by_query
        assert "netflix invoice" in by_query

    def test_sorted_by_score(self):
        partner = PartnerRecord(id="p-1", user_id="user-1", name="Netflix", vat_id="NL123")
        tx = _transaction(reference="INV-12345", partner_name="Netflix International")
        scores = [q.score for q in generate_deterministic_queries(tx, partner)]
        assert scores == sorted(scores, reverse=True)

    def test_wildcard_aliases_skipped(self):
        partner = PartnerRecord(
            id="p-1", user_id="user-1", name="Netflix", aliases=["*netflix*", "Netflix BV"]
        )
        queries = [q.query for q in generate_deterministic_queries(_transaction(), partner)]
        assert not any("*" in q for q in queries)

    def test_max_queries(self):
        partner = PartnerRecord(
            id="p-1",
            user_id="user-1",
            name="Netflix",
            email_domains=["netflix.com", "mail.netflix.com"],
            ibans=["NL91ABNA0417164300"],
            vat_id="NL123456789B01",
        )
        tx = _transaction(reference="INV-12345", partner_name="Netflix International")
        assert len(generate_deterministic_queries(tx, partner, max_queries=3)) == 3

    def test_no_context_falls_back_to_bank_text(self):
        queries = [q.query for q in generate_deterministic_queries(_transaction())]
        assert queries == ["netflix"]

    def test_extract_first_word(self):
        assert extract_first_word("PAYPAL *SPOTIFY AB 1234") == "SPOTIFY"


class TestQueryValidation:
    """Tests for is_valid_query() and normalize_query()."""

    def test_rejects_blocked_words(self):
        assert is_valid_query("payment") is False
        assert is_valid_query("money transfer") is False

    def test_rejects_uuid(self):
        assert is_valid_query("123e4567-e89b-12d3-a456-426614174000") is False

    def test_rejects_too_short(self):
        assert is_valid_query("a") is False

    def test_accepts_company(self):
        assert is_valid_query("netflix") is True
        assert is_valid_query("netflix payment") is True

    def test_normalize_query(self):
        assert normalize_query("R- 2024.014") == "r-2024.014"
        assert normalize_query("  2024 -INV ") == "2024-inv"


class TestMergeSuggestions:
    """Tests for merge_suggestions()."""

    def test_llm_first_then_deterministic(self):
        llm = [
            {"query": "Netflix", "type": "company_name"},
            {"query": "payment", "type": "company_name"},
            {"query": "R- 2024.014", "type": "invoice_number"},
        ]
        deterministic = [
            QuerySuggestion("netflix", "company_name", 90),
            QuerySuggestion("netflix invoice", "fallback", 52),
        ]

        merged = merge_suggestions(llm, deterministic, max_queries=5)

        assert [(s.query, s.score) for s in merged] == [
            ("netflix", 100),
            ("r-2024.014", 80),
            ("netflix invoice", 65),
        ]

    def test_unknown_type_becomes_fallback(self):
        merged = merge_suggestions([{"query": "netflix", "type": "bogus"}], [])
        assert merged[0].type == "fallback"

    def test_respects_max(self):
        llm = [{"query": f"vendor{i}", "type": "company_name"} for i in range(10)]
        assert len(merge_suggestions(llm, [], max_queries=4)) == 4

    def test_ignores_malformed_items(self):
        merged = merge_suggestions(["netflix", {"type": "company_name"}, {"query": "spotify"}], [])
        assert [s.query for s in merged] == ["spotify"]
