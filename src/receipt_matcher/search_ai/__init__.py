"""
LLM-assisted search query generation and mail invoice analysis.

The model is optional: every operation has a deterministic fallback.
"""

from .prompts import PROMPT_VERSION, EmailInvoicePrompt, SearchQueryPrompt
from .queries import (
    QuerySuggestion,
    extract_invoice_numbers,
    generate_deterministic_queries,
    is_valid_query,
    merge_suggestions,
    normalize_query,
)
from .service import (
    EmailInvoiceAnalysis,
    LLMConcurrencyLimiter,
    QueryGenerationResult,
    SearchAIService,
)

__all__ = [
    "PROMPT_VERSION",
    "SearchQueryPrompt",
    "EmailInvoicePrompt",
    "QuerySuggestion",
    "extract_invoice_numbers",
    "generate_deterministic_queries",
    "is_valid_query",
    "merge_suggestions",
    "normalize_query",
    "SearchAIService",
    "QueryGenerationResult",
    "EmailInvoiceAnalysis",
    "LLMConcurrencyLimiter",
]
