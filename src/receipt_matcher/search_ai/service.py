"""Search AI service for LLM-assisted receipt search.

Features:
- Ollama integration (localhost, LAN, or remote with auth header)
- Gmail query suggestions merged with deterministic queries
- Mail invoice analysis (invoice links, "this mail is the invoice")
- Concurrency limiting via semaphore
- Deterministic fallback whenever the model is disabled, slow or wrong

Privacy Constraints:
- Never log prompts or mail content at INFO level
"""

from __future__ import annotations

import json
import logging
import re
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import httpx

from receipt_matcher.mail_client.messages import html_to_text
from receipt_matcher.search_ai.prompts import EmailInvoicePrompt, SearchQueryPrompt
from receipt_matcher.search_ai.queries import (
    QuerySuggestion,
    generate_deterministic_queries,
    is_valid_query,
    merge_suggestions,
)

if TYPE_CHECKING:
    from receipt_matcher.config import LLMConfig
    from receipt_matcher.state_store import PartnerRecord, TransactionRecord

logger = logging.getLogger(__name__)

# Body characters kept before the prompt limit is applied
MAX_BODY_EXTRACT = 5000


@dataclass
class QueryGenerationResult:
    """Queries for one transaction plus LLM usage counters."""

    suggestions: list[QuerySuggestion]
    used_llm: bool = False
    llm_calls: int = 0
    tokens_used: int = 0

    @property
    def queries(self) -> list[str]:
        return [s.query for s in self.suggestions]

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "suggestions": [s.to_dict() for s in self.suggestions],
            "used_llm": self.used_llm,
            "llm_calls": self.llm_calls,
            "tokens_used": self.tokens_used,
        }


@dataclass
class EmailInvoiceAnalysis:
    """Result of analyzing a mail for invoice content."""

    has_invoice_link: bool = False
    invoice_links: list[dict] = field(default_factory=list)  # [{"url", "anchor_text"}]
    is_mail_invoice: bool = False
    mail_invoice_confidence: float = 0.0
    reasoning: str = ""
    llm_calls: int = 0
    tokens_used: int = 0

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "has_invoice_link": self.has_invoice_link,
            "invoice_links": self.invoice_links,
            "is_mail_invoice": self.is_mail_invoice,
            "mail_invoice_confidence": self.mail_invoice_confidence,
            "reasoning": self.reasoning,
        }


class LLMConcurrencyLimiter:
    """Semaphore-based concurrency limiter for LLM requests.

    Keeps the Ollama server from being flooded when several queue runs
    share it. Thread-safe for synchronous usage.
    """

    def __init__(self, max_concurrent: int = 2) -> None:
        self._semaphore = threading.Semaphore(max_concurrent)
        self._active_count = 0
        self._lock = threading.Lock()

    def acquire(self, timeout: float | None = None) -> bool:
        """Acquire a slot for an LLM request.

        Args:
            timeout: Maximum time to wait (None = blocking)

        Returns:
            True if acquired, False if timeout
        """
        acquired = self._semaphore.acquire(blocking=True, timeout=timeout)
        if acquired:
            with self._lock:
                self._active_count += 1
        return acquired

    def release(self) -> None:
        """Release a slot after request completes."""
        with self._lock:
            self._active_count -= 1
        self._semaphore.release()

    @property
    def active_requests(self) -> int:
        """Current number of active LLM requests."""
        with self._lock:
            return self._active_count


class SearchAIService:
    """LLM helper for the receipt search.

    Both operations degrade instead of failing: query generation falls back
    to the deterministic generator and mail analysis to a negative result.
    """

    def __init__(self, llm_config: LLMConfig) -> None:
        """Initialize the AI service.

        Args:
            llm_config: LLM section of the application configuration.
        """
        self.llm_config = llm_config

        headers = {}
        if self.llm_config.auth_header:
            # Support formats: "Bearer token" or "Custom-Header: value"
            if ":" in self.llm_config.auth_header:
                key, value = self.llm_config.auth_header.split(":", 1)
                headers[key.strip()] = value.strip()
            else:
                headers["Authorization"] = self.llm_config.auth_header

        self._client = httpx.Client(
            timeout=httpx.Timeout(
                connect=10.0,
                read=float(self.llm_config.timeout_seconds),
                write=30.0,
                pool=10.0,
            ),
            headers=headers,
        )
        self._query_prompt = SearchQueryPrompt()
        self._email_prompt = EmailInvoicePrompt()
        self._limiter = LLMConcurrencyLimiter(max_concurrent=self.llm_config.max_concurrent)

    @property
    def is_enabled(self) -> bool:
        """Check if LLM service is enabled."""
        return self.llm_config.enabled

    @property
    def is_remote(self) -> bool:
        """Check if Ollama is configured for remote access."""
        return self.llm_config.is_remote()

    @property
    def active_requests(self) -> int:
        return self._limiter.active_requests

    def generate_queries(
        self,
        transaction: TransactionRecord,
        partner: PartnerRecord | None = None,
        max_queries: int | None = None,
    ) -> QueryGenerationResult:
        """Build mailbox search queries for a transaction.

        Args:
            transaction: Transaction to find a receipt for.
            partner: Assigned partner profile, if any.
            max_queries: Upper bound on returned queries (default from config).

        Returns:
            QueryGenerationResult; never raises for model failures.
        """
        limit = max_queries or self.llm_config.max_queries
        deterministic = generate_deterministic_queries(transaction, partner, max_queries=limit)
        fallback = [s for s in deterministic if is_valid_query(s.query)]

        if not self.is_enabled:
            return QueryGenerationResult(suggestions=fallback)

        user_message = self._query_prompt.format_user_message(
            name=transaction.name,
            partner=transaction.partner_name,
            amount=transaction.amount,
            description=transaction.description,
            reference=transaction.reference,
            partner_name=partner.name if partner else None,
            email_domains=partner.email_domains if partner else None,
            website=partner.website if partner else None,
        )
        result = self._call_ollama(self._query_prompt.system_prompt, user_message)
        if result is None:
            return QueryGenerationResult(suggestions=fallback, llm_calls=1)

        tokens = result["tokens"]
        try:
            data = self._parse_json_response(result["content"])
        except json.JSONDecodeError as e:
            logger.warning("Could not parse query suggestions for %s: %s", transaction.id, e.msg)
            return QueryGenerationResult(suggestions=fallback, llm_calls=1, tokens_used=tokens)

        raw = data.get("suggestions") if isinstance(data, dict) else None
        if not isinstance(raw, list):
            logger.warning("Query suggestions for %s missing 'suggestions' list", transaction.id)
            return QueryGenerationResult(suggestions=fallback, llm_calls=1, tokens_used=tokens)

        merged = merge_suggestions(raw, deterministic, max_queries=limit)
        if not merged:
            return QueryGenerationResult(suggestions=fallback, llm_calls=1, tokens_used=tokens)

        logger.debug("Generated %d queries for %s via %s", len(merged), transaction.id, result["model"])
        return QueryGenerationResult(
            suggestions=merged, used_llm=True, llm_calls=1, tokens_used=tokens
        )

    def classify_email_content(
        self,
        subject: str | None,
        sender: str | None,
        html_body: str | None,
        text_body: str | None,
        transaction: TransactionRecord,
    ) -> EmailInvoiceAnalysis:
        """Ask the model whether a mail is an invoice or links to one.

        The plain-text body is preferred; otherwise the HTML is stripped.
        Any failure yields a negative analysis.
        """
        if not self.is_enabled:
            return EmailInvoiceAnalysis(reasoning="LLM disabled")

        body = (text_body or html_to_text(html_body))[:MAX_BODY_EXTRACT]
        user_message = self._email_prompt.format_user_message(
            sender=sender,
            subject=subject,
            body=body[: self.llm_config.max_body_chars],
            name=transaction.name,
            partner=transaction.partner_name,
            amount=transaction.amount,
        )
        result = self._call_ollama(self._email_prompt.system_prompt, user_message)
        if result is None:
            return EmailInvoiceAnalysis(reasoning="Analysis failed", llm_calls=1)

        try:
            data = self._parse_json_response(result["content"])
        except json.JSONDecodeError as e:
            logger.warning("Could not parse mail analysis: %s", e.msg)
            return EmailInvoiceAnalysis(
                reasoning="Analysis failed", llm_calls=1, tokens_used=result["tokens"]
            )

        links = []
        for link in data.get("invoiceLinks") or []:
            if isinstance(link, dict) and link.get("url"):
                links.append({"url": str(link["url"]), "anchor_text": link.get("anchorText") or ""})

        try:
            confidence = float(data.get("mailInvoiceConfidence") or 0.0)
        except (TypeError, ValueError):
            confidence = 0.0

        return EmailInvoiceAnalysis(
            has_invoice_link=bool(data.get("hasInvoiceLink")) and bool(links),
            invoice_links=links,
            is_mail_invoice=bool(data.get("isMailInvoice")),
            mail_invoice_confidence=max(0.0, min(1.0, confidence)),
            reasoning=str(data.get("reasoning") or ""),
            llm_calls=1,
            tokens_used=result["tokens"],
        )

    def _call_ollama(self, system_prompt: str, user_message: str) -> dict | None:
        """Call Ollama API for completion with concurrency limiting.

        Returns:
            Dict with "content", "model" and "tokens" keys, or None on failure.
        """
        if not self._limiter.acquire(timeout=self.llm_config.timeout_seconds):
            logger.warning(
                "LLM request timed out waiting for concurrency slot (max=%d, active=%d)",
                self.llm_config.max_concurrent,
                self._limiter.active_requests,
            )
            return None

        model = self.llm_config.model
        try:
            url = f"{self.llm_config.ollama_url}/api/chat"
            payload = {
                "model": model,
                "messages": [
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_message},
                ],
                "stream": False,
                "format": "json",
            }
            logger.debug("Calling Ollama model %s at %s", model, self.llm_config.ollama_url)

            response = self._client.post(url, json=payload)
            response.raise_for_status()
            data = response.json()
            message = data.get("message") if isinstance(data, dict) else None
            if not isinstance(message, dict) or not isinstance(message.get("content", ""), str):
                logger.error("Ollama returned an unexpected body: %.200r", data)
                return None
            content = message.get("content", "")
            tokens = int(data.get("prompt_eval_count") or 0) + int(data.get("eval_count") or 0)

            logger.debug("Ollama %s returned %d chars", model, len(content))
            return {"content": content, "model": model, "tokens": tokens}

        except httpx.TimeoutException:
            logger.warning("Ollama request timed out after %ds", self.llm_config.timeout_seconds)
            return None
        except httpx.HTTPStatusError as e:
            logger.error(
                "Ollama API error %s for model '%s' at %s",
                e.response.status_code,
                model,
                self.llm_config.ollama_url,
            )
            return None
        except httpx.RequestError as e:
            logger.error("Ollama request failed: %s (URL: %s)", e, self.llm_config.ollama_url)
            return None
        except (TypeError, ValueError) as e:
            logger.error("Ollama returned an unreadable body: %s", e)
            return None
        finally:
            self._limiter.release()

    def _parse_json_response(self, content: str) -> dict:
        """Parse a JSON object from an LLM response.

        Handles markdown code fences, prose around the object, stray
        control characters and trailing commas.

        Raises:
            json.JSONDecodeError: If no JSON object can be recovered.
        """
        if not content:
            raise json.JSONDecodeError("Empty response", "", 0)

        content = content.strip()
        if content.startswith("```json"):
            content = content[7:]
        elif content.startswith("```"):
            content = content[3:]
        if content.endswith("```"):
            content = content[:-3]
        content = content.strip()

        candidates = [content]
        start, end = content.find("{"), content.rfind("}")
        if 0 <= start < end:
            candidates.append(content[start : end + 1])

        for candidate in candidates:
            for text in (candidate, _clean_json(candidate)):
                try:
                    parsed = json.loads(text)
                except json.JSONDecodeError:
                    continue
                if isinstance(parsed, dict):
                    return parsed

        raise json.JSONDecodeError(
            f"Could not parse JSON from response: {content[:200]}...", content, 0
        )

    def close(self) -> None:
        """Close HTTP client."""
        self._client.close()

    def __enter__(self) -> SearchAIService:
        """Enter context manager."""
        return self

    def __exit__(self, *args) -> None:
        """Exit context manager."""
        self.close()


def _clean_json(text: str) -> str:
    # Control characters except newlines and tabs, then trailing commas
    cleaned = re.sub(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]", "", text)
    return re.sub(r",\s*([}\]])", r"\1", cleaned)
