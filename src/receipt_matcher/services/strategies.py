"""Receipt search strategies.

Each strategy looks for the receipt of one transaction in one place and
reports what it did as a SearchAttempt:

- partner_files: unlinked files already assigned to the transaction's partner
- amount_files: unlinked files whose extracted date is near the transaction
- email_attachment: PDF/image attachments in the user's mailboxes
- email_invoice: mails whose HTML body is the invoice (rendered to PDF)

Strategies never link files. They write a match hint on the file record
(through the rejection-guarded store write) and leave the final link to
the downstream matcher.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from receipt_matcher.ingestion import IngestionSource, render_html_to_pdf
from receipt_matcher.mail_client import (
    MailboxAuthError,
    MailboxError,
    build_search_query,
    classify_email,
    is_email_date_in_range,
)
from receipt_matcher.mail_client.messages import html_to_text
from receipt_matcher.matching.scorer import MatchScorer, ScoreCandidate, to_date
from receipt_matcher.schemas.dedupe import parse_existing_ref
from receipt_matcher.state_store import MatchHint
from receipt_matcher.state_store.sqlite_store import utc_now

if TYPE_CHECKING:
    from receipt_matcher.config import Config
    from receipt_matcher.ingestion import FileIngestionService
    from receipt_matcher.mail_client import EmailMessage, MailboxConnection, MailboxProvider
    from receipt_matcher.search_ai import SearchAIService
    from receipt_matcher.state_store import PartnerRecord, StateStore, TransactionRecord

logger = logging.getLogger(__name__)

PARTNER_FILES = "partner_files"
AMOUNT_FILES = "amount_files"
EMAIL_ATTACHMENT = "email_attachment"
EMAIL_INVOICE = "email_invoice"

# Default execution order: cheap local lookups before mailbox searches
DEFAULT_STRATEGIES = [PARTNER_FILES, AMOUNT_FILES, EMAIL_ATTACHMENT, EMAIL_INVOICE]

HTML_INVOICE_SOURCE = "gmail_html_invoice"


@dataclass
class SearchAttempt:
    """Outcome of running one strategy for one transaction."""

    strategy: str
    started_at: str = field(default_factory=utc_now)
    completed_at: str | None = None
    search_params: dict[str, Any] = field(default_factory=dict)
    candidates_found: int = 0
    candidates_evaluated: int = 0
    matches_found: int = 0
    file_ids_connected: list[str] = field(default_factory=list)
    best_match_score: int | None = None
    invoice_links_found: list[str] = field(default_factory=list)
    llm_calls: int = 0
    llm_tokens_used: int = 0
    error: str | None = None

    def record_score(self, score: int) -> None:
        if self.best_match_score is None or score > self.best_match_score:
            self.best_match_score = score

    def connect(self, file_id: str) -> None:
        self.file_ids_connected.append(file_id)
        self.matches_found += 1

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "strategy": self.strategy,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "search_params": self.search_params,
            "candidates_found": self.candidates_found,
            "candidates_evaluated": self.candidates_evaluated,
            "matches_found": self.matches_found,
            "file_ids_connected": self.file_ids_connected,
            "best_match_score": self.best_match_score,
            "invoice_links_found": self.invoice_links_found,
            "llm_calls": self.llm_calls,
            "llm_tokens_used": self.llm_tokens_used,
            "error": self.error,
        }


class SearchStrategy:
    """Base class: error capture, partner lookup and the guarded hint write."""

    name = ""

    def __init__(self, store: StateStore, config: Config, scorer: MatchScorer | None = None):
        self.store = store
        self.config = config
        self.scorer = scorer or MatchScorer()
        self.connect_threshold = config.matching.connect_threshold

    def execute(self, transaction: TransactionRecord) -> SearchAttempt:
        """Run the strategy; failures end up on attempt.error, never raised."""
        attempt = SearchAttempt(strategy=self.name)
        try:
            self._run(transaction, attempt)
        except Exception as e:
            logger.error(f"Strategy {self.name} failed for {transaction.id}: {e}")
            attempt.error = str(e) or type(e).__name__
        attempt.completed_at = utc_now()
        return attempt

    def _run(self, transaction: TransactionRecord, attempt: SearchAttempt) -> None:
        raise NotImplementedError

    def _get_partner(self, transaction: TransactionRecord) -> PartnerRecord | None:
        if not transaction.partner_id:
            return None
        return self.store.get_partner(transaction.partner_id)

    def _write_hint(
        self, file_id: str, transaction: TransactionRecord, score: int | None
    ) -> bool:
        hint = MatchHint(
            transaction_id=transaction.id,
            transaction_amount=transaction.amount,
            transaction_date=transaction.date,
            search_strategy=self.name,
            match_confidence=score,
        )
        return self.store.set_precision_search_hint(file_id, hint)


class PartnerFilesStrategy(SearchStrategy):
    """Unlinked files already assigned to the transaction's partner."""

    name = PARTNER_FILES
    candidate_limit = 50

    def _run(self, transaction: TransactionRecord, attempt: SearchAttempt) -> None:
        if not transaction.partner_id:
            attempt.search_params = {"skipped": "no partner assigned"}
            return

        partner = self._get_partner(transaction)
        attempt.search_params = {"partner_id": transaction.partner_id}
        files = self.store.get_unlinked_partner_files(
            transaction.user_id, transaction.partner_id, limit=self.candidate_limit
        )
        attempt.candidates_found = len(files)

        for file in files:
            if transaction.has_rejected(file.id):
                continue
            result = self.scorer.score(ScoreCandidate.from_file(file), transaction, partner)
            attempt.candidates_evaluated += 1
            attempt.record_score(result.score)
            if result.score < self.connect_threshold:
                continue
            if self._write_hint(file.id, transaction, result.score):
                attempt.connect(file.id)
                logger.info(f"{self.name}: {file.file_name} ({file.id}) at {result.score}%")


class AmountFilesStrategy(SearchStrategy):
    """Unlinked files whose extracted date falls near the transaction date."""

    name = AMOUNT_FILES
    candidate_limit = 100

    def _run(self, transaction: TransactionRecord, attempt: SearchAttempt) -> None:
        matching = self.config.matching
        tx_date = to_date(transaction.date)
        window = timedelta(days=matching.amount_window_days)
        date_from = (tx_date - window).isoformat()
        date_to = (tx_date + window).isoformat()
        attempt.search_params = {"date_from": date_from, "date_to": date_to}

        files = self.store.get_unlinked_files_in_date_range(
            transaction.user_id, date_from, date_to, limit=self.candidate_limit
        )
        attempt.candidates_found = len(files)

        scored = []
        for file in files:
            result = self.scorer.score(ScoreCandidate.from_file(file), transaction)
            attempt.candidates_evaluated += 1
            attempt.record_score(result.score)
            if result.score >= self.connect_threshold:
                scored.append((result.score, file))

        scored.sort(key=lambda item: item[0], reverse=True)
        eligible = [(s, f) for s, f in scored if not transaction.has_rejected(f.id)]
        for score, file in eligible[: matching.amount_top_candidates]:
            if self._write_hint(file.id, transaction, score):
                attempt.connect(file.id)
                logger.info(f"{self.name}: {file.file_name} ({file.id}) at {score}%")


class EmailSearchStrategy(SearchStrategy):
    """Shared mailbox loop of the two e-mail strategies.

    Queries come from the AI service (first queries_per_strategy of them).
    Every usable mailbox is searched with every query until great_match_count
    matches at or above great_threshold were found. An auth failure flags the
    integration and moves on to the next mailbox.
    """

    def __init__(
        self,
        store: StateStore,
        config: Config,
        provider: MailboxProvider,
        ai_service: SearchAIService,
        ingestion: FileIngestionService,
        scorer: MatchScorer | None = None,
    ):
        super().__init__(store, config, scorer)
        self.provider = provider
        self.ai = ai_service
        self.ingestion = ingestion
        self.great_threshold = config.matching.great_threshold
        self.great_match_count = config.matching.great_match_count

    def _build_queries(self, queries, partner, attempt) -> list[str]:
        raise NotImplementedError

    def _process_message(
        self,
        message: EmailMessage,
        connection: MailboxConnection,
        transaction: TransactionRecord,
        partner: PartnerRecord | None,
        attempt: SearchAttempt,
    ) -> int:
        """Handle one message; returns the number of great matches it produced."""
        raise NotImplementedError

    def _run(self, transaction: TransactionRecord, attempt: SearchAttempt) -> None:
        connections = self.provider.get_clients(transaction.user_id)
        if not connections:
            attempt.search_params = {"skipped": "no usable mailbox"}
            return

        partner = self._get_partner(transaction)
        generated = self.ai.generate_queries(transaction, partner)
        attempt.llm_calls += generated.llm_calls
        attempt.llm_tokens_used += generated.tokens_used
        queries = self._build_queries(
            generated.queries[: self.config.gmail.queries_per_strategy], partner, attempt
        )
        attempt.search_params = {
            "queries": queries,
            "used_llm": generated.used_llm,
            "mailboxes": [c.integration.id for c in connections],
        }
        if not queries:
            return

        great_matches = 0
        for connection in connections:
            if great_matches >= self.great_match_count:
                break
            if self._mailbox_paused(connection, attempt):
                continue
            try:
                great_matches += self._search_mailbox(
                    connection, queries, transaction, partner, attempt, great_matches
                )
            except MailboxAuthError as e:
                self.provider.mark_needs_reauth(connection.integration.id, str(e))

    def _search_mailbox(
        self,
        connection: MailboxConnection,
        queries: list[str],
        transaction: TransactionRecord,
        partner: PartnerRecord | None,
        attempt: SearchAttempt,
        great_so_far: int,
    ) -> int:
        client = connection.client
        tx_date = to_date(transaction.date)
        window = self.config.matching.email_window_days
        seen: set[str] = set()
        great = 0

        for query in queries:
            if great_so_far + great >= self.great_match_count:
                break
            try:
                result = client.search_messages(
                    query, max_results=self.config.gmail.max_results_per_query
                )
            except MailboxAuthError:
                raise
            except MailboxError as e:
                logger.warning(f"{self.name}: query {query!r} failed: {e}")
                continue
            except Exception:
                logger.warning(f"{self.name}: query {query!r} failed", exc_info=True)
                continue

            attempt.candidates_found += len(result.ids)
            for message_id in result.ids:
                if great_so_far + great >= self.great_match_count:
                    break
                if self._mailbox_paused(connection, attempt):
                    return great
                if message_id in seen:
                    continue
                seen.add(message_id)
                attempt.candidates_evaluated += 1

                try:
                    message = client.get_message(message_id)
                    if not is_email_date_in_range(message.date, tx_date, window):
                        logger.debug(f"{self.name}: {message_id} outside +/-{window} days")
                        continue
                    great += self._process_message(
                        message, connection, transaction, partner, attempt
                    )
                except MailboxAuthError:
                    raise
                except MailboxError as e:
                    logger.warning(f"{self.name}: message {message_id} failed: {e}")
                except Exception:
                    logger.warning(f"{self.name}: message {message_id} failed", exc_info=True)

        return great

    def _mailbox_paused(self, connection: MailboxConnection, attempt: SearchAttempt) -> bool:
        integration_id = connection.integration.id
        if not self.provider.is_paused(integration_id):
            return False
        paused = attempt.search_params.setdefault("paused_mailboxes", [])
        if integration_id not in paused:
            logger.info(f"{self.name}: mailbox {integration_id} paused, stopping its search")
            paused.append(integration_id)
        return True


class EmailAttachmentStrategy(EmailSearchStrategy):
    """Receipt-like attachments (PDFs first, then images)."""

    name = EMAIL_ATTACHMENT

    def _build_queries(self, queries, partner, attempt):
        return [build_search_query(q, has_attachments=True) for q in queries]

    def _process_message(self, message, connection, transaction, partner, attempt):
        classification = classify_email(message.subject, message.snippet, message.attachments)
        if classification.possible_mail_invoice and not classification.has_pdf_attachment:
            # Body is the invoice: left to email_invoice
            return 0

        attachments = sorted(
            (a for a in message.attachments if a.is_receipt_like),
            key=lambda a: not a.is_pdf,
        )
        integration = connection.integration
        great = 0
        pdf_matched = False

        for attachment in attachments:
            if pdf_matched and not attachment.is_pdf:
                continue

            candidate = ScoreCandidate.from_attachment(
                attachment, message, integration.id, classification
            )
            existing = self.store.find_file_by_gmail_attachment(
                transaction.user_id, message.id, attachment.attachment_id
            )
            if existing is not None and existing.is_deleted:
                logger.debug(f"{self.name}: {existing.id} was deleted by the user, skipping")
                continue
            if existing is None:
                data = connection.client.get_attachment_bytes(message.id, attachment.attachment_id)
                ingested = self.ingestion.ingest(
                    transaction.user_id,
                    data,
                    attachment.filename,
                    attachment.mime_type,
                    IngestionSource.from_message(message, integration, attachment.attachment_id),
                )
                if ingested is None:
                    continue
                existing_id = parse_existing_ref(ingested)
                if existing_id is None:
                    score = self.scorer.score(candidate, transaction, partner).score
                    attempt.record_score(score)
                    if self._write_hint(ingested, transaction, score):
                        attempt.connect(ingested)
                        pdf_matched = pdf_matched or attachment.is_pdf
                        if score >= self.great_threshold:
                            great += 1
                        logger.info(f"{self.name}: stored {attachment.filename} as {ingested}")
                    continue
                existing = self.store.get_file(existing_id)
                if existing is None:
                    continue

            if transaction.id in existing.transaction_ids:
                logger.debug(f"{self.name}: {existing.id} already linked to {transaction.id}")
                continue

            candidate = replace(
                candidate,
                filename=existing.file_name or attachment.filename,
                email_body_text=existing.extracted_text,
            )
            result = self.scorer.score(candidate, transaction, partner)
            attempt.record_score(result.score)
            if result.score < self.connect_threshold:
                continue
            if transaction.has_rejected(existing.id):
                logger.info(f"{self.name}: skipping rejected file {existing.id}")
                continue
            if self._write_hint(existing.id, transaction, result.score):
                attempt.connect(existing.id)
                pdf_matched = pdf_matched or attachment.is_pdf
                if result.score >= self.great_threshold:
                    great += 1
                logger.info(f"{self.name}: existing {existing.id} matched at {result.score}%")

        return great


class EmailInvoiceStrategy(EmailSearchStrategy):
    """Mails that are the invoice themselves, plus invoice link discovery."""

    name = EMAIL_INVOICE

    def _build_queries(self, queries, partner, attempt):
        cleaned = [re.sub(r"has:attachment", "", q, flags=re.I).strip() for q in queries]
        return [q for q in cleaned if q]

    def _process_message(self, message, connection, transaction, partner, attempt):
        if message.has_pdf_attachment:
            # Handled by email_attachment
            return 0

        analysis = self.ai.classify_email_content(
            subject=message.subject,
            sender=message.sender,
            html_body=message.html_body,
            text_body=message.text_body,
            transaction=transaction,
        )
        attempt.llm_calls += analysis.llm_calls
        attempt.llm_tokens_used += analysis.tokens_used

        if analysis.has_invoice_link and analysis.invoice_links:
            attempt.invoice_links_found.extend(link["url"] for link in analysis.invoice_links)
            if transaction.partner_id:
                self._store_invoice_links(transaction.partner_id, message, analysis.invoice_links)

        if not (
            analysis.is_mail_invoice
            and analysis.mail_invoice_confidence >= self.config.matching.mail_invoice_min_confidence
            and message.html_body
        ):
            return 0

        body_text = message.text_body or html_to_text(message.html_body)
        classification = classify_email(message.subject, message.snippet, message.attachments)
        candidate = ScoreCandidate.from_email_body(
            message, body_text, connection.integration.id, classification
        )
        if not candidate.email_snippet:
            candidate.email_snippet = body_text[:500]
        result = self.scorer.score(
            candidate,
            transaction,
            partner,
            transaction_partner=transaction.partner_name or transaction.name,
        )
        attempt.record_score(result.score)
        if result.score < self.connect_threshold:
            logger.debug(f"{self.name}: {message.id} scored {result.score}%, below threshold")
            return 0

        if self.store.find_html_invoice_file(transaction.user_id, message.id):
            logger.debug(f"{self.name}: {message.id} already converted")
            return 0

        rendered = render_html_to_pdf(
            message.html_body,
            subject=message.subject,
            sender=message.sender,
            date=message.date,
        )
        filename = build_invoice_filename(message)
        hint = MatchHint(
            transaction_id=transaction.id,
            transaction_amount=transaction.amount,
            transaction_date=transaction.date,
            search_strategy=self.name,
            match_confidence=result.score,
        )
        ingested = self.ingestion.ingest(
            transaction.user_id,
            rendered.pdf_bytes,
            filename,
            "application/pdf",
            IngestionSource.from_message(
                message, connection.integration, source_type=HTML_INVOICE_SOURCE
            ),
            match_hint=hint,
        )
        if ingested is None:
            return 0

        file_id = parse_existing_ref(ingested)
        if file_id is None:
            file_id = ingested
        else:
            # Restored files already carry the hint; active duplicates do not
            if transaction.has_rejected(file_id):
                return 0
            existing = self.store.get_file(file_id)
            current = (existing.precision_search_hint or {}) if existing else {}
            if current.get("transaction_id") != transaction.id and not self._write_hint(
                file_id, transaction, result.score
            ):
                return 0

        attempt.connect(file_id)
        logger.info(f"{self.name}: rendered {filename} as {file_id} ({result.score}%)")
        return 1 if result.score >= self.great_threshold else 0

    def _store_invoice_links(
        self, partner_id: str, message: EmailMessage, links: list[dict]
    ) -> None:
        discovered_at = utc_now()
        added = self.store.add_partner_invoice_links(
            partner_id,
            [
                {
                    "url": link["url"],
                    "anchor_text": link.get("anchor_text", ""),
                    "email_message_id": message.id,
                    "email_subject": message.subject,
                    "discovered_at": discovered_at,
                }
                for link in links
            ],
        )
        if added:
            logger.info(f"{self.name}: stored {added} invoice link(s) on partner {partner_id}")


def build_invoice_filename(message: EmailMessage) -> str:
    """"{subject}_{YYYY-MM-DD}.pdf" with the subject reduced to 50 safe characters."""
    subject = re.sub(r"[^a-zA-Z0-9\s]", "", message.subject or "").strip()[:50]
    day = message.date.date().isoformat() if message.date else utc_now()[:10]
    return f"{subject or 'invoice'}_{day}.pdf"


def build_strategies(
    store: StateStore,
    config: Config,
    provider: MailboxProvider,
    ai_service: SearchAIService,
    ingestion: FileIngestionService,
    scorer: MatchScorer | None = None,
) -> dict[str, SearchStrategy]:
    """All strategies keyed by name."""
    scorer = scorer or MatchScorer()
    email_args = (store, config, provider, ai_service, ingestion, scorer)
    return {
        PARTNER_FILES: PartnerFilesStrategy(store, config, scorer),
        AMOUNT_FILES: AmountFilesStrategy(store, config, scorer),
        EMAIL_ATTACHMENT: EmailAttachmentStrategy(*email_args),
        EMAIL_INVOICE: EmailInvoiceStrategy(*email_args),
    }
