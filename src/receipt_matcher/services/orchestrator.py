"""
Per-transaction search orchestration.

Runs the strategies of a queue item in order for one transaction, records
every attempt in the transaction's search audit, and stops early once the
transaction is complete or a strong match was connected.
"""

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .strategies import DEFAULT_STRATEGIES, SearchAttempt, SearchStrategy

if TYPE_CHECKING:
    from ..config import Config
    from ..state_store import QueueItemRecord, StateStore, TransactionRecord

logger = logging.getLogger(__name__)


@dataclass
class TransactionSearchOutcome:
    """Summary of all attempts for one transaction."""

    transaction_id: str
    attempts: list[SearchAttempt] = field(default_factory=list)
    files_connected: int = 0
    best_score: int | None = None
    stopped_reason: str | None = None  # "complete", "strong_match" or None
    errors: list[str] = field(default_factory=list)

    @property
    def had_match(self) -> bool:
        return self.files_connected > 0


class SearchOrchestrator:
    """
    Executes strategies for a transaction.

    Usage:
        orchestrator = SearchOrchestrator(store, strategies, config)
        outcome = orchestrator.search_transaction(transaction, queue_item)
    """

    def __init__(
        self,
        store: "StateStore",
        strategies: dict[str, SearchStrategy],
        config: "Config",
    ):
        self.store = store
        self.strategies = strategies
        self.strong_threshold = config.matching.strong_threshold

    def search_transaction(
        self,
        transaction: "TransactionRecord",
        queue_item: "QueueItemRecord",
    ) -> TransactionSearchOutcome:
        """
        Run the queue item's strategies for one transaction.

        Args:
            transaction: Transaction to search for
            queue_item: Queue item driving the search (strategy list, audit key)

        Returns:
            TransactionSearchOutcome
        """
        outcome = TransactionSearchOutcome(transaction_id=transaction.id)
        names = queue_item.strategies or DEFAULT_STRATEGIES

        for name in names:
            current = self.store.get_transaction(transaction.id)
            if current is None or current.is_complete:
                logger.info(f"Transaction {transaction.id} complete, skipping remaining strategies")
                outcome.stopped_reason = "complete"
                break
            transaction = current

            strategy = self.strategies.get(name)
            if strategy is None:
                outcome.errors.append(f"{transaction.id}/{name}: unknown strategy")
                logger.warning(f"Unknown strategy {name!r} on queue item #{queue_item.id}")
                continue

            attempt = strategy.execute(transaction)
            self.store.log_search_attempt(
                transaction.id,
                queue_item.id,
                queue_item.triggered_by.value,
                attempt.to_dict(),
            )
            outcome.attempts.append(attempt)
            outcome.files_connected += len(attempt.file_ids_connected)
            if attempt.best_match_score is not None and (
                outcome.best_score is None or attempt.best_match_score > outcome.best_score
            ):
                outcome.best_score = attempt.best_match_score
            if attempt.error:
                outcome.errors.append(f"{transaction.id}/{name}: {attempt.error}")

            logger.debug(
                f"{name} for {transaction.id}: {len(attempt.file_ids_connected)} connected, "
                f"best={attempt.best_match_score}"
            )

            if (
                attempt.file_ids_connected
                and attempt.best_match_score is not None
                and attempt.best_match_score >= self.strong_threshold
            ):
                logger.info(
                    f"Strong match ({attempt.best_match_score}%) for {transaction.id}, "
                    f"skipping remaining strategies"
                )
                outcome.stopped_reason = "strong_match"
                break

        return outcome
