"""
Resumable Search Queue Service.

Drives the search orchestrator over persisted queue items.

Features:
- Atomic claim of the oldest pending item per tick
- Immediate processing of manual/gmail_sync items on creation
- Wall-clock budget per run with cursor-based continuation
- Requeue on error up to max_retries, then terminal failure
- Cooperative pause (queue item or owning mailbox integration)

Continuations of scheduled items are updated in place and picked up by the
next tick. All other items are deleted and re-inserted so the creation
path runs again with a fresh time budget; this happens in a loop inside
handle_created, never by recursion.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from ..config import Config
from ..state_store.sqlite_store import (
    QueueItemRecord,
    QueueScope,
    QueueStatus,
    StateStore,
    TransactionRecord,
    TriggerSource,
    utc_now,
)
from .orchestrator import SearchOrchestrator
from .strategies import DEFAULT_STRATEGIES

logger = logging.getLogger(__name__)


class TransactionNotFoundError(Exception):
    """Queue item points at a missing transaction or one of another user."""

    pass


class InvalidQueueTransitionError(Exception):
    """Requested status change is not allowed by the queue state machine."""

    def __init__(self, item_id: int, current: QueueStatus, target: QueueStatus):
        self.item_id = item_id
        self.current = current
        self.target = target
        super().__init__(
            f"Queue item #{item_id} cannot move from {current.value} to {target.value}"
        )


@dataclass
class QueueRunResult:
    """Outcome of processing one queue item once."""

    item_id: int
    status: QueueStatus
    transactions_processed: int = 0  # in this run
    continuation_id: int | None = None  # set when the item was re-inserted
    timed_out: bool = False
    error: str | None = None


@dataclass
class _Progress:
    """Counters and cursor carried across runs of a queue item."""

    processed: int
    with_matches: int
    files_connected: int
    cursor: str | None
    errors: list[str] = field(default_factory=list)
    processed_in_run: int = 0

    @classmethod
    def from_item(cls, item: QueueItemRecord) -> "_Progress":
        return cls(
            processed=item.transactions_processed,
            with_matches=item.transactions_with_matches,
            files_connected=item.total_files_connected,
            cursor=item.last_processed_transaction_id,
            errors=list(item.errors),
        )

    def fields(self) -> dict[str, Any]:
        return {
            "transactions_processed": self.processed,
            "transactions_with_matches": self.with_matches,
            "total_files_connected": self.files_connected,
            "last_processed_transaction_id": self.cursor,
            "errors": self.errors,
        }


class SearchQueueController:
    """
    Service for the resumable search queue.

    Usage:
        controller = SearchQueueController(store, orchestrator, config)
        controller.enqueue(user_id, QueueScope.ALL_INCOMPLETE)
        controller.tick()
    """

    def __init__(
        self,
        store: StateStore,
        orchestrator: SearchOrchestrator,
        config: Config,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the queue controller.

        Args:
            store: State store holding queue items and transactions
            orchestrator: Per-transaction strategy runner
            config: Application configuration (queue section)
            clock: Monotonic seconds source for the time budget
        """
        self.store = store
        self.orchestrator = orchestrator
        self.config = config
        self.queue_config = config.queue
        self.clock = clock

    # === Triggers ===

    def enqueue(
        self,
        user_id: str,
        scope: QueueScope | str,
        transaction_id: str | None = None,
        triggered_by: TriggerSource | str = TriggerSource.MANUAL,
        strategies: list[str] | None = None,
        max_retries: int | None = None,
        integration_id: str | None = None,
    ) -> int:
        """
        Create a queue item.

        Non-scheduled items are processed right away when
        queue.process_on_create is enabled.

        Returns:
            Id of the created item
        """
        scope = QueueScope(scope)
        triggered_by = TriggerSource(triggered_by)
        if scope == QueueScope.SINGLE_TRANSACTION and not transaction_id:
            raise ValueError("single_transaction scope requires a transaction_id")

        if scope == QueueScope.SINGLE_TRANSACTION:
            to_process = 1
        else:
            to_process = self.store.count_incomplete_transactions(user_id)

        item_id = self.store.create_queue_item(
            user_id=user_id,
            scope=scope,
            strategies=list(strategies or DEFAULT_STRATEGIES),
            triggered_by=triggered_by,
            transaction_id=transaction_id,
            integration_id=integration_id,
            transactions_to_process=to_process,
            max_retries=(
                max_retries if max_retries is not None else self.queue_config.max_retries
            ),
        )
        logger.info(
            f"Queued search #{item_id} ({scope.value}, {triggered_by.value}, "
            f"{to_process} transaction(s))"
        )

        if triggered_by != TriggerSource.SCHEDULED and self.queue_config.process_on_create:
            self.handle_created(item_id)
        return item_id

    def handle_created(self, item_id: int) -> list[QueueRunResult]:
        """
        Process a newly created non-scheduled item and its continuations.

        Returns:
            One result per run (the item, then each re-inserted continuation)
        """
        results: list[QueueRunResult] = []
        next_id: int | None = item_id

        while next_id is not None:
            item = self.store.get_queue_item(next_id)
            if item is None or item.triggered_by == TriggerSource.SCHEDULED:
                break
            if not self.store.claim_queue_item(next_id):
                logger.debug(f"Queue item #{next_id} already claimed")
                break

            result = self.process_item(self.store.get_queue_item(next_id))
            results.append(result)
            next_id = result.continuation_id

        return results

    def tick(self) -> int | None:
        """
        Scheduler entry point: recover stale items, claim and process one.

        Returns:
            Id of the processed item, or None if nothing was pending
        """
        cutoff = datetime.now(timezone.utc) - timedelta(
            minutes=self.queue_config.stale_processing_minutes
        )
        recovered = self.store.reset_stale_queue_items(
            cutoff.isoformat().replace("+00:00", "Z")
        )
        if recovered:
            logger.warning(f"Reset {recovered} stale processing queue item(s) to pending")

        item = self.store.claim_next_pending_queue_item()
        if item is None:
            logger.debug("No pending queue items")
            return None

        result = self.process_item(item)
        if result.continuation_id is not None and self.queue_config.process_on_create:
            self.handle_created(result.continuation_id)
        return item.id

    # === Operator controls ===

    def pause(self, item_id: int) -> bool:
        """Pause a pending or running item; it keeps its cursor."""
        item = self.store.get_queue_item(item_id)
        if item is None:
            return False
        self._check_transition(item, QueueStatus.PAUSED)
        self.store.update_queue_item(item_id, status=QueueStatus.PAUSED)
        logger.info(f"Paused queue item #{item_id}")
        return True

    def resume(self, item_id: int) -> bool:
        """Put a paused item back to pending for the next tick."""
        item = self.store.get_queue_item(item_id)
        if item is None:
            return False
        self._check_transition(item, QueueStatus.PENDING)
        self.store.update_queue_item(item_id, status=QueueStatus.PENDING, started_at=None)
        logger.info(f"Resumed queue item #{item_id}")
        return True

    # === Processing ===

    def process_item(self, item: QueueItemRecord) -> QueueRunResult:
        """
        Run a claimed item until done, paused, or out of time.

        Args:
            item: Queue item in processing state

        Returns:
            QueueRunResult describing the persisted outcome
        """
        started = self.clock()
        progress = _Progress.from_item(item)
        logger.info(
            f"Processing queue item #{item.id} ({item.scope.value}, {item.triggered_by.value}, "
            f"{progress.processed}/{item.transactions_to_process} done)"
        )

        if self._should_pause(item):
            return self._pause(item, progress)

        try:
            if item.scope == QueueScope.SINGLE_TRANSACTION:
                self._process_transaction(item, self._load_single(item), progress)
                outcome = "done"
            else:
                outcome = self._process_incomplete(item, progress, started)
        except Exception as e:
            logger.error(f"Queue item #{item.id} failed: {e}")
            return self._handle_error(item, progress, e)

        if outcome == "paused":
            return self._pause(item, progress)
        if outcome == "timeout":
            return self._continue(item, progress)
        return self._complete(item, progress)

    def _load_single(self, item: QueueItemRecord) -> TransactionRecord:
        transaction = (
            self.store.get_transaction(item.transaction_id) if item.transaction_id else None
        )
        if transaction is None or transaction.user_id != item.user_id:
            raise TransactionNotFoundError(
                f"Transaction {item.transaction_id} not found or access denied"
            )
        return transaction

    def _process_incomplete(
        self, item: QueueItemRecord, progress: _Progress, started: float
    ) -> str:
        """Page through incomplete transactions; returns "done", "timeout" or "paused"."""
        batch_size = self.queue_config.transactions_per_batch
        budget = self.queue_config.processing_timeout_seconds
        since_pause_check = 0

        while True:
            page = self.store.get_incomplete_transactions(
                item.user_id, limit=batch_size, after_transaction_id=progress.cursor
            )
            if not page:
                return "done"

            for transaction in page:
                if progress.processed_in_run > 0 and self.clock() - started >= budget:
                    logger.info(
                        f"Queue item #{item.id} out of time after "
                        f"{progress.processed_in_run} transaction(s), saving progress"
                    )
                    return "timeout"
                if since_pause_check >= self.queue_config.pause_check_interval:
                    since_pause_check = 0
                    if self._should_pause(item):
                        return "paused"

                self._process_transaction(item, transaction, progress)
                since_pause_check += 1

            if len(page) < batch_size:
                return "done"

    def _process_transaction(
        self, item: QueueItemRecord, transaction: TransactionRecord, progress: _Progress
    ) -> None:
        try:
            outcome = self.orchestrator.search_transaction(transaction, item)
            progress.errors.extend(outcome.errors)
            progress.files_connected += outcome.files_connected
            if outcome.had_match:
                progress.with_matches += 1
        except Exception as e:
            message = f"Failed to process tx {transaction.id}: {e}"
            logger.error(message)
            progress.errors.append(message)

        progress.processed += 1
        progress.processed_in_run += 1
        progress.cursor = transaction.id

    def _should_pause(self, item: QueueItemRecord) -> bool:
        current = self.store.get_queue_item(item.id)
        if current is not None and current.status == QueueStatus.PAUSED:
            return True
        if item.integration_id:
            integration = self.store.get_email_integration(item.integration_id)
            if integration is not None and integration.is_paused:
                logger.info(f"Integration {item.integration_id} is paused")
                return True
        return False

    # === Outcomes ===

    def _check_transition(self, item: QueueItemRecord, target: QueueStatus) -> None:
        if not item.status.can_transition_to(target):
            raise InvalidQueueTransitionError(item.id, item.status, target)

    def _pause(self, item: QueueItemRecord, progress: _Progress) -> QueueRunResult:
        self.store.update_queue_item(item.id, status=QueueStatus.PAUSED, **progress.fields())
        logger.info(f"Queue item #{item.id} paused at {progress.processed} transaction(s)")
        return QueueRunResult(
            item_id=item.id,
            status=QueueStatus.PAUSED,
            transactions_processed=progress.processed_in_run,
        )

    def _complete(self, item: QueueItemRecord, progress: _Progress) -> QueueRunResult:
        self._check_transition(item, QueueStatus.COMPLETED)
        self.store.update_queue_item(
            item.id,
            status=QueueStatus.COMPLETED,
            completed_at=utc_now(),
            **progress.fields(),
        )
        logger.info(
            f"Queue item #{item.id} completed: {progress.files_connected} files connected, "
            f"{progress.with_matches}/{progress.processed} transactions matched"
        )
        return QueueRunResult(
            item_id=item.id,
            status=QueueStatus.COMPLETED,
            transactions_processed=progress.processed_in_run,
        )

    def _continue(self, item: QueueItemRecord, progress: _Progress) -> QueueRunResult:
        self._check_transition(item, QueueStatus.PENDING)
        result = QueueRunResult(
            item_id=item.id,
            status=QueueStatus.PENDING,
            transactions_processed=progress.processed_in_run,
            timed_out=True,
        )

        if item.triggered_by == TriggerSource.SCHEDULED:
            self.store.update_queue_item(
                item.id, status=QueueStatus.PENDING, started_at=None, **progress.fields()
            )
            logger.info(
                f"Saved progress of #{item.id} ({progress.processed} processed), "
                f"next tick continues"
            )
        else:
            result.continuation_id = self.store.recreate_queue_item(
                item, retry_count=0, **progress.fields()
            )
            logger.info(
                f"Created continuation #{result.continuation_id} of #{item.id} "
                f"({progress.processed} processed)"
            )
        return result

    def _handle_error(
        self, item: QueueItemRecord, progress: _Progress, error: Exception
    ) -> QueueRunResult:
        message = str(error) or type(error).__name__
        result = QueueRunResult(
            item_id=item.id,
            status=QueueStatus.PENDING,
            transactions_processed=progress.processed_in_run,
            error=message,
        )

        if item.retry_count < item.max_retries:
            retry_count = item.retry_count + 1
            if item.triggered_by == TriggerSource.SCHEDULED:
                self.store.update_queue_item(
                    item.id,
                    status=QueueStatus.PENDING,
                    started_at=None,
                    retry_count=retry_count,
                    last_error=message,
                    **progress.fields(),
                )
            else:
                result.continuation_id = self.store.recreate_queue_item(
                    item, retry_count=retry_count, last_error=message, **progress.fields()
                )
            logger.warning(
                f"Queue item #{item.id} will retry ({retry_count}/{item.max_retries}): {message}"
            )
            return result

        self.store.update_queue_item(
            item.id,
            status=QueueStatus.FAILED,
            last_error=message,
            completed_at=utc_now(),
            **progress.fields(),
        )
        logger.error(f"Queue item #{item.id} failed after {item.retry_count} retries: {message}")
        result.status = QueueStatus.FAILED
        return result
