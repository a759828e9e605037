"""
Search services: strategies, per-transaction orchestration and the
resumable queue controller.
"""

from .orchestrator import SearchOrchestrator, TransactionSearchOutcome
from .search_queue import (
    InvalidQueueTransitionError,
    QueueRunResult,
    SearchQueueController,
    TransactionNotFoundError,
)
from .strategies import (
    AMOUNT_FILES,
    DEFAULT_STRATEGIES,
    EMAIL_ATTACHMENT,
    EMAIL_INVOICE,
    PARTNER_FILES,
    AmountFilesStrategy,
    EmailAttachmentStrategy,
    EmailInvoiceStrategy,
    PartnerFilesStrategy,
    SearchAttempt,
    SearchStrategy,
    build_strategies,
)

__all__ = [
    "SearchAttempt",
    "SearchStrategy",
    "PartnerFilesStrategy",
    "AmountFilesStrategy",
    "EmailAttachmentStrategy",
    "EmailInvoiceStrategy",
    "build_strategies",
    "DEFAULT_STRATEGIES",
    "PARTNER_FILES",
    "AMOUNT_FILES",
    "EMAIL_ATTACHMENT",
    "EMAIL_INVOICE",
    "SearchOrchestrator",
    "TransactionSearchOutcome",
    "SearchQueueController",
    "QueueRunResult",
    "TransactionNotFoundError",
    "InvalidQueueTransitionError",
]
