"""
Gmail mailbox client.

Provides:
- Message search, full message fetch and attachment download
- Per-client request throttle and retry/backoff on 429/5xx
- Distinct auth error (401) so callers flag the integration instead of retrying
- MIME tree parsing and keyword classification of mails
"""

from .client import (
    GmailClient,
    MailboxAPIError,
    MailboxAuthError,
    MailboxConnection,
    MailboxConnectionError,
    MailboxError,
    MailboxProvider,
    MessageSearchResult,
)
from .messages import (
    EmailAttachment,
    EmailClassification,
    EmailMessage,
    build_search_query,
    classify_email,
    is_email_date_in_range,
)

__all__ = [
    "GmailClient",
    "MailboxProvider",
    "MailboxConnection",
    "MessageSearchResult",
    "MailboxError",
    "MailboxAuthError",
    "MailboxAPIError",
    "MailboxConnectionError",
    "EmailMessage",
    "EmailAttachment",
    "EmailClassification",
    "classify_email",
    "build_search_query",
    "is_email_date_in_range",
]
