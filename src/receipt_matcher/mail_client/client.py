"""
Gmail REST API client implementation.
"""

import logging
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .messages import EmailMessage, decode_base64url

if TYPE_CHECKING:
    from ..config import Config
    from ..state_store import EmailIntegrationRecord, StateStore

logger = logging.getLogger(__name__)


class MailboxError(Exception):
    """Base exception for mailbox client errors."""
    pass


class MailboxAuthError(MailboxError):
    """Access token refused (HTTP 401); the integration needs re-authorization."""
    pass


class MailboxAPIError(MailboxError):
    """API returned an error response."""
    def __init__(self, status_code: int, message: str, response_body: Optional[str] = None):
        self.status_code = status_code
        self.message = message
        self.response_body = response_body
        super().__init__(f"Gmail API error {status_code}: {message}")


class MailboxConnectionError(MailboxError):
    """Failed to reach the mail API."""
    pass


@dataclass
class MessageSearchResult:
    """One page of message ids."""
    ids: list[str] = field(default_factory=list)
    next_page_token: Optional[str] = None


class GmailClient:
    """
    Client for the Gmail REST API (read-only).

    Features:
    - Search message ids by Gmail query
    - Fetch full messages and attachment bytes
    - Automatic retry with backoff on 429/5xx (never on 401)
    - Per-instance throttle: one minimum interval between any two calls
    """

    DEFAULT_BASE_URL = "https://gmail.googleapis.com/gmail/v1"
    DEFAULT_TIMEOUT = 30

    def __init__(
        self,
        access_token: str,
        base_url: str = DEFAULT_BASE_URL,
        min_request_interval: float = 0.2,
        timeout: int = DEFAULT_TIMEOUT,
        max_retries: int = 3,
        backoff_factor: float = 0.5,
        jitter: float = 0.05,
    ):
        """
        Initialize Gmail client.

        Args:
            access_token: OAuth access token of the mailbox
            base_url: API root, e.g. "https://gmail.googleapis.com/gmail/v1"
            min_request_interval: Minimum seconds between two requests
            timeout: Request timeout in seconds
            max_retries: Maximum retry attempts for transient failures
            backoff_factor: Backoff factor for retries
            jitter: Maximum random seconds added to each throttle wait
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.min_request_interval = min_request_interval
        self.jitter = jitter

        self._throttle_lock = threading.Lock()
        self._last_request_at: Optional[float] = None

        self.session = requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
        })

        retry_strategy = Retry(
            total=max_retries,
            backoff_factor=backoff_factor,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["GET"],
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    def _throttle(self) -> None:
        """Sleep until min_request_interval has passed since the previous call."""
        with self._throttle_lock:
            now = time.monotonic()
            if self._last_request_at is not None:
                elapsed = now - self._last_request_at
                if elapsed < self.min_request_interval:
                    wait = self.min_request_interval - elapsed
                    if self.jitter:
                        wait += random.uniform(0, self.jitter)
                    time.sleep(wait)
            self._last_request_at = time.monotonic()

    def _request(self, endpoint: str, params: Optional[dict] = None) -> dict:
        """Make a throttled GET request with error mapping."""
        self._throttle()
        url = f"{self.base_url}{endpoint}"

        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
        except requests.exceptions.ConnectionError as e:
            raise MailboxConnectionError(f"Failed to connect to Gmail at {self.base_url}: {e}")
        except requests.exceptions.Timeout as e:
            raise MailboxConnectionError(f"Request to Gmail timed out: {e}")
        except requests.exceptions.RequestException as e:
            raise MailboxError(f"Request failed: {e}")

        if response.status_code == 401:
            raise MailboxAuthError("Gmail rejected the access token (401)")
        if not response.ok:
            raise MailboxAPIError(
                status_code=response.status_code,
                message=response.reason or "",
                response_body=response.text,
            )
        return response.json()

    def search_messages(
        self,
        query: str,
        page_token: Optional[str] = None,
        max_results: int = 20,
    ) -> MessageSearchResult:
        """
        Search message ids.

        Args:
            query: Gmail search string (see build_search_query)
            page_token: Token from a previous page
            max_results: Page size

        Returns:
            MessageSearchResult with ids and next page token
        """
        params = {"q": query, "maxResults": max_results}
        if page_token:
            params["pageToken"] = page_token
        data = self._request("/users/me/messages", params=params)
        return MessageSearchResult(
            ids=[m["id"] for m in data.get("messages", [])],
            next_page_token=data.get("nextPageToken"),
        )

    def get_message(self, message_id: str) -> EmailMessage:
        """Fetch and parse a full message."""
        data = self._request(f"/users/me/messages/{message_id}", params={"format": "full"})
        return EmailMessage.from_api_response(data)

    def get_attachment_bytes(self, message_id: str, attachment_id: str) -> bytes:
        """Download attachment content."""
        data = self._request(f"/users/me/messages/{message_id}/attachments/{attachment_id}")
        return decode_base64url(data.get("data", ""))


@dataclass
class MailboxConnection:
    """A ready-to-use client and the integration it belongs to."""
    client: GmailClient
    integration: "EmailIntegrationRecord"


class MailboxProvider:
    """
    Hands out mailbox clients for a user's usable integrations.

    Integrations with an expired token are flagged needs_reauth and skipped;
    refreshing tokens is left to the integration owner.
    """

    def __init__(
        self,
        store: "StateStore",
        config: "Config",
        client_factory: Optional[Callable[[str], GmailClient]] = None,
    ):
        self.store = store
        self.config = config
        self.client_factory = client_factory or self._default_client

    def _default_client(self, access_token: str) -> GmailClient:
        gmail = self.config.gmail
        return GmailClient(
            access_token=access_token,
            base_url=gmail.api_url,
            min_request_interval=gmail.request_delay_ms / 1000,
            timeout=gmail.timeout_seconds,
            max_retries=gmail.max_retries,
            jitter=gmail.jitter_ms / 1000,
        )

    def get_clients(self, user_id: str) -> list[MailboxConnection]:
        """Clients for active, authorized, unpaused integrations (capped)."""
        integrations = self.store.get_usable_email_integrations(
            user_id, limit=self.config.gmail.max_integrations
        )
        connections = []
        for integration in integrations:
            if not integration.access_token:
                continue
            if _is_expired(integration.token_expires_at):
                logger.info(f"Integration {integration.id} token expired, flagging for reauth")
                self.store.mark_integration_needs_reauth(integration.id, "Access token expired")
                continue
            connections.append(
                MailboxConnection(
                    client=self.client_factory(integration.access_token),
                    integration=integration,
                )
            )
        return connections

    def mark_needs_reauth(self, integration_id: str, error: str) -> None:
        """Flag an integration after the API refused its token."""
        logger.warning(f"Integration {integration_id} needs reauth: {error}")
        self.store.mark_integration_needs_reauth(integration_id, error)

    def is_paused(self, integration_id: str) -> bool:
        integration = self.store.get_email_integration(integration_id)
        return bool(integration and integration.is_paused)


def _is_expired(expires_at: Optional[str]) -> bool:
    if not expires_at:
        return False
    expiry = datetime.fromisoformat(expires_at.replace("Z", "+00:00"))
    if expiry.tzinfo is None:
        expiry = expiry.replace(tzinfo=timezone.utc)
    return expiry < datetime.now(timezone.utc)
