"""
Configuration management (SSOT).

This module defines ALL configuration for the receipt matcher.
All config keys are defined here; no other module should invent config keys.

Key invariants:
- Score thresholds are on the 0-100 scale produced by the match scorer
- connect_threshold <= great_threshold <= strong_threshold
- The queue time budget must stay below the host's execution limit
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""

    pass


@dataclass
class MatchingConfig:
    """Score thresholds used by strategies and the orchestrator.

    - connect_threshold: minimum score for writing a hint at all
    - great_threshold / great_match_count: early exit of a mailbox search
    - strong_threshold: early exit of the per-transaction strategy loop
    """

    connect_threshold: int = 60
    great_threshold: int = 75
    great_match_count: int = 2
    strong_threshold: int = 85
    # Candidate window for amount_files (days around transaction date)
    amount_window_days: int = 90
    # Mailbox messages older/newer than this are ignored (days)
    email_window_days: int = 180
    # Hints written by amount_files per transaction
    amount_top_candidates: int = 3
    # Minimum LLM confidence to render a mail body as invoice
    mail_invoice_min_confidence: float = 0.7


@dataclass
class GmailConfig:
    """Gmail REST API settings."""

    api_url: str = "https://gmail.googleapis.com/gmail/v1"
    # Minimum delay between two requests of the same client (milliseconds)
    request_delay_ms: int = 200
    # Random jitter added to the delay (milliseconds)
    jitter_ms: int = 50
    timeout_seconds: int = 30
    max_retries: int = 3
    # Integrations used per user and search
    max_integrations: int = 5
    max_results_per_query: int = 20
    queries_per_strategy: int = 3


@dataclass
class LLMConfig:
    """Local LLM (Ollama) configuration.

    SSOT for LLM settings:
    - enabled: Master switch (default OFF, deterministic queries only)
    - ollama_url: Can be localhost, LAN IP, or remote URL
    - auth_header: Optional auth header for proxied deployments
    - max_concurrent: Concurrency limiter for queue management
    """

    enabled: bool = False
    ollama_url: str = "http://localhost:11434"
    # Format: "Bearer <token>" or "Header-Name: value"
    auth_header: str | None = None
    model: str = "qwen2.5:3b-instruct-q4_K_M"
    timeout_seconds: int = 30
    max_concurrent: int = 2
    # Queries requested per transaction
    max_queries: int = 5
    # Characters of e-mail body sent to the model
    max_body_chars: int = 3000

    def is_remote(self) -> bool:
        """Check if Ollama URL is remote (not localhost)."""
        url_lower = self.ollama_url.lower()
        return not any(
            local in url_lower
            for local in ["localhost", "127.0.0.1", "::1", "host.docker.internal"]
        )


@dataclass
class QueueConfig:
    """Resumable queue settings."""

    # Wall-clock budget per run (seconds); a continuation is written on expiry
    processing_timeout_seconds: int = 240
    transactions_per_batch: int = 20
    max_retries: int = 3
    # Check the pause flag every N transactions
    pause_check_interval: int = 5
    # Process manual/gmail_sync items right after creation
    process_on_create: bool = True
    # Items stuck in processing longer than this are put back to pending
    stale_processing_minutes: int = 30


@dataclass
class StorageConfig:
    """Blob storage settings."""

    blob_root: Path = field(default_factory=lambda: Path("data/blobs"))


@dataclass
class Config:
    """Application configuration (SSOT).

    All configuration is centralized here. No other module should define
    configuration keys or defaults.
    """

    matching: MatchingConfig = field(default_factory=MatchingConfig)
    gmail: GmailConfig = field(default_factory=GmailConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    state_db_path: Path = field(default_factory=lambda: Path("data/state.db"))

    def validate(self) -> list[str]:
        """Validate configuration completeness and consistency.

        Returns:
            List of validation errors (empty if valid)
        """
        errors: list[str] = []
        m = self.matching

        for name in ("connect_threshold", "great_threshold", "strong_threshold"):
            value = getattr(m, name)
            if not 0 <= value <= 100:
                errors.append(f"matching.{name} must be between 0 and 100")

        if m.connect_threshold > m.great_threshold:
            errors.append("matching.great_threshold must be >= connect_threshold")
        if m.great_threshold > m.strong_threshold:
            errors.append("matching.strong_threshold must be >= great_threshold")
        if m.great_match_count < 1:
            errors.append("matching.great_match_count must be >= 1")

        if self.queue.transactions_per_batch < 1:
            errors.append("queue.transactions_per_batch must be >= 1")
        if self.queue.processing_timeout_seconds <= 0:
            errors.append("queue.processing_timeout_seconds must be > 0")
        if self.queue.pause_check_interval < 1:
            errors.append("queue.pause_check_interval must be >= 1")

        if self.gmail.request_delay_ms < 0:
            errors.append("gmail.request_delay_ms must be >= 0")

        if self.llm.enabled and not self.llm.ollama_url:
            errors.append("llm.ollama_url is required when LLM is enabled")

        return errors


def load_config(config_path: Path) -> Config:
    """
    Load configuration from YAML file.

    Environment variables can override config values:
    - RECEIPT_MATCHER_DB (state database path)
    - RECEIPT_MATCHER_BLOB_ROOT (blob storage directory)
    - RECEIPT_MATCHER_LLM_ENABLED (true/false)
    - OLLAMA_URL
    - OLLAMA_MODEL
    - OLLAMA_TIMEOUT (request timeout in seconds)
    - OLLAMA_AUTH_HEADER
    - GMAIL_API_URL
    """
    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    else:
        data = {}

    matching_data = data.get("matching", {})
    matching = MatchingConfig(
        connect_threshold=matching_data.get("connect_threshold", 60),
        great_threshold=matching_data.get("great_threshold", 75),
        great_match_count=matching_data.get("great_match_count", 2),
        strong_threshold=matching_data.get("strong_threshold", 85),
        amount_window_days=matching_data.get("amount_window_days", 90),
        email_window_days=matching_data.get("email_window_days", 180),
        amount_top_candidates=matching_data.get("amount_top_candidates", 3),
        mail_invoice_min_confidence=matching_data.get("mail_invoice_min_confidence", 0.7),
    )

    gmail_data = data.get("gmail", {})
    gmail = GmailConfig(
        api_url=os.environ.get(
            "GMAIL_API_URL", gmail_data.get("api_url", "https://gmail.googleapis.com/gmail/v1")
        ),
        request_delay_ms=gmail_data.get("request_delay_ms", 200),
        jitter_ms=gmail_data.get("jitter_ms", 50),
        timeout_seconds=gmail_data.get("timeout_seconds", 30),
        max_retries=gmail_data.get("max_retries", 3),
        max_integrations=gmail_data.get("max_integrations", 5),
        max_results_per_query=gmail_data.get("max_results_per_query", 20),
        queries_per_strategy=gmail_data.get("queries_per_strategy", 3),
    )

    llm_data = data.get("llm", {})
    llm_enabled_env = os.environ.get("RECEIPT_MATCHER_LLM_ENABLED", "").lower()
    llm_enabled = llm_data.get("enabled", False)
    if llm_enabled_env == "true":
        llm_enabled = True
    elif llm_enabled_env == "false":
        llm_enabled = False

    llm = LLMConfig(
        enabled=llm_enabled,
        ollama_url=os.environ.get(
            "OLLAMA_URL", llm_data.get("ollama_url", "http://localhost:11434")
        ),
        auth_header=os.environ.get("OLLAMA_AUTH_HEADER", llm_data.get("auth_header")),
        model=os.environ.get("OLLAMA_MODEL", llm_data.get("model", "qwen2.5:3b-instruct-q4_K_M")),
        timeout_seconds=int(os.environ.get(
            "OLLAMA_TIMEOUT", llm_data.get("timeout_seconds", 30)
        )),
        max_concurrent=llm_data.get("max_concurrent", 2),
        max_queries=llm_data.get("max_queries", 5),
        max_body_chars=llm_data.get("max_body_chars", 3000),
    )

    queue_data = data.get("queue", {})
    queue = QueueConfig(
        processing_timeout_seconds=queue_data.get("processing_timeout_seconds", 240),
        transactions_per_batch=queue_data.get("transactions_per_batch", 20),
        max_retries=queue_data.get("max_retries", 3),
        pause_check_interval=queue_data.get("pause_check_interval", 5),
        process_on_create=queue_data.get("process_on_create", True),
        stale_processing_minutes=queue_data.get("stale_processing_minutes", 30),
    )

    storage_data = data.get("storage", {})
    storage = StorageConfig(
        blob_root=Path(
            os.environ.get(
                "RECEIPT_MATCHER_BLOB_ROOT", storage_data.get("blob_root", "data/blobs")
            )
        ),
    )

    state_db = os.environ.get("RECEIPT_MATCHER_DB", data.get("state_db_path", "data/state.db"))

    config = Config(
        matching=matching,
        gmail=gmail,
        llm=llm,
        queue=queue,
        storage=storage,
        state_db_path=Path(state_db),
    )

    errors = config.validate()
    if errors:
        raise ConfigValidationError("; ".join(errors))

    return config


def create_default_config(config_path: Path) -> None:
    """Create a default configuration file."""
    default_config = """# Receipt Matcher Configuration
#
# Scores are on a 0-100 scale.
# connect_threshold <= great_threshold <= strong_threshold

matching:
  connect_threshold: 60          # Minimum score to write a match hint
  great_threshold: 75            # Score counted as a "great" mailbox match
  great_match_count: 2           # Stop a mailbox search after this many great matches
  strong_threshold: 85           # Stop trying further strategies for a transaction
  amount_window_days: 90         # Candidate window for amount-based file search
  email_window_days: 180         # Ignore e-mails further away than this
  amount_top_candidates: 3       # Hints written by the amount strategy
  mail_invoice_min_confidence: 0.7

gmail:
  api_url: "https://gmail.googleapis.com/gmail/v1"
  request_delay_ms: 200          # Minimum delay between requests per client
  jitter_ms: 50
  timeout_seconds: 30
  max_retries: 3                 # Retries for 429/5xx (never for 401)
  max_integrations: 5
  max_results_per_query: 20
  queries_per_strategy: 3

# Local LLM settings (Ollama)
llm:
  enabled: false                 # Deterministic queries only when disabled
  ollama_url: "http://localhost:11434"
  auth_header: null              # Optional auth header for proxied deployments
  model: "qwen2.5:3b-instruct-q4_K_M"
  timeout_seconds: 30
  max_concurrent: 2
  max_queries: 5
  max_body_chars: 3000

queue:
  processing_timeout_seconds: 240  # Wall-clock budget per run
  transactions_per_batch: 20
  max_retries: 3
  pause_check_interval: 5          # Check pause flag every N transactions
  process_on_create: true          # Run manual/gmail_sync items immediately
  stale_processing_minutes: 30

storage:
  blob_root: "data/blobs"

# State database path
state_db_path: "data/state.db"
"""

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        f.write(default_config)
