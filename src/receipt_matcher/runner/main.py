"""
CLI main entry point.
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from ..config import Config, create_default_config, load_config
from ..ingestion import FileIngestionService, LocalBlobStore
from ..mail_client import MailboxProvider
from ..search_ai import SearchAIService
from ..services import (
    DEFAULT_STRATEGIES,
    InvalidQueueTransitionError,
    SearchOrchestrator,
    SearchQueueController,
    build_strategies,
)
from ..state_store import QueueScope, StateStore, TriggerSource

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def create_cli() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="receipt-matcher",
        description="Find and propose receipts for incomplete bank transactions",
    )

    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=Path("config.yaml"),
        help="Path to config file (default: config.yaml)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # init-config command
    init_parser = subparsers.add_parser("init-config", help="Write a default config file")
    init_parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite an existing config file",
    )

    # import-transactions command
    import_parser = subparsers.add_parser(
        "import-transactions", help="Load transactions from a JSON file"
    )
    import_parser.add_argument("file", type=Path, help="JSON list of transactions")

    # enqueue command
    enqueue_parser = subparsers.add_parser("enqueue", help="Create a search queue item")
    enqueue_parser.add_argument("--user", required=True, help="User id")
    enqueue_parser.add_argument(
        "--scope",
        choices=[s.value for s in QueueScope],
        default=QueueScope.ALL_INCOMPLETE.value,
        help="What to search for (default: all_incomplete)",
    )
    enqueue_parser.add_argument(
        "--transaction-id",
        help="Transaction id (required for single_transaction)",
    )
    enqueue_parser.add_argument(
        "--triggered-by",
        choices=[t.value for t in TriggerSource],
        default=TriggerSource.MANUAL.value,
        help="Trigger source (default: manual)",
    )
    enqueue_parser.add_argument(
        "--strategies",
        type=str,
        default=",".join(DEFAULT_STRATEGIES),
        help="Comma-separated strategies in execution order",
    )
    enqueue_parser.add_argument(
        "--integration-id",
        help="Owning mailbox integration (pausing it pauses the item)",
    )

    # tick command
    tick_parser = subparsers.add_parser("tick", help="Claim and process pending queue items")
    tick_parser.add_argument(
        "--max-items",
        type=int,
        default=1,
        help="Process up to this many items (default: 1)",
    )

    # status command
    subparsers.add_parser("status", help="Show queue status and statistics")

    # pause/resume commands
    pause_parser = subparsers.add_parser("pause", help="Pause a queue item")
    pause_parser.add_argument("item_id", type=int, help="Queue item id")
    resume_parser = subparsers.add_parser("resume", help="Resume a paused queue item")
    resume_parser.add_argument("item_id", type=int, help="Queue item id")

    return parser


def build_controller(config: Config, store: StateStore) -> tuple[SearchQueueController, SearchAIService]:
    """Wire strategies, orchestrator and queue controller from config."""
    ai_service = SearchAIService(config.llm)
    strategies = build_strategies(
        store=store,
        config=config,
        provider=MailboxProvider(store, config),
        ai_service=ai_service,
        ingestion=FileIngestionService(store, LocalBlobStore(config.storage.blob_root)),
    )
    orchestrator = SearchOrchestrator(store, strategies, config)
    return SearchQueueController(store, orchestrator, config), ai_service


def cmd_init_config(config_path: Path, force: bool) -> int:
    """Write the default config template."""
    if config_path.exists() and not force:
        print(f"❌ {config_path} already exists (use --force to overwrite)")
        return 1
    create_default_config(config_path)
    print(f"✓ Wrote {config_path}")
    return 0


def cmd_import_transactions(config: Config, file: Path) -> int:
    """Upsert transactions from a JSON file."""
    try:
        data = json.loads(file.read_text())
    except (OSError, json.JSONDecodeError) as e:
        print(f"❌ Could not read {file}: {e}")
        return 1

    records = data.get("transactions", []) if isinstance(data, dict) else data
    store = StateStore(config.state_db_path)

    imported = 0
    for record in records:
        try:
            store.upsert_transaction(
                transaction_id=record["id"],
                user_id=record["user_id"],
                amount=int(record["amount"]),
                date=record["date"],
                name=record.get("name", ""),
                currency=record.get("currency", "EUR"),
                description=record.get("description"),
                reference=record.get("reference"),
                partner_name=record.get("partner_name"),
                partner_id=record.get("partner_id"),
                partner_iban=record.get("partner_iban"),
                is_complete=bool(record.get("is_complete", False)),
                file_ids=record.get("file_ids"),
                rejected_file_ids=record.get("rejected_file_ids"),
            )
            imported += 1
        except (KeyError, TypeError, ValueError) as e:
            print(f"  ⚠ Skipping record {record!r}: {e}")

    print(f"✓ Imported {imported} transaction(s)")
    return 0


def cmd_enqueue(
    config: Config,
    user_id: str,
    scope: str,
    transaction_id: str | None,
    triggered_by: str,
    strategies: str,
    integration_id: str | None,
) -> int:
    """Create a queue item (processed immediately unless scheduled)."""
    names = [s.strip() for s in strategies.split(",") if s.strip()]
    unknown = [s for s in names if s not in DEFAULT_STRATEGIES]
    if unknown:
        print(f"❌ Unknown strategies: {', '.join(unknown)}")
        return 1

    store = StateStore(config.state_db_path)
    controller, ai_service = build_controller(config, store)
    try:
        item_id = controller.enqueue(
            user_id=user_id,
            scope=scope,
            transaction_id=transaction_id,
            triggered_by=triggered_by,
            strategies=names,
            integration_id=integration_id,
        )
    except ValueError as e:
        print(f"❌ {e}")
        return 1
    finally:
        ai_service.close()

    print(f"✓ Queued search #{item_id}")
    return 0


def cmd_tick(config: Config, max_items: int) -> int:
    """Run scheduler ticks until nothing is pending or max_items is reached."""
    store = StateStore(config.state_db_path)
    controller, ai_service = build_controller(config, store)

    processed = 0
    with ai_service:
        while processed < max_items:
            item_id = controller.tick()
            if item_id is None:
                break
            processed += 1
            print(f"  ✓ Processed queue item #{item_id}")

    print(f"✓ {processed} queue item(s) processed")
    return 0


def cmd_status(config: Config) -> int:
    """Show queue status."""
    store = StateStore(config.state_db_path)
    stats = store.get_stats()

    print("\n📊 Receipt Matcher Status")
    print("=" * 40)
    print(f"  Transactions total:     {stats['transactions_total']}")
    print(f"  Transactions incomplete:{stats['transactions_incomplete']:>5}")
    print(f"  Files:                  {stats['files_total']}")
    print(f"  Files with hint:        {stats['files_with_hint']}")
    print(f"  Pending hint events:    {stats['pending_hint_events']}")
    print("  Queue:")
    for status, count in sorted(stats["queue"].items()):
        print(f"    {status:<12} {count}")

    for item in store.get_queue_items(limit=10):
        print(
            f"  #{item.id} {item.status.value:<10} {item.scope.value:<18} "
            f"{item.transactions_processed}/{item.transactions_to_process} "
            f"matched={item.transactions_with_matches} files={item.total_files_connected}"
            + (f" error={item.last_error}" if item.last_error else "")
        )
    print()

    return 0


def cmd_pause_resume(config: Config, item_id: int, pause: bool) -> int:
    """Pause or resume a queue item."""
    store = StateStore(config.state_db_path)
    controller, ai_service = build_controller(config, store)
    with ai_service:
        try:
            found = controller.pause(item_id) if pause else controller.resume(item_id)
        except InvalidQueueTransitionError as e:
            print(f"❌ {e}")
            return 1

    if not found:
        print(f"❌ Queue item #{item_id} not found")
        return 1
    print(f"✓ Queue item #{item_id} {'paused' if pause else 'resumed'}")
    return 0


def main(args: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_cli()
    parsed = parser.parse_args(args)

    setup_logging(parsed.verbose)

    if not parsed.command:
        parser.print_help()
        return 1

    if parsed.command == "init-config":
        return cmd_init_config(parsed.config, parsed.force)

    # Load config
    try:
        config = load_config(parsed.config)
    except Exception as e:
        print(f"❌ Failed to load config: {e}")
        return 1

    # Route to command
    if parsed.command == "import-transactions":
        return cmd_import_transactions(config, parsed.file)
    elif parsed.command == "enqueue":
        return cmd_enqueue(
            config,
            user_id=parsed.user,
            scope=parsed.scope,
            transaction_id=parsed.transaction_id,
            triggered_by=parsed.triggered_by,
            strategies=parsed.strategies,
            integration_id=parsed.integration_id,
        )
    elif parsed.command == "tick":
        return cmd_tick(config, parsed.max_items)
    elif parsed.command == "status":
        return cmd_status(config)
    elif parsed.command == "pause":
        return cmd_pause_resume(config, parsed.item_id, pause=True)
    elif parsed.command == "resume":
        return cmd_pause_resume(config, parsed.item_id, pause=False)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
