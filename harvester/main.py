"""CLI entry point for the menu harvester.

Usage:
    python -m harvester.main [--config path/to/config.yaml] [-v] [--fast] [--dry-run]
    python -m harvester.main --list-dead-letters [--source SOURCE_ID]
    python -m harvester.main --resolve ENTRY_ID --resolution fixed --resolved-by NAME [--notes TEXT]
"""

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import asdict
from typing import Any, Optional

from playwright.async_api import async_playwright

from harvester.config import (
    build_circuit_breaker,
    build_coordinator_settings,
    build_resolver_config,
    build_retry_config,
    load_config,
    load_sources,
)
from harvester.coordinator import BatchCoordinator
from harvester.deadletter.store import DeadLetterStore
from harvester.errors import DeadLetterNotFoundError
from harvester.inventory.resolver import InventoryResolver
from harvester.models import BatchSummary, Resolution
from harvester.retry.orchestrator import RetryOrchestrator
from harvester.session.playwright_session import PlaywrightSessionFactory
from harvester.storage.bigquery_client import BigQueryClient

logger = logging.getLogger(__name__)


def _bigquery_client(config: dict[str, Any]) -> BigQueryClient:
    gcp = config["gcp"]
    return BigQueryClient(
        project_id=gcp["project_id"],
        dataset_id=gcp["bigquery_dataset"],
        location=gcp.get("region", "us-east4"),
    )


async def run_harvest(config: dict[str, Any], dry_run: bool = False) -> Optional[BatchSummary]:
    """Harvest every configured source as one batch.

    Args:
        config: Application configuration dict.
        dry_run: Skip BigQuery entirely; the payload is only returned.

    Returns:
        The batch summary, or None when there were no sources.
    """
    sources = load_sources(config)
    if not sources:
        logger.warning("No sources to process. Check %s", config.get("source_list_path"))
        return None

    sink = None
    if not dry_run:
        sink = _bigquery_client(config)
        sink.ensure_tables_exist()

    dead_letters = DeadLetterStore(sink=sink)
    await dead_letters.load_unresolved()
    breaker = build_circuit_breaker(config)
    # Sources still dead-lettered from earlier runs start with their failures counted
    for entry in dead_letters.list_unresolved():
        breaker.seed(entry.source, entry.total_retries, entry.last_attempt_at.timestamp(), entry.error_type)
    orchestrator = RetryOrchestrator(
        build_retry_config(config), dead_letters=dead_letters, breaker=breaker,
    )
    resolver = InventoryResolver(build_resolver_config(config))
    resolver_config = resolver.config
    logger.info(
        "Inventory resolver: fast_mode=%s, budget=%dms",
        resolver_config.fast_mode, resolver_config.max_total_time_ms,
    )

    browser_config = config.get("browser", {})
    async with async_playwright() as p:
        headless = browser_config.get("headless", True)
        browser = await p.chromium.launch(headless=headless)
        logger.info("Browser launched (headless=%s)", headless)
        try:
            factory = PlaywrightSessionFactory(
                browser,
                user_agent=browser_config.get("user_agent"),
                action_timeout_ms=resolver_config.operation_timeout_ms,
            )
            coordinator = BatchCoordinator(
                session_factory=factory,
                resolver=resolver,
                orchestrator=orchestrator,
                sink=sink,
                settings=build_coordinator_settings(config),
            )
            summary = await coordinator.run(sources)
        finally:
            await browser.close()

    stats = dead_letters.stats()
    if stats.unresolved_count:
        logger.warning("Unresolved dead letters after batch: %s", stats.by_error_type)
    return summary


async def _persisted_store(config: dict[str, Any]) -> DeadLetterStore:
    store = DeadLetterStore(sink=_bigquery_client(config))
    await store.load_unresolved()
    return store


async def list_dead_letters(config: dict[str, Any], source: Optional[str] = None) -> None:
    store = await _persisted_store(config)
    entries = [asdict(e) for e in store.list_unresolved(source=source)]
    print(json.dumps(entries, indent=2, default=str))


async def resolve_dead_letter(
    config: dict[str, Any],
    entry_id: str,
    resolution: Resolution,
    resolved_by: str,
    notes: Optional[str] = None,
) -> None:
    """Resolve one persisted, unresolved dead letter entry."""
    store = await _persisted_store(config)
    entry = await store.resolve(entry_id, resolution, resolved_by, notes)
    print(json.dumps(asdict(entry), indent=2, default=str))


def main() -> None:
    """Parse arguments and run the harvester."""
    parser = argparse.ArgumentParser(
        description="Menu Harvester: product and inventory extraction from retail menu pages",
    )
    parser.add_argument(
        "--config",
        default="config/config.yaml",
        help="Path to configuration YAML (default: config/config.yaml)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )
    parser.add_argument(
        "--fast",
        action="store_true",
        help="Skip the slow cart-overflow inventory strategy",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the ingestion payload as JSON instead of writing to BigQuery",
    )
    parser.add_argument(
        "--list-dead-letters",
        action="store_true",
        help="Print unresolved dead letter entries and exit",
    )
    parser.add_argument(
        "--source",
        help="Restrict --list-dead-letters to one source id",
    )
    parser.add_argument(
        "--resolve",
        metavar="ENTRY_ID",
        help="Resolve an unresolved dead letter entry and exit",
    )
    parser.add_argument(
        "--resolution",
        choices=[r.value for r in Resolution],
        help="Resolution recorded by --resolve",
    )
    parser.add_argument(
        "--resolved-by",
        help="Operator recorded by --resolve",
    )
    parser.add_argument(
        "--notes",
        help="Free-text notes recorded by --resolve",
    )
    args = parser.parse_args()
    if args.resolve and not (args.resolution and args.resolved_by):
        parser.error("--resolve requires --resolution and --resolved-by")

    # Configure logging
    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr if args.dry_run else sys.stdout,
    )
    # Suppress noisy libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("google").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    logger.info("Menu Harvester starting")

    try:
        config = load_config(args.config)
        if args.fast:
            config.setdefault("inventory", {})["fast_mode"] = True

        if args.list_dead_letters:
            asyncio.run(list_dead_letters(config, args.source))
            return
        if args.resolve:
            asyncio.run(resolve_dead_letter(
                config, args.resolve, Resolution(args.resolution), args.resolved_by, args.notes,
            ))
            return

        summary = asyncio.run(run_harvest(config, dry_run=args.dry_run))
        if args.dry_run and summary is not None:
            print(json.dumps(summary.payload.to_dict(), indent=2))
    except FileNotFoundError as e:
        logger.error("Configuration file not found: %s", e)
        sys.exit(1)
    except DeadLetterNotFoundError as e:
        logger.error("Cannot resolve: %s (not an unresolved entry)", e)
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Harvest interrupted by user")
        sys.exit(130)
    except Exception as e:
        logger.error("Harvest failed: %s", e, exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
