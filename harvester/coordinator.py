"""Batch coordinator for the menu harvester.

Runs one job per source under bounded concurrency. Each job attempt, wrapped
by the retry orchestrator, opens its own rendering session and goes:

1. Render the menu (age gate, wait for product cards)
2. Listing pass: stock phrases and sold-out markers for every card
3. Normalize every card into a NormalizedProduct
4. Detail-page pass: full fallback chain for a few in-stock products
   still lacking a count

Results from all jobs become one ingestion payload keyed by the batch id.
"""

import asyncio
import logging
import random
import string
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from harvester.crawler.menu import parse_menu, prepare_menu
from harvester.errors import ParseError, ResolverTimeoutError
from harvester.inventory.resolver import InventoryResolver, pick_best_result
from harvester.models import (
    BatchPayload,
    BatchSummary,
    ProductRecord,
    RetryOutcome,
    ScrapeJob,
    SourceConfig,
    SourceResult,
)
from harvester.normalizer.product import normalize_batch
from harvester.retry.orchestrator import RetryOrchestrator
from harvester.session.base import RenderingSession, SessionError, SessionFactory

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CoordinatorSettings:
    max_concurrent_sessions: int = 2
    job_delay_seconds: float = 2.0
    detail_page_limit: int = 10
    navigation_timeout_ms: int = 30000
    render_timeout_ms: int = 15000
    run_mode: str = "local"


def generate_batch_id(rng: Optional[random.Random] = None) -> str:
    """``batch-<epoch ms>-<6 random base36 chars>``."""
    rng = rng or random.Random()
    suffix = "".join(rng.choice(string.ascii_lowercase + string.digits) for _ in range(6))
    return f"batch-{int(time.time() * 1000)}-{suffix}"


def _needs_detail(record: ProductRecord) -> bool:
    if not record.product_url:
        return False
    inventory = record.inventory
    return inventory is None or (inventory.in_stock and inventory.quantity is None)


class BatchCoordinator:
    """Coordinates one batch of harvesting jobs.

    Args:
        session_factory: Opens a fresh rendering session per job attempt.
        resolver: Inventory resolver shared by all jobs.
        orchestrator: Retry orchestrator wrapping each job.
        sink: Ingestion/persistence collaborator, or None for a dry run.
        settings: Concurrency, pacing and timeout settings.
        sleep: Awaitable sleep taking seconds; injectable for tests.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        resolver: InventoryResolver,
        orchestrator: RetryOrchestrator,
        sink: Any = None,
        settings: Optional[CoordinatorSettings] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.session_factory = session_factory
        self.resolver = resolver
        self.orchestrator = orchestrator
        self.sink = sink
        self.settings = settings or CoordinatorSettings()
        self._sleep = sleep

    def _call_sink(self, method: str, *args) -> Any:
        if self.sink is None:
            return None
        try:
            return getattr(self.sink, method)(*args)
        except Exception as e:
            logger.error("Sink call %s failed: %s", method, e, exc_info=True)
            return None

    async def run(self, sources: list[SourceConfig], batch_id: Optional[str] = None) -> BatchSummary:
        """Run every source as one batch and hand the payload to the sink.

        Never raises for job failures: they end up as error results in the
        payload and as dead letters.
        """
        batch_id = batch_id or generate_batch_id()
        summary = BatchSummary(batch_id=batch_id, started_at=datetime.now(timezone.utc))
        logger.info(
            "=== Batch starting: batch_id=%s, sources=%d, concurrency=%d ===",
            batch_id, len(sources), self.settings.max_concurrent_sessions,
        )
        self._call_sink("insert_batch_run", batch_id, summary.started_at, self.settings.run_mode)

        semaphore = asyncio.Semaphore(max(1, self.settings.max_concurrent_sessions))
        jobs = [ScrapeJob(source_id=s.source_id, source_url=s.url, batch_id=batch_id) for s in sources]
        outcomes = await asyncio.gather(*(
            self._run_job(idx, len(sources), source, job, semaphore)
            for idx, (source, job) in enumerate(zip(sources, jobs))
        ))

        results = []
        for source_result, outcome in outcomes:
            results.append(source_result)
            if outcome.ok:
                summary.succeeded += 1
                summary.items_scraped += len(source_result.items)
            else:
                summary.failed += 1
                if outcome.failure.dead_letter_id:
                    summary.dead_lettered += 1

        summary.jobs = jobs
        summary.payload = BatchPayload(batch_id=batch_id, results=results)
        summary.ingested = bool(self._call_sink("ingest_batch", summary.payload))
        summary.completed_at = datetime.now(timezone.utc)

        self._call_sink("insert_scrape_jobs_batch", jobs)
        self._call_sink("update_batch_run_completed", summary)

        logger.info(
            "=== Batch complete: succeeded=%d, failed=%d, items=%d, dead_lettered=%d, batch_id=%s ===",
            summary.succeeded, summary.failed, summary.items_scraped, summary.dead_lettered, batch_id,
        )
        return summary

    async def _run_job(
        self,
        idx: int,
        total: int,
        source: SourceConfig,
        job: ScrapeJob,
        semaphore: asyncio.Semaphore,
    ) -> tuple[SourceResult, RetryOutcome]:
        async with semaphore:
            logger.info("--- Job %d/%d: %s (%s) ---", idx + 1, total, source.url, job.source_id)
            outcome = await self.orchestrator.run(lambda: self._harvest(source, job), job)

            if outcome.ok:
                records = outcome.value
                job.items_scraped = len(records)
                result = SourceResult(source_id=job.source_id, items=records)
                logger.info("Job %s: %d products (%d rows skipped)", job.source_id, len(records), job.items_failed)
            else:
                result = SourceResult(source_id=job.source_id, status="error", error=outcome.failure.message)

            # Pace requests to the target sites
            if idx < total - 1 and self.settings.job_delay_seconds > 0:
                await self._sleep(self.settings.job_delay_seconds)
            return result, outcome

    async def _harvest(self, source: SourceConfig, job: ScrapeJob) -> list[ProductRecord]:
        """One attempt at a source, inside a session owned by this attempt."""
        async with self.session_factory() as session:
            html = await prepare_menu(
                session,
                source.url,
                navigation_timeout_ms=self.settings.navigation_timeout_ms,
                render_timeout_ms=self.settings.render_timeout_ms,
            )
            cards = parse_menu(html, base_url=source.url)
            if not cards:
                raise ParseError(f"no product cards could be parsed on {source.url}")

            listing = self.resolver.resolve_cards(cards)
            # Keyed by card identity: variants of one product share a name
            inventory_by_item = {id(card.item): result for card, result in zip(cards, listing)}
            pairs = normalize_batch(card.item for card in cards)
            job.items_failed = len(cards) - len(pairs)

            records = [
                ProductRecord(product=product, inventory=inventory_by_item[id(raw)], product_url=raw.product_url)
                for raw, product in pairs
            ]
            return await self._detail_pass(session, records)

    async def _detail_pass(self, session: RenderingSession, records: list[ProductRecord]) -> list[ProductRecord]:
        limit = self.settings.detail_page_limit
        if limit <= 0:
            return records

        candidates = [i for i, record in enumerate(records) if _needs_detail(record)][:limit]
        if candidates:
            logger.debug("Detail pass over %d product page(s)", len(candidates))

        for i in candidates:
            record = records[i]
            try:
                status = await session.navigate(record.product_url, self.settings.navigation_timeout_ms)
                if status is not None and status >= 400:
                    logger.warning("Detail page %s returned HTTP %d", record.product_url, status)
                    continue
                inventory = await self.resolver.resolve(session)
            except ResolverTimeoutError as e:
                inventory = e.partial
            except SessionError as e:
                logger.warning("Detail page %s unavailable: %s", record.product_url, e)
                continue

            if record.inventory is not None:
                inventory = pick_best_result(record.inventory, inventory)
            records[i] = replace(record, inventory=inventory)
        return records
