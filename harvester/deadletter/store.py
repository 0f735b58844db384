"""Dead letter store with a manual resolution workflow.

At most one unresolved entry exists per (source, error type): repeated
failures merge into it. Resolution is terminal and entries are never
deleted, so resolved entries form the audit trail.
"""

import asyncio
import logging
import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional, Protocol

from harvester.errors import AlreadyResolvedError, DeadLetterNotFoundError
from harvester.models import (
    AttemptMeta,
    DeadLetterEntry,
    DeadLetterStats,
    ErrorType,
    Resolution,
)

logger = logging.getLogger(__name__)


class DeadLetterSink(Protocol):
    def save_dead_letter(self, entry: DeadLetterEntry) -> None:
        """Upsert the entry keyed by its id."""
        ...

    def load_unresolved_dead_letters(self) -> list[DeadLetterEntry]:
        """Every persisted entry that is not resolved yet."""
        ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeadLetterStore:
    """In-process dead letter store, optionally mirrored to a persistent sink.

    Every mutation runs under one lock, so concurrent reports for the same
    key cannot both create an entry. Callers receive copies; the stored
    entries are only changed through this class.
    """

    def __init__(self, sink: Optional[DeadLetterSink] = None,
                 clock: Callable[[], datetime] = _utcnow):
        self.sink = sink
        self._clock = clock
        self._lock = asyncio.Lock()
        self._entries: dict[str, DeadLetterEntry] = {}
        self._unresolved: dict[tuple[str, ErrorType], str] = {}

    def _persist(self, entry: DeadLetterEntry) -> None:
        if self.sink is not None:
            self.sink.save_dead_letter(replace(entry))

    async def load_unresolved(self) -> int:
        """Adopt the sink's unresolved entries so failures keep merging across runs.

        Call once before the first ``record_failure``. When the sink holds
        several unresolved entries for one (source, error type), the most
        recently failed one is adopted.

        Returns:
            Number of entries adopted.
        """
        if self.sink is None:
            return 0
        persisted = sorted(
            self.sink.load_unresolved_dead_letters(),
            key=lambda e: e.last_attempt_at,
            reverse=True,
        )
        adopted = 0
        async with self._lock:
            for entry in persisted:
                key = (entry.source, entry.error_type)
                if entry.is_resolved or entry.id in self._entries or key in self._unresolved:
                    continue
                self._entries[entry.id] = replace(entry)
                self._unresolved[key] = entry.id
                adopted += 1
        if adopted:
            logger.info("Loaded %d unresolved dead letter(s) from the store", adopted)
        return adopted

    async def record_failure(
        self,
        source: str,
        error_type: ErrorType,
        message: str,
        attempt_meta: Optional[AttemptMeta] = None,
    ) -> DeadLetterEntry:
        """Merge a failure into the open entry for (source, error_type), or open one.

        Args:
            source: Source identifier of the failed job.
            error_type: Classified terminal error.
            message: Latest error message.
            attempt_meta: Attempt count and timing of this failure report.

        Returns:
            A copy of the created or updated entry.
        """
        meta = attempt_meta or AttemptMeta()
        async with self._lock:
            now = self._clock()
            key = (source, error_type)
            entry_id = self._unresolved.get(key)

            if entry_id is not None:
                entry = self._entries[entry_id]
                entry.total_retries += meta.attempts
                entry.last_attempt_at = meta.last_attempt_at or now
                entry.error_message = message
                entry.status_code = meta.status_code
                entry.batch_id = meta.batch_id or entry.batch_id
                logger.info(
                    "Dead letter %s for %s [%s] now at %d retries",
                    entry.id, source, error_type.value, entry.total_retries,
                )
            else:
                entry = DeadLetterEntry(
                    id=str(uuid.uuid4()),
                    source=source,
                    error_type=error_type,
                    error_message=message,
                    total_retries=meta.attempts,
                    first_attempt_at=meta.first_attempt_at or now,
                    last_attempt_at=meta.last_attempt_at or now,
                    status_code=meta.status_code,
                    batch_id=meta.batch_id,
                )
                self._entries[entry.id] = entry
                self._unresolved[key] = entry.id
                logger.info("Dead-lettered %s [%s]: %s", source, error_type.value, message)

            self._persist(entry)
            return replace(entry)

    def _mark_resolved(self, entry: DeadLetterEntry, resolution: Resolution,
                       resolved_by: str, notes: Optional[str], now: datetime) -> None:
        entry.resolution = resolution
        entry.resolved_at = now
        entry.resolved_by = resolved_by
        entry.notes = notes
        self._unresolved.pop((entry.source, entry.error_type), None)
        self._persist(entry)

    async def resolve(
        self,
        entry_id: str,
        resolution: Resolution,
        resolved_by: str,
        notes: Optional[str] = None,
    ) -> DeadLetterEntry:
        """Resolve one entry. Resolution is terminal.

        Raises:
            DeadLetterNotFoundError: No entry has this id.
            AlreadyResolvedError: The entry was resolved before; it is left
                untouched.
        """
        async with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None:
                raise DeadLetterNotFoundError(entry_id)
            if entry.is_resolved:
                raise AlreadyResolvedError(entry_id)
            self._mark_resolved(entry, resolution, resolved_by, notes, self._clock())
            logger.info("Resolved dead letter %s as %s by %s", entry_id, resolution.value, resolved_by)
            return replace(entry)

    async def bulk_resolve(
        self,
        entry_ids: Iterable[str],
        resolution: Resolution,
        resolved_by: str,
        notes: Optional[str] = None,
    ) -> list[DeadLetterEntry]:
        """Resolve several entries at once; already-resolved ones are skipped.

        Raises:
            DeadLetterNotFoundError: An id is unknown. Nothing is resolved.
        """
        async with self._lock:
            ids = list(entry_ids)
            for entry_id in ids:
                if entry_id not in self._entries:
                    raise DeadLetterNotFoundError(entry_id)

            now = self._clock()
            resolved = []
            for entry_id in ids:
                entry = self._entries[entry_id]
                if entry.is_resolved:
                    logger.debug("Dead letter %s already resolved, skipping", entry_id)
                    continue
                self._mark_resolved(entry, resolution, resolved_by, notes, now)
                resolved.append(replace(entry))

            logger.info("Bulk-resolved %d/%d dead letters as %s", len(resolved), len(ids), resolution.value)
            return resolved

    def get(self, entry_id: str) -> DeadLetterEntry:
        entry = self._entries.get(entry_id)
        if entry is None:
            raise DeadLetterNotFoundError(entry_id)
        return replace(entry)

    def list_unresolved(
        self,
        error_type: Optional[ErrorType] = None,
        source: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[DeadLetterEntry]:
        """Unresolved entries, most recently failed first."""
        entries = [
            self._entries[entry_id]
            for (entry_source, entry_type), entry_id in self._unresolved.items()
            if (error_type is None or entry_type == error_type)
            and (source is None or entry_source == source)
        ]
        entries.sort(key=lambda e: e.last_attempt_at, reverse=True)
        if limit is not None:
            entries = entries[:limit]
        return [replace(e) for e in entries]

    def get_by_source(self, source: str, include_resolved: bool = False) -> list[DeadLetterEntry]:
        entries = [
            e for e in self._entries.values()
            if e.source == source and (include_resolved or not e.is_resolved)
        ]
        entries.sort(key=lambda e: e.last_attempt_at, reverse=True)
        return [replace(e) for e in entries]

    def stats_by_error_type(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for _, error_type in self._unresolved:
            counts[error_type.value] = counts.get(error_type.value, 0) + 1
        return counts

    def stats(self) -> DeadLetterStats:
        now = self._clock()
        day_ago = now - timedelta(hours=24)
        unresolved = [self._entries[i] for i in self._unresolved.values()]
        resolved_recently = sum(
            1 for e in self._entries.values()
            if e.resolved_at is not None and e.resolved_at >= day_ago
        )
        oldest = min((e.last_attempt_at for e in unresolved), default=None)
        return DeadLetterStats(
            unresolved_count=len(unresolved),
            resolved_last_24h=resolved_recently,
            by_error_type=self.stats_by_error_type(),
            oldest_unresolved=oldest,
        )
