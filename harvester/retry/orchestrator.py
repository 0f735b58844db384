"""Retry/backoff orchestration for one fallible unit of work.

``RetryOrchestrator.run`` never raises for failures of the wrapped
operation: it returns a RetryOutcome holding either the value or a
FailureDescriptor, handing exhausted and permanent failures to the dead
letter store on the way out.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from harvester.errors import HttpStatusError, ParseError, ResolverTimeoutError
from harvester.models import (
    AttemptMeta,
    ErrorType,
    FailureDescriptor,
    JobStatus,
    RetryOutcome,
    ScrapeJob,
)
from harvester.retry.circuit import CircuitBreaker, CircuitOpenError
from harvester.session.base import SessionError, SessionTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})

_TIMEOUT_ERRORS = (asyncio.TimeoutError, TimeoutError, SessionTimeoutError, ResolverTimeoutError)


@dataclass(frozen=True)
class RetryConfig:
    max_retries: int = 3
    base_delay_ms: int = 1000
    backoff_multiplier: float = 2.0
    delay_cap_ms: int = 10000
    jitter_ratio: float = 0.25
    retryable_status_codes: frozenset = field(default_factory=lambda: DEFAULT_RETRYABLE_STATUS_CODES)


def compute_delay(attempt: int, config: RetryConfig, rng: Optional[random.Random] = None) -> float:
    """Backoff delay in milliseconds before retrying after failed attempt ``attempt``.

    The nominal delay is ``base * multiplier ** (attempt - 1)`` with
    symmetric jitter of ``jitter_ratio`` applied, capped at ``delay_cap_ms``.
    """
    rng = rng or random
    nominal = config.base_delay_ms * config.backoff_multiplier ** (attempt - 1)
    jitter = nominal * config.jitter_ratio * (2 * rng.random() - 1)
    return min(nominal + jitter, config.delay_cap_ms)


def classify_message(message: str) -> ErrorType:
    """Best-effort classification from an error message alone."""
    lowered = (message or "").lower()
    if "timeout" in lowered or "timed out" in lowered:
        return ErrorType.TIMEOUT
    if "rate limit" in lowered or "too many" in lowered:
        return ErrorType.RATE_LIMIT
    if "parse" in lowered or "json" in lowered:
        return ErrorType.PARSE_ERROR
    return ErrorType.UNKNOWN


def classify_error(exc: BaseException) -> ErrorType:
    if isinstance(exc, HttpStatusError):
        return ErrorType.RATE_LIMIT if exc.status_code == 429 else ErrorType.HTTP_ERROR
    if isinstance(exc, _TIMEOUT_ERRORS):
        return ErrorType.TIMEOUT
    if isinstance(exc, ParseError):
        return ErrorType.PARSE_ERROR
    return classify_message(str(exc))


def is_retryable(exc: BaseException, config: RetryConfig) -> bool:
    """Transient failures are retried; 4xx other than 429 and parse failures are not."""
    if isinstance(exc, HttpStatusError):
        return exc.status_code in config.retryable_status_codes
    if isinstance(exc, ParseError):
        return exc.retryable
    if isinstance(exc, _TIMEOUT_ERRORS):
        return True
    # Session and socket failures are network-level
    return isinstance(exc, (SessionError, ConnectionError))


class RetryOrchestrator:
    """Runs an operation with bounded exponential backoff.

    Args:
        config: Retry parameters.
        dead_letters: Store receiving terminal failures, or None.
        sleep: Awaitable sleep taking seconds; injectable for tests.
        rng: Random source for jitter.
        breaker: Per-source circuit breaker consulted before every attempt,
            or None.
    """

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        dead_letters=None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.config = config or RetryConfig()
        self.dead_letters = dead_letters
        self._sleep = sleep
        self._rng = rng or random.Random()
        self.breaker = breaker

    async def run(self, operation: Callable[[], Awaitable[Any]], job: ScrapeJob) -> RetryOutcome:
        """Run ``operation`` up to ``max_retries + 1`` times.

        The job is updated in place: status, retry_count (one per attempt,
        the successful one included), error_message and timestamps. When the
        source's circuit is open no attempt is made and nothing is
        dead-lettered.
        """
        total_attempts = self.config.max_retries + 1
        first_attempt_at = datetime.now(timezone.utc)
        job.status = JobStatus.RUNNING
        job.started_at = job.started_at or first_attempt_at

        last_error: Optional[Exception] = None
        retryable = False
        attempt = 0
        while attempt < total_attempts:
            if self.breaker is not None:
                try:
                    self.breaker.before_call(job.source_id)
                except CircuitOpenError as e:
                    if last_error is not None:
                        break
                    return self._short_circuit(job, e)
            attempt += 1
            job.retry_count += 1
            try:
                value = await operation()
            except Exception as e:
                last_error = e
                if self.breaker is not None:
                    self.breaker.record_failure(job.source_id, classify_error(e))
                job.error_message = str(e)[:500]
                retryable = is_retryable(e, self.config)
                if not retryable:
                    logger.warning(
                        "Job %s failed permanently on attempt %d: %s",
                        job.source_id, attempt, e,
                    )
                    break
                if attempt >= total_attempts:
                    break
                delay_ms = compute_delay(attempt, self.config, self._rng)
                logger.warning(
                    "Retry %d/%d for %s (%s: %s), waiting %.1fs",
                    attempt, self.config.max_retries, job.source_id,
                    type(e).__name__, e, delay_ms / 1000,
                )
                await self._sleep(delay_ms / 1000)
                continue

            if self.breaker is not None:
                self.breaker.record_success(job.source_id)
            job.status = JobStatus.SUCCEEDED
            job.completed_at = datetime.now(timezone.utc)
            job.error_message = None
            if attempt > 1:
                logger.info("Job %s succeeded on attempt %d/%d", job.source_id, attempt, total_attempts)
            return RetryOutcome(value=value, attempts=attempt)

        return await self._fail(job, last_error, attempt, retryable, first_attempt_at)

    def _short_circuit(self, job: ScrapeJob, error: CircuitOpenError) -> RetryOutcome:
        error_type = self.breaker.last_error_type(job.source_id)
        job.status = JobStatus.FAILED
        job.completed_at = datetime.now(timezone.utc)
        job.error_message = str(error)
        logger.warning("Skipping %s: %s", job.source_id, error)
        return RetryOutcome(
            failure=FailureDescriptor(
                error_type=error_type,
                message=str(error),
                attempts=0,
                retryable=False,
            ),
            attempts=0,
        )

    async def _fail(self, job: ScrapeJob, error: Exception, attempts: int,
                    retryable: bool, first_attempt_at: datetime) -> RetryOutcome:
        error_type = classify_error(error)
        status_code = getattr(error, "status_code", None)
        now = datetime.now(timezone.utc)
        job.status = JobStatus.FAILED
        job.completed_at = now

        dead_letter_id = None
        if self.dead_letters is not None:
            meta = AttemptMeta(
                attempts=attempts,
                first_attempt_at=first_attempt_at,
                last_attempt_at=now,
                status_code=status_code,
                batch_id=job.batch_id,
            )
            try:
                entry = await self.dead_letters.record_failure(
                    job.source_id, error_type, str(error)[:1000], meta,
                )
                dead_letter_id = entry.id
            except Exception as e:
                logger.error("Could not dead-letter job %s: %s", job.source_id, e, exc_info=True)

        logger.error(
            "Job %s failed after %d attempt(s) [%s]: %s",
            job.source_id, attempts, error_type.value, error,
        )
        return RetryOutcome(
            failure=FailureDescriptor(
                error_type=error_type,
                message=str(error)[:1000],
                attempts=attempts,
                retryable=retryable,
                status_code=status_code,
                dead_letter_id=dead_letter_id,
            ),
            attempts=attempts,
        )
