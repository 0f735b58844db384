"""Tests for the per-source circuit breaker and its use by the orchestrator."""

import unittest

from harvester.deadletter.store import DeadLetterStore
from harvester.errors import HttpStatusError
from harvester.models import ErrorType, JobStatus, ScrapeJob
from harvester.retry.circuit import CircuitBreaker, CircuitOpenError, CircuitState
from harvester.retry.orchestrator import RetryConfig, RetryOrchestrator

from fakes import no_sleep

SOURCE = "example.com/menu"


class _Clock:
    def __init__(self):
        self.now = 1_700_000_000.0

    def __call__(self):
        return self.now


def _job():
    return ScrapeJob(source_id=SOURCE, source_url="https://example.com/menu", batch_id="batch-1")


class TestCircuitBreaker(unittest.TestCase):

    def setUp(self):
        self.clock = _Clock()
        self.breaker = CircuitBreaker(failure_threshold=3, reset_time_ms=60000, clock=self.clock)

    def _fail(self, times):
        for _ in range(times):
            self.breaker.record_failure(SOURCE, ErrorType.HTTP_ERROR)

    def test_opens_at_threshold(self):
        self._fail(2)
        self.assertEqual(self.breaker.state(SOURCE), CircuitState.CLOSED)
        self.breaker.before_call(SOURCE)
        self._fail(1)
        self.assertEqual(self.breaker.state(SOURCE), CircuitState.OPEN)
        with self.assertRaises(CircuitOpenError) as ctx:
            self.breaker.before_call(SOURCE)
        self.assertEqual(ctx.exception.key, SOURCE)
        self.assertAlmostEqual(ctx.exception.retry_after_s, 60.0)

    def test_success_resets_count(self):
        self._fail(2)
        self.breaker.record_success(SOURCE)
        self._fail(2)
        self.assertEqual(self.breaker.state(SOURCE), CircuitState.CLOSED)

    def test_keys_are_independent(self):
        self._fail(3)
        self.breaker.before_call("other.com/menu")
        self.assertEqual(self.breaker.state("other.com/menu"), CircuitState.CLOSED)

    def test_half_open_admits_one_trial(self):
        self._fail(3)
        self.clock.now += 61
        self.assertEqual(self.breaker.state(SOURCE), CircuitState.HALF_OPEN)
        self.breaker.before_call(SOURCE)
        with self.assertRaises(CircuitOpenError):
            self.breaker.before_call(SOURCE)

    def test_half_open_success_closes(self):
        self._fail(3)
        self.clock.now += 61
        self.breaker.before_call(SOURCE)
        self.breaker.record_success(SOURCE)
        self.assertEqual(self.breaker.state(SOURCE), CircuitState.CLOSED)
        self.breaker.before_call(SOURCE)

    def test_half_open_failure_reopens(self):
        self._fail(3)
        self.clock.now += 61
        self.breaker.before_call(SOURCE)
        self._fail(1)
        self.assertEqual(self.breaker.state(SOURCE), CircuitState.OPEN)
        with self.assertRaises(CircuitOpenError):
            self.breaker.before_call(SOURCE)

    def test_seed_from_earlier_run(self):
        self.breaker.seed(SOURCE, failures=8, last_failure_at=self.clock.now - 10, error_type=ErrorType.TIMEOUT)
        self.assertEqual(self.breaker.state(SOURCE), CircuitState.OPEN)
        self.assertEqual(self.breaker.last_error_type(SOURCE), ErrorType.TIMEOUT)

        self.breaker.seed("quiet.com/menu", failures=1, last_failure_at=self.clock.now)
        self.assertEqual(self.breaker.state("quiet.com/menu"), CircuitState.CLOSED)


class TestOrchestratorWithBreaker(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.clock = _Clock()
        self.breaker = CircuitBreaker(failure_threshold=2, reset_time_ms=60000, clock=self.clock)
        self.store = DeadLetterStore()
        self.orchestrator = RetryOrchestrator(
            RetryConfig(max_retries=3), dead_letters=self.store, sleep=no_sleep, breaker=self.breaker,
        )
        self.calls = 0

    async def _unavailable(self):
        self.calls += 1
        raise HttpStatusError(503)

    async def test_breaker_cuts_retries_short(self):
        outcome = await self.orchestrator.run(self._unavailable, _job())

        self.assertEqual(self.calls, 2)
        self.assertEqual(outcome.attempts, 2)
        self.assertEqual(outcome.failure.error_type, ErrorType.HTTP_ERROR)
        self.assertIsNotNone(outcome.failure.dead_letter_id)
        self.assertEqual(self.breaker.state(SOURCE), CircuitState.OPEN)

    async def test_open_circuit_fails_fast(self):
        await self.orchestrator.run(self._unavailable, _job())
        self.calls = 0

        job = _job()
        outcome = await self.orchestrator.run(self._unavailable, job)

        self.assertEqual(self.calls, 0)
        self.assertFalse(outcome.ok)
        self.assertEqual(outcome.attempts, 0)
        self.assertFalse(outcome.failure.retryable)
        self.assertIsNone(outcome.failure.dead_letter_id)
        self.assertEqual(outcome.failure.error_type, ErrorType.HTTP_ERROR)
        self.assertEqual(job.status, JobStatus.FAILED)
        self.assertEqual(job.retry_count, 0)
        self.assertEqual(self.store.list_unresolved()[0].total_retries, 2)

    async def test_half_open_trial_success_closes(self):
        await self.orchestrator.run(self._unavailable, _job())
        self.clock.now += 61

        async def recovered():
            return ["item"]

        outcome = await self.orchestrator.run(recovered, _job())

        self.assertTrue(outcome.ok)
        self.assertEqual(outcome.attempts, 1)
        self.assertEqual(self.breaker.state(SOURCE), CircuitState.CLOSED)

    async def test_half_open_trial_failure_stops_after_one_attempt(self):
        await self.orchestrator.run(self._unavailable, _job())
        self.clock.now += 61
        self.calls = 0

        outcome = await self.orchestrator.run(self._unavailable, _job())

        self.assertEqual(self.calls, 1)
        self.assertEqual(outcome.attempts, 1)
        self.assertEqual(self.breaker.state(SOURCE), CircuitState.OPEN)
        self.assertEqual(self.store.list_unresolved()[0].total_retries, 3)


if __name__ == "__main__":
    unittest.main()
