"""Tests for log streams, cancellation, retries, health checks and errors."""

import json
import logging
import threading
import time

import pytest

from agent_pipeline.core.cancellation import CancellationToken
from agent_pipeline.core.error_recovery import HealthChecker, RetryConfig, with_retry
from agent_pipeline.core.exceptions import (
    DependencyUnsatisfiedError,
    ExecutionCancelledError,
    InvocationError,
    InvocationErrorKind,
    StepExhaustedError,
    StorageError,
    create_error_response,
)
from agent_pipeline.core.log_stream import LogStream
from agent_pipeline.core.logging import StructuredFormatter, clear_logging_context, set_logging_context, _context_filter
from agent_pipeline.models.core import LogLevel


class TestLogStream:
    """Test ordering and observers of the log stream."""

    def test_entries_in_emission_order(self):
        stream = LogStream("exec-1")

        stream.info("Starting Architect", "A")
        stream.warning("Retry attempt 1/2", "A")
        stream.error("Agent A not found", "A")
        stream.success("Workflow completed in 0.01s")

        entries = stream.entries()
        assert [e.level for e in entries] == [LogLevel.INFO, LogLevel.WARNING, LogLevel.ERROR, LogLevel.SUCCESS]
        assert entries[0].agent_id == "A"
        assert entries[-1].agent_id is None
        assert len(stream) == 4

    def test_observers_receive_entries_live(self):
        stream = LogStream()
        seen = []
        stream.subscribe(lambda entry: seen.append(entry.message))

        stream.info("first")
        stream.info("second")

        assert seen == ["first", "second"]

    def test_replay_on_subscribe(self):
        stream = LogStream()
        stream.info("before")
        seen = []

        stream.subscribe(lambda entry: seen.append(entry.message), replay=True)
        stream.info("after")

        assert seen == ["before", "after"]

    def test_failing_observer_does_not_break_stream(self):
        stream = LogStream()
        seen = []

        def broken(entry):
            raise RuntimeError("observer down")

        stream.subscribe(broken)
        stream.subscribe(lambda entry: seen.append(entry.message))
        stream.info("still delivered")

        assert seen == ["still delivered"]
        assert len(stream) == 1

    def test_unsubscribe(self):
        stream = LogStream()
        seen = []
        stream.subscribe(seen.append)
        stream.unsubscribe(seen.append)

        stream.info("ignored")

        assert seen == []


class TestCancellationToken:
    """Test the cancellation signal."""

    def test_first_reason_wins(self):
        token = CancellationToken()
        token.cancel("first")
        token.cancel("second")

        assert token.cancelled
        assert token.reason == "first"
        with pytest.raises(ExecutionCancelledError, match="first"):
            token.raise_if_cancelled()

    def test_sleep_without_cancellation(self):
        token = CancellationToken()
        token.sleep(0.01)
        token.sleep(0)
        assert not token.cancelled

    def test_sleep_wakes_on_cancel(self):
        token = CancellationToken()
        timer = threading.Timer(0.05, token.cancel)
        timer.start()

        started = time.monotonic()
        with pytest.raises(ExecutionCancelledError):
            token.sleep(10)

        assert time.monotonic() - started < 5
        timer.join()


class TestWithRetry:
    """Test the storage retry decorator."""

    def test_retries_recoverable_errors(self):
        calls = []

        @with_retry(RetryConfig(max_attempts=3, base_delay=0, jitter=False))
        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise StorageError("locked")
            return "ok"

        assert flaky() == "ok"
        assert len(calls) == 3

    def test_gives_up_after_max_attempts(self):
        calls = []

        @with_retry(RetryConfig(max_attempts=2, base_delay=0, jitter=False))
        def always_failing():
            calls.append(1)
            raise StorageError("locked")

        with pytest.raises(StorageError):
            always_failing()
        assert len(calls) == 2

    def test_does_not_retry_other_errors(self):
        calls = []

        @with_retry(RetryConfig(max_attempts=3, base_delay=0))
        def broken():
            calls.append(1)
            raise ValueError("bad input")

        with pytest.raises(ValueError):
            broken()
        assert len(calls) == 1

    def test_delay_is_capped(self):
        config = RetryConfig(base_delay=1.0, max_delay=3.0, jitter=False)
        assert [config.get_delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 3.0, 3.0]


class TestHealthChecker:
    """Test component health checks."""

    @pytest.mark.asyncio
    async def test_all_healthy(self):
        checker = HealthChecker()
        checker.register_check("database", lambda: {"status": "healthy", "message": "ok"})

        results = await checker.run_all_checks()

        assert results["overall_status"] == "healthy"
        assert results["checks"]["database"]["message"] == "ok"

    @pytest.mark.asyncio
    async def test_failing_check_marks_unhealthy(self):
        checker = HealthChecker()

        def broken():
            raise ConnectionError("database unreachable")

        checker.register_check("database", broken)
        results = await checker.run_all_checks()

        assert results["overall_status"] == "unhealthy"
        assert results["checks"]["database"]["error_type"] == "ConnectionError"

    @pytest.mark.asyncio
    async def test_slow_check_times_out(self):
        checker = HealthChecker()
        checker.register_check("database", lambda: time.sleep(0.5) or {"message": "late"}, timeout=0.05)

        results = await checker.run_all_checks()

        assert results["overall_status"] == "unhealthy"
        assert results["checks"]["database"]["status"] == "timeout"
        assert results["checks"]["database"]["duration_ms"] < 500

    @pytest.mark.asyncio
    async def test_unknown_check(self):
        result = await HealthChecker().run_check("missing")
        assert result["status"] == "error"


class TestExceptions:
    """Test error codes and API error responses."""

    def test_step_error_codes(self):
        last_error = InvocationError("timed out", kind=InvocationErrorKind.TIMEOUT)
        exhausted = StepExhaustedError("A", "Architect", 3, last_error)

        assert exhausted.error_code == "StepExhausted"
        assert exhausted.details["last_error_kind"] == "timeout"
        assert DependencyUnsatisfiedError("B", "A").error_code == "DependencyUnsatisfied"

    def test_create_error_response(self):
        error = StorageError("locked", operation="update", table="workflow_executions")

        response = create_error_response(error)

        assert response["error"] == "StorageError"
        assert response["message"] == "locked"
        assert response["details"]["recoverable"] is True
        assert response["context"] == {"operation": "update", "table": "workflow_executions"}

    def test_to_dict(self):
        error = StorageError("locked", operation="update")

        data = error.to_dict()

        assert data["error_code"] == "StorageError"
        assert data["exception_type"] == "StorageError"
        assert data["recoverable"] is True
        assert data["context"] == {"operation": "update"}


class TestStructuredLogging:
    def test_context_fields_in_json_output(self):
        record = logging.LogRecord("agent_pipeline.test", logging.INFO, __file__, 1, "Run started", None, None)
        set_logging_context(execution_id="exec-1")
        try:
            _context_filter.filter(record)
        finally:
            clear_logging_context()

        payload = json.loads(StructuredFormatter().format(record))

        assert payload["message"] == "Run started"
        assert payload["level"] == "INFO"
        assert payload["execution_id"] == "exec-1"
