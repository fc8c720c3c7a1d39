"""Tests for single step execution."""

from datetime import datetime

import pytest

from agent_pipeline.core.cancellation import CancellationToken
from agent_pipeline.core.exceptions import (
    AgentUnavailableError,
    DependencyUnsatisfiedError,
    ExecutionCancelledError,
    InvocationError,
    InvocationErrorKind,
    StepExhaustedError,
)
from agent_pipeline.core.step_runner import StepRunner, last_completed_output
from agent_pipeline.models.core import AgentStep, LogLevel, StepResult, StepStatus

from conftest import make_output, messages


def result(agent_id, status=StepStatus.COMPLETED, output=None, name=None):
    now = datetime.utcnow()
    if status == StepStatus.COMPLETED and output is None:
        output = make_output()
    return StepResult(
        agent_id=agent_id,
        agent_name=name or agent_id,
        status=status,
        started_at=now,
        completed_at=now,
        output=output if status == StepStatus.COMPLETED else None,
        error="failed" if status == StepStatus.FAILED else None
    )


class TestStepRunnerSuccess:
    """Test the happy path of a step."""

    def test_completed_result(self, step_runner, invoker, log_stream):
        invoker.script("A", make_output(score=0.7))

        step_result = step_runner.run(AgentStep(agent_id="A", instructions="Design it"), [], log_stream)

        assert step_result.status == StepStatus.COMPLETED
        assert step_result.agent_name == "Architect"
        assert step_result.retry_count == 0
        assert step_result.output["metrics"]["score"] == 0.7
        assert step_result.error is None
        assert step_result.duration_ms >= 0
        assert invoker.calls[0].instructions == "Design it"

        assert messages(log_stream.entries()) == [
            "Starting Architect",
            f"Completed in {step_result.duration_ms}ms",
        ]
        assert log_stream.entries()[-1].level == LogLevel.SUCCESS

    def test_context_outputs_from_prior_results(self, step_runner, invoker, log_stream):
        prior = [result("A", name="Architect"), result("B", StepStatus.SKIPPED, name="Builder")]

        step_runner.run(AgentStep(agent_id="C", use_internet_context=False), prior, log_stream)

        call = invoker.calls[0]
        assert [c.agent_name for c in call.context_outputs] == ["Architect", "Builder"]
        assert call.context_outputs[0].output == prior[0].output
        assert call.context_outputs[1].output is None
        assert call.use_internet_context is False

    def test_output_kept_as_returned(self, step_runner, invoker, log_stream):
        payload = {**make_output(), "score": 0.9, "notes": {"reviewer": "ops"}}
        invoker.script("A", payload)

        step_result = step_runner.run(AgentStep(agent_id="A"), [], log_stream)

        assert step_result.output == payload


class TestStepRunnerRetries:
    """Test the bounded retry loop."""

    def test_retry_then_success(self, step_runner, invoker, log_stream):
        invoker.script("A", InvocationError("timeout", kind=InvocationErrorKind.TIMEOUT), make_output())

        step_result = step_runner.run(AgentStep(agent_id="A", max_retries=2), [], log_stream)

        assert step_result.status == StepStatus.COMPLETED
        assert step_result.retry_count == 1
        assert invoker.attempts("A") == 2
        log_messages = messages(log_stream.entries())
        assert "Attempt 1 failed: timeout" in log_messages
        assert "Retry attempt 1/2" in log_messages

    def test_exhausted_after_max_retries_plus_one(self, step_runner, invoker, log_stream):
        invoker.fail_always("A")

        with pytest.raises(StepExhaustedError) as exc_info:
            step_runner.run(AgentStep(agent_id="A", max_retries=2), [], log_stream)

        assert invoker.attempts("A") == 3
        assert exc_info.value.attempts == 3
        assert exc_info.value.message == "Agent Architect failed after 3 attempts: Architect is unavailable"
        assert exc_info.value.agent_name == "Architect"
        assert log_stream.entries()[-1].level == LogLevel.ERROR

    def test_single_attempt_without_retries(self, step_runner, invoker, log_stream):
        invoker.fail_always("A")

        with pytest.raises(StepExhaustedError):
            step_runner.run(AgentStep(agent_id="A", max_retries=0), [], log_stream)

        assert invoker.attempts("A") == 1
        assert not any(m.startswith("Retry attempt") for m in messages(log_stream.entries()))

    def test_malformed_output_is_retried(self, step_runner, invoker, log_stream):
        invoker.script("A", ["not", "an", "object"], {"metrics": {"score": "high"}}, make_output())

        step_result = step_runner.run(AgentStep(agent_id="A", max_retries=2), [], log_stream)

        assert step_result.retry_count == 2

    def test_unexpected_invoker_exception_is_an_attempt_failure(self, step_runner, invoker, log_stream):
        invoker.script("A", RuntimeError("socket closed"), make_output())

        step_result = step_runner.run(AgentStep(agent_id="A", max_retries=1), [], log_stream)

        assert step_result.retry_count == 1
        assert "Attempt 1 failed: RuntimeError: socket closed" in messages(log_stream.entries())

    def test_backoff_waits_are_linear(self, agent_catalog, invoker, log_stream):
        waits = []

        class RecordingToken(CancellationToken):
            def sleep(self, seconds):
                waits.append(seconds)

        invoker.fail_always("A")
        runner = StepRunner(agent_catalog, invoker, backoff_unit=0.5)

        with pytest.raises(StepExhaustedError):
            runner.run(AgentStep(agent_id="A", max_retries=3), [], log_stream, RecordingToken())

        assert waits == [0.5, 1.0, 1.5]

    def test_negative_backoff_rejected(self, agent_catalog, invoker):
        with pytest.raises(ValueError):
            StepRunner(agent_catalog, invoker, backoff_unit=-1)


class TestStepRunnerGates:
    """Test agent, dependency and condition gates."""

    def test_unknown_agent(self, step_runner, invoker, log_stream):
        with pytest.raises(AgentUnavailableError) as exc_info:
            step_runner.run(AgentStep(agent_id="Z"), [], log_stream)

        assert exc_info.value.message == "Agent Z not found"
        assert exc_info.value.error_code == "AgentNotFound"
        assert invoker.calls == []

    def test_dependency_not_yet_run(self, step_runner, invoker, log_stream):
        with pytest.raises(DependencyUnsatisfiedError) as exc_info:
            step_runner.run(AgentStep(agent_id="B", depends_on=["A"]), [], log_stream)

        assert exc_info.value.message == "Dependency A not satisfied"
        assert exc_info.value.agent_name == "Builder"
        assert invoker.calls == []

    @pytest.mark.parametrize("status", [StepStatus.FAILED, StepStatus.SKIPPED])
    def test_dependency_not_completed(self, step_runner, invoker, log_stream, status):
        with pytest.raises(DependencyUnsatisfiedError):
            step_runner.run(AgentStep(agent_id="B", depends_on=["A"]), [result("A", status)], log_stream)
        assert invoker.calls == []

    def test_first_result_of_dependency_counts(self, step_runner, log_stream):
        prior = [result("A", StepStatus.FAILED), result("A")]

        with pytest.raises(DependencyUnsatisfiedError):
            step_runner.run(AgentStep(agent_id="B", depends_on=["A"]), prior, log_stream)

    def test_dependencies_satisfied(self, step_runner, log_stream):
        prior = [result("A"), result("B")]

        step_result = step_runner.run(AgentStep(agent_id="C", depends_on=["A", "B"]), prior, log_stream)

        assert step_result.status == StepStatus.COMPLETED
        assert "Dependencies satisfied: 2" in messages(log_stream.entries())

    def test_condition_not_met_skips(self, step_runner, invoker, log_stream):
        prior = [result("A", output=make_output(score=0.5))]

        step_result = step_runner.run(
            AgentStep(agent_id="B", condition="output.metrics.score > 0.8"), prior, log_stream
        )

        assert step_result.status == StepStatus.SKIPPED
        assert step_result.duration_ms == 0
        assert step_result.retry_count == 0
        assert step_result.output is None
        assert invoker.calls == []
        assert "Condition not met, skipping" in messages(log_stream.entries())

    def test_condition_uses_last_completed_output(self, step_runner, invoker, log_stream):
        prior = [
            result("A", output=make_output(score=0.95)),
            result("B", StepStatus.FAILED),
            result("C", StepStatus.SKIPPED),
        ]

        step_result = step_runner.run(
            AgentStep(agent_id="D", condition="output.metrics.score > 0.8"), prior, log_stream
        )

        assert step_result.status == StepStatus.COMPLETED

    def test_condition_without_prior_output_skips(self, step_runner, log_stream):
        step_result = step_runner.run(
            AgentStep(agent_id="A", condition="output.metrics.score > 0.8"), [], log_stream
        )

        assert step_result.status == StepStatus.SKIPPED
        assert any(
            entry.level == LogLevel.ERROR and entry.message.startswith("Condition evaluation failed")
            for entry in log_stream.entries()
        )

    def test_last_completed_output(self):
        assert last_completed_output([]) is None
        prior = [result("A", output=make_output(score=0.1)), result("B", StepStatus.FAILED)]
        assert last_completed_output(prior)["metrics"]["score"] == 0.1


class TestStepRunnerCancellation:
    """Test cancellation at suspension points."""

    def test_cancelled_before_first_attempt(self, step_runner, invoker, log_stream):
        token = CancellationToken()
        token.cancel("stop now")

        with pytest.raises(ExecutionCancelledError):
            step_runner.run(AgentStep(agent_id="A"), [], log_stream, token)

        assert invoker.calls == []

    def test_result_after_cancellation_is_abandoned(self, step_runner, invoker, log_stream):
        token = CancellationToken()

        def cancel_while_running():
            token.cancel()
            return make_output()

        invoker.script("A", cancel_while_running)

        with pytest.raises(ExecutionCancelledError):
            step_runner.run(AgentStep(agent_id="A"), [], log_stream, token)

        assert not any(m.startswith("Completed in") for m in messages(log_stream.entries()))
