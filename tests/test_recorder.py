"""Tests for execution state recorders."""

from datetime import datetime, timedelta

import pytest

from agent_pipeline.core.exceptions import StorageError
from agent_pipeline.core.recorder import InMemoryExecutionRecorder, SqlExecutionRecorder
from agent_pipeline.models.core import (
    ErrorDetails,
    ExecutionStatusEnum,
    LogEntry,
    LogLevel,
    StepResult,
    StepStatus,
)

from conftest import make_output


@pytest.fixture(params=["memory", "sql"])
def any_recorder(request, temp_db):
    if request.param == "memory":
        return InMemoryExecutionRecorder()
    return SqlExecutionRecorder()


def completed_result(agent_id="A"):
    now = datetime.utcnow()
    return StepResult(
        agent_id=agent_id,
        agent_name="Architect",
        status=StepStatus.COMPLETED,
        started_at=now,
        completed_at=now + timedelta(milliseconds=120),
        duration_ms=120,
        output=make_output(),
        retry_count=1
    )


class TestExecutionRecorder:
    """Behaviour shared by every recorder."""

    def test_create_and_get(self, any_recorder):
        started_at = datetime.utcnow()
        execution_id = any_recorder.create("wf-1", "project-1", started_at=started_at)

        execution = any_recorder.get(execution_id)

        assert execution.id == execution_id
        assert execution.workflow_id == "wf-1"
        assert execution.project_id == "project-1"
        assert execution.status == ExecutionStatusEnum.RUNNING
        assert execution.started_at == started_at
        assert execution.results == []
        assert execution.logs == []

    def test_create_with_explicit_id(self, any_recorder):
        assert any_recorder.create("wf-1", None, execution_id="exec-1") == "exec-1"

    def test_get_unknown(self, any_recorder):
        assert any_recorder.get("missing") is None

    def test_update_overwrites_state(self, any_recorder):
        execution_id = any_recorder.create("wf-1", None)
        results = [completed_result()]
        logs = [LogEntry(timestamp=datetime.utcnow(), level=LogLevel.ERROR, message="Workflow failed", agent_id="A")]
        completed_at = datetime.utcnow()

        any_recorder.update(
            execution_id, results, logs, ExecutionStatusEnum.FAILED,
            error_details=ErrorDetails(failed_agent="A", error_message="boom", error_kind="StepExhausted"),
            completed_at=completed_at,
            duration_ms=250
        )

        execution = any_recorder.get(execution_id)
        assert execution.status == ExecutionStatusEnum.FAILED
        assert execution.results == results
        assert execution.logs == logs
        assert execution.error_details.failed_agent == "A"
        assert execution.completed_at == completed_at
        assert execution.duration_ms == 250

    def test_update_unknown_execution_is_not_retried(self, any_recorder, monkeypatch):
        sleeps = []
        monkeypatch.setattr("agent_pipeline.core.error_recovery.time.sleep", sleeps.append)

        with pytest.raises(StorageError) as exc_info:
            any_recorder.update("missing", [], [], ExecutionStatusEnum.COMPLETED)

        assert exc_info.value.recoverable is False
        assert sleeps == []

    def test_list_executions_newest_first(self, any_recorder):
        now = datetime.utcnow()
        older = any_recorder.create("wf-1", None, started_at=now - timedelta(minutes=5))
        newer = any_recorder.create("wf-1", None, started_at=now)
        other = any_recorder.create("wf-2", None, started_at=now - timedelta(minutes=1))

        assert [e.id for e in any_recorder.list_executions()] == [newer, other, older]
        assert [e.id for e in any_recorder.list_executions(workflow_id="wf-1")] == [newer, older]
        assert len(any_recorder.list_executions(limit=1)) == 1


class TestInMemoryExecutionRecorder:
    def test_duplicate_id_rejected(self):
        recorder = InMemoryExecutionRecorder()
        recorder.create(None, None, execution_id="exec-1")

        with pytest.raises(StorageError):
            recorder.create(None, None, execution_id="exec-1")

    def test_get_returns_copy(self):
        recorder = InMemoryExecutionRecorder()
        execution_id = recorder.create(None, None)

        recorder.get(execution_id).logs.append(
            LogEntry(timestamp=datetime.utcnow(), level=LogLevel.INFO, message="local only")
        )

        assert recorder.get(execution_id).logs == []
