"""Pytest configuration and fixtures."""

import os
import tempfile
import threading
from typing import Any, Dict, List, NamedTuple, Optional

import pytest

from agent_pipeline.core.agent_catalog import AgentCatalog
from agent_pipeline.core.exceptions import InvocationError, InvocationErrorKind
from agent_pipeline.core.expressions import ExpressionEvaluator
from agent_pipeline.core.invoker import AgentInvoker
from agent_pipeline.core.log_stream import LogStream
from agent_pipeline.core.recorder import InMemoryExecutionRecorder
from agent_pipeline.core.scheduler import WorkflowScheduler
from agent_pipeline.core.step_runner import StepRunner
from agent_pipeline.models.core import AgentDefinition, AgentStep, Workflow
from agent_pipeline.storage.database import configure_database, create_tables, reset_database_engine

AGENT_NAMES = {
    "A": "Architect",
    "B": "Builder",
    "C": "Critic",
    "D": "Deployer",
    "F": "Fallback",
}


def make_output(score: float = 0.9, confidence: float = 0.8, title: str = "Recommendation") -> Dict[str, Any]:
    """Build an invoker payload of the expected shape."""
    return {
        "recommendations": [
            {"title": title, "description": "Details", "impact": "high", "priority": "P1"}
        ],
        "metrics": {"score": score, "confidence": confidence},
        "next_action": "review",
    }


def make_workflow(*steps, name: str = "Test Workflow") -> Workflow:
    """Build a workflow from AgentStep instances or step dicts."""
    return Workflow(
        name=name,
        steps=[step if isinstance(step, AgentStep) else AgentStep(**step) for step in steps]
    )


class InvokerCall(NamedTuple):
    agent_id: str
    instructions: str
    context_outputs: List[Any]
    use_internet_context: bool


class ScriptedInvoker(AgentInvoker):
    """Invoker that replays scripted outcomes per agent and records every call.

    Agents are recognised by their system prompt, ``agent:<id>``. An outcome
    is returned if it is a payload, raised if it is an exception, and called
    if it is callable. Agents with no script left return ``make_output()``.
    """

    def __init__(self):
        self.scripts: Dict[str, List[Any]] = {}
        self.failing: Dict[str, InvocationErrorKind] = {}
        self.calls: List[InvokerCall] = []
        self._lock = threading.Lock()

    def script(self, agent_id: str, *outcomes) -> "ScriptedInvoker":
        self.scripts.setdefault(agent_id, []).extend(outcomes)
        return self

    def fail_always(self, agent_id: str, kind: InvocationErrorKind = InvocationErrorKind.PROVIDER) -> "ScriptedInvoker":
        self.failing[agent_id] = kind
        return self

    def attempts(self, agent_id: str) -> int:
        with self._lock:
            return sum(1 for call in self.calls if call.agent_id == agent_id)

    def invoke(self, system_prompt, instructions, context_outputs, use_internet_context):
        agent_id = system_prompt.split(":", 1)[1]
        with self._lock:
            self.calls.append(InvokerCall(agent_id, instructions, list(context_outputs), use_internet_context))
            queue = self.scripts.get(agent_id)
            outcome = queue.pop(0) if queue else None

        if agent_id in self.failing:
            raise InvocationError(f"{AGENT_NAMES.get(agent_id, agent_id)} is unavailable", kind=self.failing[agent_id])
        if outcome is None:
            return make_output()
        if isinstance(outcome, Exception):
            raise outcome
        if callable(outcome):
            return outcome()
        return outcome


def register_agents(catalog: AgentCatalog, agent_ids=None) -> None:
    for agent_id in agent_ids or AGENT_NAMES:
        catalog.register_agent(AgentDefinition(
            id=agent_id,
            name=AGENT_NAMES.get(agent_id, agent_id),
            system_prompt=f"agent:{agent_id}"
        ))


@pytest.fixture
def temp_db():
    """Create a temporary database for testing."""
    db_fd, db_path = tempfile.mkstemp(suffix=".db")
    os.close(db_fd)

    configure_database(f"sqlite:///{db_path}")
    create_tables()

    yield db_path

    reset_database_engine()
    try:
        os.unlink(db_path)
    except OSError:
        pass


@pytest.fixture
def agent_catalog(temp_db):
    """Agent catalog with the agents A, B, C, D and F registered."""
    catalog = AgentCatalog()
    register_agents(catalog)
    return catalog


@pytest.fixture
def invoker():
    return ScriptedInvoker()


@pytest.fixture
def step_runner(agent_catalog, invoker):
    """Step runner without retry backoff."""
    return StepRunner(agent_catalog, invoker, evaluator=ExpressionEvaluator(), backoff_unit=0)


@pytest.fixture
def recorder():
    return InMemoryExecutionRecorder()


@pytest.fixture
def scheduler(step_runner, recorder):
    return WorkflowScheduler(step_runner, recorder)


@pytest.fixture
def log_stream():
    return LogStream("test-execution")


def messages(entries, agent_id: Optional[str] = None) -> List[str]:
    """Messages of log entries, optionally only those about one agent."""
    return [entry.message for entry in entries if agent_id is None or entry.agent_id == agent_id]
