"""Core Pydantic models for the agent pipeline engine."""

import re
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class ExecutionStatusEnum(str, Enum):
    """Enumeration of workflow execution statuses."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class StepStatus(str, Enum):
    """Terminal status of a single pipeline step."""
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class OnErrorPolicy(str, Enum):
    """What the scheduler does when a step fails."""
    STOP = "stop"
    CONTINUE = "continue"
    FALLBACK = "fallback"


class LogLevel(str, Enum):
    """Levels of entries in the execution log stream."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    SUCCESS = "success"


class ValidationResult(BaseModel):
    """Result of workflow validation."""
    is_valid: bool = Field(..., description="Whether the workflow is valid")
    errors: List[str] = Field(default_factory=list, description="List of validation errors")
    warnings: List[str] = Field(default_factory=list, description="List of validation warnings")


class AgentDefinition(BaseModel):
    """Agent catalog entry."""
    id: str = Field(..., description="Unique identifier of the agent")
    name: str = Field(..., description="Human readable agent name")
    system_prompt: str = Field(..., description="System prompt sent with every invocation")
    icon: Optional[str] = Field(None, description="Display icon")

    @field_validator('id')
    @classmethod
    def validate_id_format(cls, id_value):
        """Ensure agent ID follows valid format."""
        if not id_value or not id_value.strip():
            raise ValueError("Agent ID cannot be empty")

        if not re.match(r'^[a-zA-Z0-9_.-]+$', id_value.strip()):
            raise ValueError("Agent ID must contain only alphanumeric characters, dots, underscores, and hyphens")

        return id_value.strip()

    @field_validator('name', 'system_prompt')
    @classmethod
    def validate_not_empty(cls, value):
        if not value or not value.strip():
            raise ValueError("Value cannot be empty")
        return value.strip()


class AgentStep(BaseModel):
    """One pipeline stage bound to an agent."""
    model_config = ConfigDict(frozen=True)

    agent_id: str = Field(..., description="Agent catalog reference")
    depends_on: List[str] = Field(default_factory=list, description="Agents that must have completed first")
    condition: Optional[str] = Field(None, description="Gating expression over the previous output")
    instructions: str = Field("", description="Task description passed to the invoker")
    use_internet_context: bool = Field(True, description="Passed through to the invoker")
    max_retries: int = Field(2, description="Retries after the first failed attempt")
    on_error: OnErrorPolicy = Field(OnErrorPolicy.STOP, description="Failure policy")
    fallback_agent_id: Optional[str] = Field(None, description="Substitute agent for on_error=fallback")

    @field_validator('agent_id')
    @classmethod
    def validate_agent_id(cls, agent_id):
        if not agent_id or not agent_id.strip():
            raise ValueError("Step agent_id cannot be empty")
        return agent_id.strip()

    @field_validator('depends_on')
    @classmethod
    def validate_depends_on(cls, depends_on):
        """Drop blanks and duplicates while keeping declaration order."""
        seen = []
        for agent_id in depends_on:
            agent_id = agent_id.strip() if agent_id else ""
            if not agent_id:
                raise ValueError("Dependency IDs cannot be empty")
            if agent_id not in seen:
                seen.append(agent_id)
        return seen

    @field_validator('condition')
    @classmethod
    def validate_condition(cls, condition):
        if condition is not None and not condition.strip():
            return None
        return condition.strip() if condition else None

    @field_validator('max_retries')
    @classmethod
    def validate_max_retries(cls, max_retries):
        if max_retries < 0:
            raise ValueError("max_retries must be a non-negative integer")
        return max_retries

    @model_validator(mode='after')
    def validate_fallback(self):
        """fallback_agent_id is required iff on_error is fallback."""
        if self.on_error == OnErrorPolicy.FALLBACK:
            if not self.fallback_agent_id or not self.fallback_agent_id.strip():
                raise ValueError("fallback_agent_id is required when on_error is 'fallback'")
        elif self.fallback_agent_id:
            raise ValueError("fallback_agent_id is only allowed when on_error is 'fallback'")
        return self

    def as_fallback(self) -> "AgentStep":
        """Return a copy of this step bound to its fallback agent.

        The copy has no condition: the primary already passed it.
        """
        return self.model_copy(update={"agent_id": self.fallback_agent_id.strip(), "condition": None})


class Workflow(BaseModel):
    """Immutable pipeline definition consumed per run."""
    model_config = ConfigDict(frozen=True)

    id: Optional[str] = Field(None, description="Workflow ID, assigned when stored")
    name: str = Field(..., description="Name of the workflow")
    description: str = Field("", description="Description of the workflow")
    steps: List[AgentStep] = Field(..., description="Steps in execution order")

    @field_validator('name')
    @classmethod
    def validate_name_not_empty(cls, name):
        """Ensure workflow name is not empty."""
        if not name.strip():
            raise ValueError("Workflow name cannot be empty")
        return name.strip()

    @field_validator('steps')
    @classmethod
    def validate_steps(cls, steps):
        if not steps:
            raise ValueError("Workflow must contain at least one step")
        return steps

    def referenced_agent_ids(self) -> List[str]:
        """Every agent ID the workflow needs from the catalog, in order of appearance."""
        agent_ids = []
        for step in self.steps:
            for agent_id in (step.agent_id, step.fallback_agent_id):
                if agent_id and agent_id not in agent_ids:
                    agent_ids.append(agent_id)
        return agent_ids


class Recommendation(BaseModel):
    title: str
    description: str = ""
    impact: str = ""
    priority: str = ""


class OutputMetrics(BaseModel):
    score: Optional[float] = None
    confidence: Optional[float] = None


class AgentOutput(BaseModel):
    """Shape every invoker result must conform to."""
    recommendations: List[Recommendation] = Field(default_factory=list)
    metrics: OutputMetrics = Field(default_factory=OutputMetrics)
    next_action: Optional[str] = None


class ContextOutput(BaseModel):
    """Output of an earlier step handed to the invoker as context."""
    agent_name: str
    output: Optional[Dict[str, Any]] = None


class StepResult(BaseModel):
    """Outcome of one step's attempt sequence. Never mutated once created."""
    model_config = ConfigDict(frozen=True)

    agent_id: str = Field(..., description="Agent that ran the step")
    agent_name: str = Field(..., description="Display name of the agent")
    status: StepStatus = Field(..., description="Terminal status of the step")
    started_at: datetime = Field(..., description="When the step started")
    completed_at: datetime = Field(..., description="When the step finished")
    duration_ms: int = Field(0, description="Wall-clock duration in milliseconds")
    output: Optional[Dict[str, Any]] = Field(None, description="Invoker output, completed steps only")
    retry_count: int = Field(0, description="Retries consumed")
    error: Optional[str] = Field(None, description="Error message, failed steps only")

    @model_validator(mode='after')
    def validate_status_fields(self):
        if self.status != StepStatus.COMPLETED and self.output is not None:
            raise ValueError("Only completed steps carry output")
        if self.status != StepStatus.FAILED and self.error is not None:
            raise ValueError("Only failed steps carry an error")
        return self


class ErrorDetails(BaseModel):
    """Why a run finalized as failed."""
    failed_agent: Optional[str] = Field(None, description="Agent of the step that aborted the run")
    error_message: str = Field(..., description="Error message")
    error_kind: Optional[str] = Field(None, description="Error code of the aborting error")


class LogEntry(BaseModel):
    """Entry of the execution log stream."""
    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(..., description="Timestamp of the log entry")
    level: LogLevel = Field(..., description="Severity of the entry")
    message: str = Field(..., description="Log message")
    agent_id: Optional[str] = Field(None, description="Agent the entry is about")


class WorkflowExecution(BaseModel):
    """One run of a workflow."""
    id: str = Field(..., description="Unique identifier of the execution")
    workflow_id: Optional[str] = Field(None, description="ID of the workflow being executed")
    project_id: Optional[str] = Field(None, description="Project the run belongs to")
    status: ExecutionStatusEnum = Field(ExecutionStatusEnum.RUNNING, description="Current status")
    started_at: datetime = Field(..., description="Timestamp when execution started")
    completed_at: Optional[datetime] = Field(None, description="Timestamp when execution completed")
    duration_ms: Optional[int] = Field(None, description="Total duration in milliseconds")
    results: List[StepResult] = Field(default_factory=list, description="Step results in order")
    logs: List[LogEntry] = Field(default_factory=list, description="Log entries in emission order")
    error_details: Optional[ErrorDetails] = Field(None, description="Set when the run failed")

    @property
    def is_finalized(self) -> bool:
        return self.status != ExecutionStatusEnum.RUNNING


class WorkflowSummary(BaseModel):
    """Summary information about a stored workflow."""
    id: str = Field(..., description="Workflow ID")
    name: str = Field(..., description="Workflow name")
    description: str = Field(..., description="Workflow description")
    created_at: datetime = Field(..., description="Creation timestamp")
    step_count: int = Field(..., description="Number of steps in the workflow")
