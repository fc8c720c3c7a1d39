"""Data models for the agent pipeline engine."""

from .core import (
    ExecutionStatusEnum,
    StepStatus,
    OnErrorPolicy,
    LogLevel,
    ValidationResult,
    AgentDefinition,
    AgentStep,
    Workflow,
    Recommendation,
    OutputMetrics,
    AgentOutput,
    ContextOutput,
    StepResult,
    ErrorDetails,
    LogEntry,
    WorkflowExecution,
    WorkflowSummary,
)

__all__ = [
    "ExecutionStatusEnum",
    "StepStatus",
    "OnErrorPolicy",
    "LogLevel",
    "ValidationResult",
    "AgentDefinition",
    "AgentStep",
    "Workflow",
    "Recommendation",
    "OutputMetrics",
    "AgentOutput",
    "ContextOutput",
    "StepResult",
    "ErrorDetails",
    "LogEntry",
    "WorkflowExecution",
    "WorkflowSummary",
]
