"""Core agent pipeline engine components."""

from .exceptions import (
    WorkflowEngineError,
    WorkflowValidationError,
    WorkflowNotFoundError,
    AgentNotFoundError,
    AgentCatalogError,
    StepError,
    DependencyUnsatisfiedError,
    StepExhaustedError,
    ConditionEvaluationError,
    InvocationError,
    InvocationErrorKind,
    ExecutionCancelledError,
    ExecutionEngineError,
    StorageError,
)
from .logging import setup_logging, get_logger
from .cancellation import CancellationToken
from .expressions import ExpressionEvaluator
from .log_stream import LogStream
from .agent_catalog import AgentCatalog
from .invoker import AgentInvoker, HttpAgentInvoker
from .rate_limiter import FixedWindowRateLimiter
from .step_runner import StepRunner
from .recorder import ExecutionRecorder, InMemoryExecutionRecorder, SqlExecutionRecorder
from .scheduler import WorkflowScheduler
from .workflow_manager import WorkflowManager

__all__ = [
    "WorkflowEngineError",
    "WorkflowValidationError",
    "WorkflowNotFoundError",
    "AgentNotFoundError",
    "AgentCatalogError",
    "StepError",
    "DependencyUnsatisfiedError",
    "StepExhaustedError",
    "ConditionEvaluationError",
    "InvocationError",
    "InvocationErrorKind",
    "ExecutionCancelledError",
    "ExecutionEngineError",
    "StorageError",
    "setup_logging",
    "get_logger",
    "CancellationToken",
    "ExpressionEvaluator",
    "LogStream",
    "AgentCatalog",
    "AgentInvoker",
    "HttpAgentInvoker",
    "FixedWindowRateLimiter",
    "StepRunner",
    "ExecutionRecorder",
    "InMemoryExecutionRecorder",
    "SqlExecutionRecorder",
    "WorkflowScheduler",
    "WorkflowManager",
]
