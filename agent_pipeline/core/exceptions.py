"""Custom exceptions for the agent pipeline engine with detailed error information."""

from datetime import datetime
from typing import Optional, Dict, Any, List
from enum import Enum


class ErrorSeverity(Enum):
    """Error severity levels for categorizing exceptions."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Categories of errors for better classification."""
    VALIDATION = "validation"
    EXECUTION = "execution"
    STORAGE = "storage"
    NETWORK = "network"
    CONFIGURATION = "configuration"
    CANCELLATION = "cancellation"


class InvocationErrorKind(str, Enum):
    """Classification of agent invocation failures. Retries ignore it."""
    TIMEOUT = "timeout"
    TRANSPORT = "transport"
    PROVIDER = "provider"
    MALFORMED_OUTPUT = "malformed_output"
    RATE_LIMITED = "rate_limited"


class WorkflowEngineError(Exception):
    """Base exception for all agent pipeline errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.EXECUTION,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = False,
        retry_after: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.severity = severity
        self.category = category
        self.details = details or {}
        self.recoverable = recoverable
        self.retry_after = retry_after
        self.context = context or {}
        self.timestamp = datetime.utcnow()

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging and API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "details": self.details,
            "recoverable": self.recoverable,
            "retry_after": self.retry_after,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "exception_type": self.__class__.__name__
        }

    def add_context(self, **kwargs):
        """Add additional context to the exception."""
        self.context.update(kwargs)
        return self

    def add_details(self, **kwargs):
        """Add additional details to the exception."""
        self.details.update(kwargs)
        return self


class WorkflowValidationError(WorkflowEngineError):
    """Raised when a workflow fails load-time validation."""

    def __init__(
        self,
        message: str,
        validation_errors: Optional[List[str]] = None,
        workflow_name: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.VALIDATION,
            **kwargs
        )
        self.validation_errors = validation_errors or []
        if workflow_name:
            self.add_context(workflow_name=workflow_name)
        if validation_errors:
            self.add_details(validation_errors=validation_errors)


class WorkflowNotFoundError(WorkflowEngineError):
    """Raised when no stored workflow has the requested ID."""

    def __init__(self, workflow_id: str, **kwargs):
        super().__init__(
            f"Workflow with ID '{workflow_id}' not found",
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.STORAGE,
            **kwargs
        )
        self.add_context(workflow_id=workflow_id)


class AgentNotFoundError(WorkflowEngineError):
    """Raised when the agent catalog has no entry for an ID."""

    def __init__(self, agent_id: str, **kwargs):
        super().__init__(
            f"Agent '{agent_id}' not found",
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.CONFIGURATION,
            **kwargs
        )
        self.agent_id = agent_id
        self.add_context(agent_id=agent_id)


class AgentCatalogError(WorkflowEngineError):
    """Raised when agent catalog operations fail."""

    def __init__(self, message: str, agent_id: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.CONFIGURATION,
            **kwargs
        )
        if agent_id:
            self.add_context(agent_id=agent_id)


class StepError(WorkflowEngineError):
    """A step failure the scheduler resolves through the step's on_error policy."""

    def __init__(
        self,
        message: str,
        agent_id: Optional[str] = None,
        agent_name: Optional[str] = None,
        started_at: Optional[datetime] = None,
        **kwargs
    ):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("category", ErrorCategory.EXECUTION)
        super().__init__(message, **kwargs)
        self.agent_id = agent_id
        self.agent_name = agent_name or agent_id
        self.started_at = started_at or self.timestamp
        if agent_id:
            self.add_context(agent_id=agent_id)


class AgentUnavailableError(StepError):
    """The step's agent is no longer in the catalog at run time."""

    def __init__(self, agent_id: str, **kwargs):
        super().__init__(
            f"Agent {agent_id} not found",
            agent_id=agent_id,
            error_code="AgentNotFound",
            **kwargs
        )


class DependencyUnsatisfiedError(StepError):
    """A declared dependency has not completed successfully. Never retried."""

    def __init__(self, agent_id: str, dependency_id: str, **kwargs):
        super().__init__(
            f"Dependency {dependency_id} not satisfied",
            agent_id=agent_id,
            error_code="DependencyUnsatisfied",
            **kwargs
        )
        self.dependency_id = dependency_id
        self.add_details(dependency_id=dependency_id)


class StepExhaustedError(StepError):
    """Every invocation attempt of a step failed."""

    def __init__(
        self,
        agent_id: str,
        agent_name: str,
        attempts: int,
        last_error: "InvocationError",
        **kwargs
    ):
        super().__init__(
            f"Agent {agent_name} failed after {attempts} attempts: {last_error.message}",
            agent_id=agent_id,
            agent_name=agent_name,
            error_code="StepExhausted",
            **kwargs
        )
        self.attempts = attempts
        self.last_error = last_error
        self.add_details(attempts=attempts, last_error_kind=last_error.kind.value)


class ConditionEvaluationError(WorkflowEngineError):
    """Raised inside the expression evaluator when a condition cannot be evaluated."""

    def __init__(self, message: str, condition: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.VALIDATION,
            error_code="ConditionEvaluationFailed",
            **kwargs
        )
        if condition is not None:
            self.add_context(condition=condition)


class InvocationError(WorkflowEngineError):
    """Raised by an agent invoker when the external reasoning call fails."""

    def __init__(
        self,
        message: str,
        kind: InvocationErrorKind = InvocationErrorKind.PROVIDER,
        status_code: Optional[int] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.NETWORK,
            recoverable=True,
            **kwargs
        )
        self.kind = kind
        self.add_details(kind=kind.value)
        if status_code is not None:
            self.add_details(status_code=status_code)


class ExecutionCancelledError(WorkflowEngineError):
    """Raised at a suspension point once the caller has cancelled the run."""

    def __init__(self, message: str = "Execution cancelled", **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.CANCELLATION,
            error_code="Cancelled",
            **kwargs
        )


class ExecutionEngineError(WorkflowEngineError):
    """Raised when execution engine operations fail."""

    def __init__(
        self,
        message: str,
        execution_id: Optional[str] = None,
        workflow_id: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.EXECUTION,
            **kwargs
        )
        if execution_id:
            self.add_context(execution_id=execution_id)
        if workflow_id:
            self.add_context(workflow_id=workflow_id)


class StorageError(WorkflowEngineError):
    """Raised when storage operations fail."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        table: Optional[str] = None,
        recoverable: bool = True,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.STORAGE,
            recoverable=recoverable,
            retry_after=3 if recoverable else None,
            **kwargs
        )
        if operation:
            self.add_context(operation=operation)
        if table:
            self.add_context(table=table)


class ConfigurationError(WorkflowEngineError):
    """Raised when configuration is invalid or missing."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.CONFIGURATION,
            **kwargs
        )
        if config_key:
            self.add_context(config_key=config_key)


def create_error_response(error: WorkflowEngineError) -> Dict[str, Any]:
    """Create a standardized error response from a WorkflowEngineError."""
    return {
        "error": error.error_code,
        "message": error.message,
        "details": {
            **error.details,
            "severity": error.severity.value,
            "category": error.category.value,
            "recoverable": error.recoverable,
            "retry_after": error.retry_after,
            "timestamp": error.timestamp.isoformat()
        },
        "context": error.context
    }
