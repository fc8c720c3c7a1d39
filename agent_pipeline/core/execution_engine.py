"""Execution Engine: background and foreground runs of stored workflows."""

import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from typing import Dict, List, Optional

from ..models.core import LogEntry, Workflow, WorkflowExecution
from .cancellation import CancellationToken
from .exceptions import ExecutionEngineError, StorageError
from .log_stream import LogStream
from .logging import get_logger
from .scheduler import WorkflowScheduler
from .workflow_manager import WorkflowManager

logger = get_logger(__name__)


class _ActiveRun:
    """Live state of a run that has been submitted and not yet finished."""

    def __init__(self, execution: WorkflowExecution, log_stream: LogStream, token: CancellationToken):
        self.execution = execution
        self.log_stream = log_stream
        self.token = token
        self.future: Optional[Future] = None


class ExecutionEngine:
    """Runs workflows on a bounded thread pool, one scheduler pass per run.

    Runs share nothing but the collaborators passed in here; each gets its
    own execution record, log stream and cancellation token. Submissions
    beyond ``max_concurrent_executions`` wait in the pool's queue.
    """

    def __init__(
        self,
        workflow_manager: WorkflowManager,
        scheduler: WorkflowScheduler,
        max_concurrent_executions: int = 10,
        websocket_manager=None
    ):
        """
        Args:
            workflow_manager: Source of stored workflow definitions
            scheduler: Scheduler that drives each run
            max_concurrent_executions: Size of the worker pool
            websocket_manager: Optional WebSocket manager for real-time monitoring
        """
        self.workflow_manager = workflow_manager
        self.scheduler = scheduler
        self.websocket_manager = websocket_manager

        self._max_concurrent_executions = max_concurrent_executions
        self._executor = ThreadPoolExecutor(
            max_workers=max_concurrent_executions,
            thread_name_prefix="agent-pipeline-run"
        )
        self._active: Dict[str, _ActiveRun] = {}
        self._lock = threading.RLock()
        self._shutting_down = False

        logger.info(f"ExecutionEngine initialized with max_concurrent_executions={max_concurrent_executions}")

    def execute_workflow(self, workflow_id: str, project_id: Optional[str] = None) -> str:
        """
        Start a stored workflow in the background.

        Returns:
            ID of the new execution

        Raises:
            WorkflowNotFoundError: If the workflow does not exist
            ExecutionEngineError: If the engine is shutting down
        """
        return self.submit(self.workflow_manager.get_workflow(workflow_id), project_id)

    def submit(self, workflow: Workflow, project_id: Optional[str] = None) -> str:
        """Start a workflow definition in the background and return the execution ID."""
        if self._shutting_down:
            raise ExecutionEngineError(
                "Execution engine is shutting down", workflow_id=workflow.id, error_code="EngineShuttingDown"
            )

        execution, log_stream = self.scheduler.prepare(workflow, project_id, execution_id=str(uuid.uuid4()))
        active = _ActiveRun(execution, log_stream, CancellationToken())
        self._attach_monitoring(active)

        with self._lock:
            self._active[execution.id] = active
            active.future = self._executor.submit(self._run, active, workflow)

        logger.info(f"Submitted execution {execution.id} of workflow '{workflow.name}'")
        return execution.id

    def run_workflow(
        self,
        workflow_id: str,
        project_id: Optional[str] = None,
        cancellation_token: Optional[CancellationToken] = None
    ) -> WorkflowExecution:
        """Run a stored workflow on the calling thread and return the finalized execution."""
        workflow = self.workflow_manager.get_workflow(workflow_id)
        execution, log_stream = self.scheduler.prepare(workflow, project_id)
        active = _ActiveRun(execution, log_stream, cancellation_token or CancellationToken())
        self._attach_monitoring(active)

        with self._lock:
            self._active[execution.id] = active
        return self._run(active, workflow)

    def _run(self, active: _ActiveRun, workflow: Workflow) -> WorkflowExecution:
        try:
            execution = self.scheduler.drive(active.execution, workflow, active.log_stream, active.token)
            if self.websocket_manager:
                self.websocket_manager.queue_execution_status(execution)
            return execution
        finally:
            with self._lock:
                self._active.pop(active.execution.id, None)

    def _attach_monitoring(self, active: _ActiveRun) -> None:
        if self.websocket_manager is None:
            return
        execution_id = active.execution.id
        active.log_stream.subscribe(
            lambda entry: self.websocket_manager.queue_log_entry(execution_id, entry)
        )

    def cancel_execution(self, execution_id: str, reason: str = "Execution cancelled by user") -> bool:
        """
        Request cancellation of a running execution.

        The run finalizes as failed at its next suspension point.

        Returns:
            True if the execution was active, False otherwise
        """
        with self._lock:
            active = self._active.get(execution_id)
        if active is None:
            logger.warning(f"Attempted to cancel non-active execution: {execution_id}")
            return False

        active.token.cancel(reason)
        logger.info(f"Cancellation requested for execution {execution_id}")
        return True

    def get_execution(self, execution_id: str) -> WorkflowExecution:
        """
        Get the current state of an execution, live or recorded.

        Raises:
            ExecutionEngineError: If the execution is unknown
        """
        with self._lock:
            active = self._active.get(execution_id)
        if active is not None:
            return active.execution.model_copy(deep=True)

        try:
            execution = self.scheduler.recorder.get(execution_id)
        except StorageError as e:
            raise ExecutionEngineError(f"Failed to load execution: {e.message}", execution_id=execution_id)
        if execution is None:
            raise ExecutionEngineError(
                f"Execution {execution_id} not found",
                execution_id=execution_id,
                error_code="ExecutionNotFound"
            )
        return execution

    def get_execution_logs(self, execution_id: str) -> List[LogEntry]:
        """Log entries of an execution in emission order."""
        with self._lock:
            active = self._active.get(execution_id)
        if active is not None:
            return active.log_stream.entries()
        return self.get_execution(execution_id).logs

    def list_executions(self, workflow_id: Optional[str] = None, limit: int = 50) -> List[WorkflowExecution]:
        return self.scheduler.recorder.list_executions(workflow_id=workflow_id, limit=limit)

    def wait_for_execution(self, execution_id: str, timeout: Optional[float] = None) -> WorkflowExecution:
        """Block until a background execution finishes and return its final state."""
        with self._lock:
            active = self._active.get(execution_id)
        if active is not None and active.future is not None:
            try:
                return active.future.result(timeout=timeout)
            except FutureTimeoutError:
                raise ExecutionEngineError(
                    f"Execution {execution_id} did not finish within {timeout}s",
                    execution_id=execution_id
                )
        return self.get_execution(execution_id)

    def get_active_executions(self) -> List[str]:
        with self._lock:
            return list(self._active.keys())

    def is_execution_active(self, execution_id: str) -> bool:
        with self._lock:
            return execution_id in self._active

    def get_execution_metrics(self) -> Dict[str, int]:
        with self._lock:
            active = len(self._active)
        return {
            "active_executions": active,
            "max_concurrent_executions": self._max_concurrent_executions,
            "available_slots": max(0, self._max_concurrent_executions - active),
        }

    def shutdown(self) -> None:
        """Cancel every active execution and wait for the worker pool to drain."""
        self._shutting_down = True
        for execution_id in self.get_active_executions():
            self.cancel_execution(execution_id, reason="Execution engine shutting down")
        self._executor.shutdown(wait=True)
        logger.info("ExecutionEngine shutdown completed")
