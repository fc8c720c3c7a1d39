"""Sequential driver of workflow runs: failure policies, cancellation and finalization."""

import uuid
from datetime import datetime
from typing import Iterable, Optional, Tuple

from ..models.core import (
    AgentStep,
    ErrorDetails,
    ExecutionStatusEnum,
    OnErrorPolicy,
    StepResult,
    StepStatus,
    Workflow,
    WorkflowExecution,
)
from .cancellation import CancellationToken
from .exceptions import ExecutionCancelledError, StepError, StepExhaustedError
from .log_stream import LogObserver, LogStream
from .logging import clear_logging_context, get_logger, set_logging_context
from .recorder import ExecutionRecorder, InMemoryExecutionRecorder
from .step_runner import StepRunner, elapsed_ms

logger = get_logger(__name__)

CANCELLED_ERROR_KIND = "cancelled"


class WorkflowScheduler:
    """Runs the steps of a workflow one at a time, in declared order.

    An execution moves from ``running`` to ``completed`` or ``failed`` exactly
    once. Only a step with ``on_error=stop`` (or cancellation) aborts a run;
    the recorder is updated after every result and at finalization, and a
    recorder failure never changes the outcome of the run.
    """

    def __init__(self, step_runner: StepRunner, recorder: Optional[ExecutionRecorder] = None):
        self.step_runner = step_runner
        self.recorder = recorder or InMemoryExecutionRecorder()

    def run(
        self,
        workflow: Workflow,
        cancellation_token: Optional[CancellationToken] = None,
        project_id: Optional[str] = None,
        observers: Iterable[LogObserver] = ()
    ) -> WorkflowExecution:
        """Run a workflow to completion on the calling thread."""
        execution, log_stream = self.prepare(workflow, project_id)
        for observer in observers:
            log_stream.subscribe(observer)
        return self.drive(execution, workflow, log_stream, cancellation_token or CancellationToken())

    def prepare(
        self,
        workflow: Workflow,
        project_id: Optional[str] = None,
        execution_id: Optional[str] = None
    ) -> Tuple[WorkflowExecution, LogStream]:
        """Create the running execution record and its log stream."""
        started_at = datetime.utcnow()
        persist_error = None
        try:
            execution_id = self.recorder.create(
                workflow.id, project_id, execution_id=execution_id, started_at=started_at
            )
        except Exception as e:
            logger.error(f"Failed to record new execution of workflow '{workflow.name}': {str(e)}")
            persist_error = e
            execution_id = execution_id or str(uuid.uuid4())

        execution = WorkflowExecution(
            id=execution_id,
            workflow_id=workflow.id,
            project_id=project_id,
            status=ExecutionStatusEnum.RUNNING,
            started_at=started_at
        )
        log_stream = LogStream(execution_id)
        log_stream.subscribe(execution.logs.append)

        if persist_error is not None:
            log_stream.warning(f"Failed to persist execution state: {persist_error}")
        return execution, log_stream

    def drive(
        self,
        execution: WorkflowExecution,
        workflow: Workflow,
        log_stream: LogStream,
        cancellation_token: CancellationToken
    ) -> WorkflowExecution:
        """Run the steps of a prepared execution and finalize it."""
        set_logging_context(execution_id=execution.id, workflow_id=workflow.id)
        current_step: Optional[AgentStep] = None
        try:
            log_stream.info(f"Starting workflow: {workflow.name}")

            for index, step in enumerate(workflow.steps):
                current_step = step
                cancellation_token.raise_if_cancelled()
                try:
                    result = self.step_runner.run(step, execution.results, log_stream, cancellation_token)
                except StepError as e:
                    if step.on_error == OnErrorPolicy.STOP:
                        return self._fail_at(index, step, e, execution, log_stream)
                    if step.on_error == OnErrorPolicy.CONTINUE:
                        log_stream.warning("Continuing despite error...")
                        result = self._failed_result(step, e)
                    else:
                        fallback = step.as_fallback()
                        current_step = fallback
                        log_stream.info("Executing fallback agent...", fallback.agent_id)
                        try:
                            result = self.step_runner.run(fallback, execution.results, log_stream, cancellation_token)
                        except StepError as fallback_error:
                            return self._fail_at(index, fallback, fallback_error, execution, log_stream)

                self._append(execution, result, log_stream)

            return self._finalize(execution, log_stream, ExecutionStatusEnum.COMPLETED)

        except ExecutionCancelledError as e:
            log_stream.error(f"Workflow cancelled: {e.message}")
            return self._finalize(
                execution, log_stream, ExecutionStatusEnum.FAILED,
                ErrorDetails(
                    failed_agent=current_step.agent_id if current_step else None,
                    error_message=e.message,
                    error_kind=CANCELLED_ERROR_KIND
                )
            )
        except Exception as e:
            logger.exception(f"Unexpected error while running execution {execution.id}")
            log_stream.error(f"Workflow failed: {str(e)}")
            return self._finalize(
                execution, log_stream, ExecutionStatusEnum.FAILED,
                ErrorDetails(
                    failed_agent=current_step.agent_id if current_step else None,
                    error_message=str(e),
                    error_kind=type(e).__name__
                )
            )
        finally:
            clear_logging_context()

    def _fail_at(
        self,
        index: int,
        step: AgentStep,
        error: StepError,
        execution: WorkflowExecution,
        log_stream: LogStream
    ) -> WorkflowExecution:
        """Record the failed step and finalize the run as failed."""
        self._append(execution, self._failed_result(step, error), log_stream)
        log_stream.error(f"Workflow failed at step {index + 1}: {error.message}")
        return self._finalize(
            execution, log_stream, ExecutionStatusEnum.FAILED,
            ErrorDetails(failed_agent=step.agent_id, error_message=error.message, error_kind=error.error_code)
        )

    @staticmethod
    def _failed_result(step: AgentStep, error: StepError) -> StepResult:
        completed_at = datetime.utcnow()
        started_at = min(error.started_at, completed_at)
        retry_count = error.attempts - 1 if isinstance(error, StepExhaustedError) else 0
        return StepResult(
            agent_id=step.agent_id,
            agent_name=error.agent_name or step.agent_id,
            status=StepStatus.FAILED,
            started_at=started_at,
            completed_at=completed_at,
            duration_ms=elapsed_ms(started_at, completed_at),
            retry_count=retry_count,
            error=error.message
        )

    def _append(self, execution: WorkflowExecution, result: StepResult, log_stream: LogStream) -> None:
        execution.results = [*execution.results, result]
        self._persist(execution, log_stream)

    def _finalize(
        self,
        execution: WorkflowExecution,
        log_stream: LogStream,
        status: ExecutionStatusEnum,
        error_details: Optional[ErrorDetails] = None
    ) -> WorkflowExecution:
        if execution.is_finalized:
            raise RuntimeError(f"Execution {execution.id} is already finalized")

        completed_at = datetime.utcnow()
        execution.completed_at = completed_at
        execution.duration_ms = elapsed_ms(execution.started_at, completed_at)
        execution.error_details = error_details
        execution.status = status

        if status == ExecutionStatusEnum.COMPLETED:
            log_stream.success(f"Workflow completed in {execution.duration_ms / 1000:.2f}s")

        self._persist(execution, log_stream)
        logger.info(f"Execution {execution.id} finalized as {status.value} in {execution.duration_ms}ms")
        return execution

    def _persist(self, execution: WorkflowExecution, log_stream: LogStream) -> None:
        try:
            self.recorder.update(
                execution.id,
                execution.results,
                list(execution.logs),
                execution.status,
                error_details=execution.error_details,
                completed_at=execution.completed_at,
                duration_ms=execution.duration_ms
            )
        except Exception as e:
            logger.error(f"Failed to persist execution {execution.id}: {str(e)}")
            log_stream.warning(f"Failed to persist execution state: {e}")
