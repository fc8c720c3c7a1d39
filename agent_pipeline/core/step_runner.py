"""Execution of a single pipeline step: dependency and condition gates, then bounded retries."""

from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from ..models.core import AgentDefinition, AgentStep, ContextOutput, StepResult, StepStatus
from .agent_catalog import AgentCatalog
from .cancellation import CancellationToken
from .exceptions import (
    AgentCatalogError,
    AgentNotFoundError,
    AgentUnavailableError,
    DependencyUnsatisfiedError,
    InvocationError,
    InvocationErrorKind,
    StepError,
    StepExhaustedError,
)
from .expressions import ExpressionEvaluator
from .invoker import AgentInvoker, validate_output
from .log_stream import LogStream
from .logging import get_logger

logger = get_logger(__name__)


def elapsed_ms(started_at: datetime, completed_at: datetime) -> int:
    return int((completed_at - started_at).total_seconds() * 1000)


def last_completed_output(results: Sequence[StepResult]) -> Optional[Dict[str, Any]]:
    """Output of the most recent completed step, or None if nothing has completed."""
    for result in reversed(results):
        if result.status == StepStatus.COMPLETED:
            return result.output
    return None


class StepRunner:
    """Runs one step against the results accumulated so far in a run.

    The runner only produces a ``StepResult`` or raises a ``StepError``;
    applying the step's failure policy and persisting state are left to the
    scheduler.
    """

    def __init__(
        self,
        catalog: AgentCatalog,
        invoker: AgentInvoker,
        evaluator: Optional[ExpressionEvaluator] = None,
        backoff_unit: float = 1.0
    ):
        """
        Args:
            catalog: Source of agent definitions
            invoker: Adapter for the external reasoning call
            evaluator: Condition evaluator, a fresh one if not given
            backoff_unit: Seconds to wait per retry number before a retry
        """
        if backoff_unit < 0:
            raise ValueError("backoff_unit must not be negative")

        self.catalog = catalog
        self.invoker = invoker
        self.evaluator = evaluator or ExpressionEvaluator()
        self.backoff_unit = backoff_unit

    def run(
        self,
        step: AgentStep,
        results: Sequence[StepResult],
        log_stream: LogStream,
        cancellation_token: Optional[CancellationToken] = None
    ) -> StepResult:
        """Run a step and return its completed or skipped result.

        Raises:
            StepError: If the agent is missing, a dependency is unsatisfied or
                every attempt failed
            ExecutionCancelledError: If the run is cancelled before the step finishes
        """
        token = cancellation_token or CancellationToken()
        started_at = datetime.utcnow()

        agent = self._resolve_agent(step, started_at, log_stream)
        log_stream.info(f"Starting {agent.name}", step.agent_id)

        self._check_dependencies(step, agent, results, started_at, log_stream)

        if step.condition and not self._condition_met(step, results, log_stream):
            log_stream.info("Condition not met, skipping", step.agent_id)
            return StepResult(
                agent_id=step.agent_id,
                agent_name=agent.name,
                status=StepStatus.SKIPPED,
                started_at=started_at,
                completed_at=started_at,
                duration_ms=0,
                retry_count=0
            )

        return self._run_attempts(step, agent, results, started_at, log_stream, token)

    def _resolve_agent(self, step: AgentStep, started_at: datetime, log_stream: LogStream) -> AgentDefinition:
        try:
            return self.catalog.get_agent(step.agent_id)
        except AgentNotFoundError:
            error = AgentUnavailableError(step.agent_id, started_at=started_at)
        except AgentCatalogError as e:
            error = StepError(
                f"Agent {step.agent_id} could not be loaded: {e.message}",
                agent_id=step.agent_id,
                started_at=started_at,
                error_code="AgentCatalogUnavailable"
            )
        log_stream.error(error.message, step.agent_id)
        raise error

    def _check_dependencies(
        self,
        step: AgentStep,
        agent: AgentDefinition,
        results: Sequence[StepResult],
        started_at: datetime,
        log_stream: LogStream
    ) -> None:
        if not step.depends_on:
            return

        for dependency_id in step.depends_on:
            # The first result recorded for an agent is the one that counts.
            dependency = next((r for r in results if r.agent_id == dependency_id), None)
            if dependency is None or dependency.status != StepStatus.COMPLETED:
                error = DependencyUnsatisfiedError(
                    step.agent_id,
                    dependency_id,
                    agent_name=agent.name,
                    started_at=started_at
                )
                log_stream.error(error.message, step.agent_id)
                raise error

        log_stream.info(f"Dependencies satisfied: {len(step.depends_on)}", step.agent_id)

    def _condition_met(self, step: AgentStep, results: Sequence[StepResult], log_stream: LogStream) -> bool:
        return self.evaluator.evaluate(
            step.condition,
            last_completed_output(results),
            on_error=lambda message: log_stream.error(message, step.agent_id)
        )

    def _run_attempts(
        self,
        step: AgentStep,
        agent: AgentDefinition,
        results: Sequence[StepResult],
        started_at: datetime,
        log_stream: LogStream,
        token: CancellationToken
    ) -> StepResult:
        max_attempts = step.max_retries + 1
        context_outputs = [
            ContextOutput(agent_name=result.agent_name, output=result.output) for result in results
        ]
        last_error: Optional[InvocationError] = None

        for attempt in range(max_attempts):
            if attempt > 0:
                log_stream.warning(f"Retry attempt {attempt}/{step.max_retries}", step.agent_id)
                token.sleep(attempt * self.backoff_unit)
            token.raise_if_cancelled()

            try:
                output = self._invoke(agent, step, context_outputs)
            except InvocationError as e:
                last_error = e
                log_stream.warning(f"Attempt {attempt + 1} failed: {e.message}", step.agent_id)
                continue

            # An invocation that returns after cancellation is abandoned.
            token.raise_if_cancelled()

            completed_at = datetime.utcnow()
            duration_ms = elapsed_ms(started_at, completed_at)
            log_stream.success(f"Completed in {duration_ms}ms", step.agent_id)
            return StepResult(
                agent_id=step.agent_id,
                agent_name=agent.name,
                status=StepStatus.COMPLETED,
                started_at=started_at,
                completed_at=completed_at,
                duration_ms=duration_ms,
                output=output,
                retry_count=attempt
            )

        error = StepExhaustedError(step.agent_id, agent.name, max_attempts, last_error, started_at=started_at)
        log_stream.error(error.message, step.agent_id)
        raise error

    def _invoke(
        self,
        agent: AgentDefinition,
        step: AgentStep,
        context_outputs: List[ContextOutput]
    ) -> Dict[str, Any]:
        try:
            payload = self.invoker.invoke(
                agent.system_prompt,
                step.instructions,
                context_outputs,
                step.use_internet_context
            )
        except InvocationError:
            raise
        except Exception as e:
            logger.exception(f"Invoker raised an unexpected error for agent '{agent.id}'")
            raise InvocationError(f"{type(e).__name__}: {e}", kind=InvocationErrorKind.PROVIDER)

        return validate_output(payload)
