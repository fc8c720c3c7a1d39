"""Durable state of workflow executions."""

import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError

from ..models.core import (
    ErrorDetails,
    ExecutionStatusEnum,
    LogEntry,
    StepResult,
    WorkflowExecution,
)
from ..storage.database import get_db
from ..storage.models import WorkflowExecutionModel
from .error_recovery import RetryConfig, with_retry
from .exceptions import StorageError
from .logging import get_logger

logger = get_logger(__name__)

_STORAGE_RETRY = RetryConfig(max_attempts=3, base_delay=0.2, retryable_exceptions=[StorageError])


class ExecutionRecorder(ABC):
    """Persistence boundary for execution state.

    ``update`` always receives the complete result and log lists, so an
    implementation may overwrite whatever it stored before.
    """

    @abstractmethod
    def create(
        self,
        workflow_id: Optional[str],
        project_id: Optional[str],
        execution_id: Optional[str] = None,
        started_at: Optional[datetime] = None
    ) -> str:
        """Record a new running execution and return its ID."""

    @abstractmethod
    def update(
        self,
        execution_id: str,
        results: Sequence[StepResult],
        logs: Sequence[LogEntry],
        status: ExecutionStatusEnum,
        error_details: Optional[ErrorDetails] = None,
        completed_at: Optional[datetime] = None,
        duration_ms: Optional[int] = None
    ) -> None:
        """Store the current state of an execution."""

    @abstractmethod
    def get(self, execution_id: str) -> Optional[WorkflowExecution]:
        """Load an execution, or None if it is unknown."""

    @abstractmethod
    def list_executions(self, workflow_id: Optional[str] = None, limit: int = 50) -> List[WorkflowExecution]:
        """List executions, newest first."""


class InMemoryExecutionRecorder(ExecutionRecorder):
    """Process-local recorder, used when no database is wanted."""

    def __init__(self):
        self._executions: Dict[str, WorkflowExecution] = {}
        self._lock = threading.Lock()

    def create(self, workflow_id, project_id, execution_id=None, started_at=None) -> str:
        execution_id = execution_id or str(uuid.uuid4())
        with self._lock:
            if execution_id in self._executions:
                raise StorageError(f"Execution {execution_id} already exists", operation="create")
            self._executions[execution_id] = WorkflowExecution(
                id=execution_id,
                workflow_id=workflow_id,
                project_id=project_id,
                status=ExecutionStatusEnum.RUNNING,
                started_at=started_at or datetime.utcnow()
            )
        return execution_id

    def update(self, execution_id, results, logs, status, error_details=None, completed_at=None, duration_ms=None) -> None:
        with self._lock:
            current = self._executions.get(execution_id)
            if current is None:
                raise StorageError(f"Execution {execution_id} not found", operation="update", recoverable=False)
            self._executions[execution_id] = current.model_copy(update={
                "results": list(results),
                "logs": list(logs),
                "status": status,
                "error_details": error_details,
                "completed_at": completed_at,
                "duration_ms": duration_ms,
            })

    def get(self, execution_id: str) -> Optional[WorkflowExecution]:
        with self._lock:
            execution = self._executions.get(execution_id)
            return execution.model_copy(deep=True) if execution else None

    def list_executions(self, workflow_id=None, limit=50) -> List[WorkflowExecution]:
        with self._lock:
            executions = [
                e for e in self._executions.values()
                if workflow_id is None or e.workflow_id == workflow_id
            ]
        executions.sort(key=lambda e: e.started_at, reverse=True)
        return [e.model_copy(deep=True) for e in executions[:limit]]


class SqlExecutionRecorder(ExecutionRecorder):
    """Recorder backed by the ``workflow_executions`` table."""

    def __init__(self, db_session: Optional[Session] = None):
        """
        Args:
            db_session: Optional database session. If not provided, will create new sessions as needed.
        """
        self._db_session = db_session

    def _get_session(self) -> Session:
        if self._db_session:
            return self._db_session
        return next(get_db())

    def _release(self, session: Session) -> None:
        if not self._db_session:
            session.close()

    @with_retry(_STORAGE_RETRY)
    def create(self, workflow_id, project_id, execution_id=None, started_at=None) -> str:
        execution_id = execution_id or str(uuid.uuid4())
        session = self._get_session()
        try:
            session.add(WorkflowExecutionModel(
                id=execution_id,
                workflow_id=workflow_id,
                project_id=project_id,
                status=ExecutionStatusEnum.RUNNING.value,
                results=[],
                logs=[],
                started_at=started_at or datetime.utcnow()
            ))
            session.commit()
            logger.debug(f"Created execution record {execution_id}")
            return execution_id
        except SQLAlchemyError as e:
            session.rollback()
            raise StorageError(
                f"Failed to create execution record: {str(e)}",
                operation="create",
                table=WorkflowExecutionModel.__tablename__
            )
        finally:
            self._release(session)

    @with_retry(_STORAGE_RETRY)
    def update(self, execution_id, results, logs, status, error_details=None, completed_at=None, duration_ms=None) -> None:
        session = self._get_session()
        try:
            model = session.get(WorkflowExecutionModel, execution_id)
            if model is None:
                raise StorageError(
                    f"Execution {execution_id} not found",
                    operation="update",
                    table=WorkflowExecutionModel.__tablename__,
                    recoverable=False
                )

            model.status = status.value
            model.results = [result.model_dump(mode="json") for result in results]
            model.logs = [entry.model_dump(mode="json") for entry in logs]
            model.error_details = error_details.model_dump(mode="json") if error_details else None
            model.completed_at = completed_at
            model.duration_ms = duration_ms
            session.commit()

        except SQLAlchemyError as e:
            session.rollback()
            raise StorageError(
                f"Failed to update execution {execution_id}: {str(e)}",
                operation="update",
                table=WorkflowExecutionModel.__tablename__
            )
        finally:
            self._release(session)

    def get(self, execution_id: str) -> Optional[WorkflowExecution]:
        session = self._get_session()
        try:
            model = session.get(WorkflowExecutionModel, execution_id)
            return self._to_execution(model) if model else None
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load execution {execution_id}: {str(e)}", operation="get")
        finally:
            self._release(session)

    def list_executions(self, workflow_id=None, limit=50) -> List[WorkflowExecution]:
        session = self._get_session()
        try:
            query = session.query(WorkflowExecutionModel)
            if workflow_id is not None:
                query = query.filter(WorkflowExecutionModel.workflow_id == workflow_id)
            models = query.order_by(WorkflowExecutionModel.started_at.desc()).limit(limit).all()
            return [self._to_execution(model) for model in models]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list executions: {str(e)}", operation="list")
        finally:
            self._release(session)

    @staticmethod
    def _to_execution(model: WorkflowExecutionModel) -> WorkflowExecution:
        return WorkflowExecution(
            id=model.id,
            workflow_id=model.workflow_id,
            project_id=model.project_id,
            status=ExecutionStatusEnum(model.status),
            started_at=model.started_at,
            completed_at=model.completed_at,
            duration_ms=model.duration_ms,
            results=[StepResult.model_validate(r) for r in model.results or []],
            logs=[LogEntry.model_validate(entry) for entry in model.logs or []],
            error_details=ErrorDetails.model_validate(model.error_details) if model.error_details else None
        )
