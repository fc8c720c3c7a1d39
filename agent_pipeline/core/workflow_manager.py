"""Workflow Manager for pipeline definition handling."""

import uuid
from datetime import datetime
from typing import List, Optional
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError

from ..models.core import Workflow, WorkflowSummary, ValidationResult
from ..storage.database import get_db
from ..storage.models import WorkflowModel
from .agent_catalog import AgentCatalog
from .exceptions import AgentCatalogError, StorageError, WorkflowNotFoundError, WorkflowValidationError
from .expressions import ExpressionEvaluator
from .logging import get_logger

logger = get_logger(__name__)


class WorkflowManager:
    """Manages workflow definitions, validation, and storage."""

    def __init__(self, catalog: AgentCatalog, db_session: Optional[Session] = None):
        """Initialize WorkflowManager with the agent catalog and an optional database session."""
        self.catalog = catalog
        self._db_session = db_session
        self._evaluator = ExpressionEvaluator()

    def _get_db_session(self) -> Session:
        """Get database session, creating one if not provided."""
        if self._db_session:
            return self._db_session
        return next(get_db())

    def _release(self, db: Session) -> None:
        if not self._db_session:
            db.close()

    def create_workflow(self, workflow: Workflow) -> str:
        """
        Validate and store a workflow, returning its unique identifier.

        Raises:
            WorkflowValidationError: If validation fails or the name is taken
            StorageError: If storage operation fails
        """
        logger.info(f"Creating new workflow: {workflow.name}")

        validation_result = self.validate_workflow(workflow)
        if not validation_result.is_valid:
            error_msg = f"Workflow validation failed: {'; '.join(validation_result.errors)}"
            logger.error(error_msg)
            raise WorkflowValidationError(
                error_msg,
                validation_errors=validation_result.errors,
                workflow_name=workflow.name
            )

        if validation_result.warnings:
            logger.warning(f"Workflow validation warnings: {'; '.join(validation_result.warnings)}")

        workflow_id = str(uuid.uuid4())
        db = self._get_db_session()
        try:
            if db.query(WorkflowModel).filter(WorkflowModel.name == workflow.name).first():
                raise WorkflowValidationError(
                    f"Workflow with name '{workflow.name}' already exists",
                    workflow_name=workflow.name
                )

            db.add(WorkflowModel(
                id=workflow_id,
                name=workflow.name,
                description=workflow.description,
                definition=workflow.model_dump(mode="json", exclude={"id"}),
                created_at=datetime.utcnow()
            ))
            db.commit()

            logger.info(f"Successfully created workflow '{workflow.name}' with ID: {workflow_id}")
            return workflow_id

        except WorkflowValidationError:
            raise
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Database error while creating workflow: {str(e)}")
            raise StorageError(f"Failed to store workflow: {str(e)}", operation="create", table="workflows")
        finally:
            self._release(db)

    def get_workflow(self, workflow_id: str) -> Workflow:
        """
        Retrieve a workflow by its ID.

        Raises:
            WorkflowNotFoundError: If no workflow has this ID
            StorageError: If storage operation fails
        """
        logger.debug(f"Retrieving workflow with ID: {workflow_id}")

        db = self._get_db_session()
        try:
            model = db.get(WorkflowModel, workflow_id)
            if model is None:
                raise WorkflowNotFoundError(workflow_id)
            return Workflow.model_validate({**model.definition, "id": model.id})
        except SQLAlchemyError as e:
            logger.error(f"Database error while retrieving workflow: {str(e)}")
            raise StorageError(f"Failed to retrieve workflow: {str(e)}", operation="get", table="workflows")
        finally:
            self._release(db)

    def list_workflows(self) -> List[WorkflowSummary]:
        """List summaries of all stored workflows, newest first."""
        db = self._get_db_session()
        try:
            models = db.query(WorkflowModel).order_by(WorkflowModel.created_at.desc()).all()
            return [
                WorkflowSummary(
                    id=model.id,
                    name=model.name,
                    description=model.description or "",
                    created_at=model.created_at,
                    step_count=len(model.definition.get("steps", []))
                )
                for model in models
            ]
        except SQLAlchemyError as e:
            logger.error(f"Database error while listing workflows: {str(e)}")
            raise StorageError(f"Failed to list workflows: {str(e)}", operation="list", table="workflows")
        finally:
            self._release(db)

    def delete_workflow(self, workflow_id: str) -> bool:
        """
        Delete a workflow.

        Returns:
            bool: True if the workflow was deleted, False if it did not exist
        """
        db = self._get_db_session()
        try:
            model = db.get(WorkflowModel, workflow_id)
            if model is None:
                return False

            db.delete(model)
            db.commit()
            logger.info(f"Deleted workflow '{model.name}' ({workflow_id})")
            return True
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Database error while deleting workflow: {str(e)}")
            raise StorageError(f"Failed to delete workflow: {str(e)}", operation="delete", table="workflows")
        finally:
            self._release(db)

    def validate_workflow(self, workflow: Workflow) -> ValidationResult:
        """
        Check a workflow against the agent catalog.

        Unknown agents are errors. A dependency on an agent that no earlier
        step runs, and a condition that does not parse, are warnings: such
        steps fail or are skipped when the workflow runs.
        """
        errors = []
        warnings = []

        try:
            known_agents = {agent_id for agent_id in workflow.referenced_agent_ids()
                            if self.catalog.agent_exists(agent_id)}
        except AgentCatalogError as e:
            return ValidationResult(is_valid=False, errors=[f"Agent catalog unavailable: {e.message}"])

        declared_before = []
        for position, step in enumerate(workflow.steps, start=1):
            if step.agent_id not in known_agents:
                errors.append(f"Step {position}: unknown agent '{step.agent_id}'")
            if step.fallback_agent_id and step.fallback_agent_id not in known_agents:
                errors.append(f"Step {position}: unknown fallback agent '{step.fallback_agent_id}'")

            for dependency_id in step.depends_on:
                if dependency_id not in declared_before:
                    warnings.append(
                        f"Step {position}: dependency '{dependency_id}' is not run by an earlier step "
                        f"and will never be satisfied"
                    )

            if step.condition:
                syntax_error = self._evaluator.check_syntax(step.condition)
                if syntax_error:
                    warnings.append(
                        f"Step {position}: condition {step.condition!r} cannot be parsed ({syntax_error}); "
                        f"the step will be skipped"
                    )

            declared_before.append(step.agent_id)
            if step.fallback_agent_id:
                declared_before.append(step.fallback_agent_id)

        return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)
