"""FastAPI REST endpoints for the agent pipeline engine."""

from datetime import datetime
from typing import Dict, List, Any, Optional
from fastapi import APIRouter, HTTPException, Depends, status, WebSocket, WebSocketDisconnect, Response
from pydantic import BaseModel, Field, ValidationError
import json

from ..core.agent_catalog import AgentCatalog
from ..core.execution_engine import ExecutionEngine
from ..core.workflow_manager import WorkflowManager
from ..core.exceptions import (
    AgentCatalogError,
    AgentNotFoundError,
    WorkflowEngineError,
    WorkflowNotFoundError,
    WorkflowValidationError,
    create_error_response
)
from ..models.core import (
    AgentDefinition,
    AgentStep,
    ExecutionStatusEnum,
    LogEntry,
    OnErrorPolicy,
    ValidationResult,
    Workflow,
    WorkflowExecution,
    WorkflowSummary
)
from ..core.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1", tags=["pipeline"])

# Global instances (initialized by the application factory)
_agent_catalog: Optional[AgentCatalog] = None
_workflow_manager: Optional[WorkflowManager] = None
_execution_engine: Optional[ExecutionEngine] = None
_websocket_manager = None
_default_max_retries: int = 2


def init_dependencies(
    agent_catalog: AgentCatalog,
    workflow_manager: WorkflowManager,
    execution_engine: ExecutionEngine,
    websocket_manager=None,
    default_max_retries: int = 2
):
    """Initialize the global dependencies."""
    global _agent_catalog, _workflow_manager, _execution_engine, _websocket_manager, _default_max_retries
    _agent_catalog = agent_catalog
    _workflow_manager = workflow_manager
    _execution_engine = execution_engine
    _websocket_manager = websocket_manager
    _default_max_retries = default_max_retries


def get_agent_catalog() -> AgentCatalog:
    """Dependency to get the agent catalog."""
    if _agent_catalog is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Agent catalog not initialized"
        )
    return _agent_catalog


def get_workflow_manager() -> WorkflowManager:
    """Dependency to get the workflow manager."""
    if _workflow_manager is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Workflow manager not initialized"
        )
    return _workflow_manager


def get_execution_engine() -> ExecutionEngine:
    """Dependency to get the execution engine."""
    if _execution_engine is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Execution engine not initialized"
        )
    return _execution_engine


# Request/Response models
class StepRequest(BaseModel):
    """One step of a workflow creation request."""
    agent_id: str
    depends_on: List[str] = Field(default_factory=list)
    condition: Optional[str] = None
    instructions: str = ""
    use_internet_context: bool = True
    max_retries: Optional[int] = Field(None, description="Defaults to the configured retry count")
    on_error: OnErrorPolicy = OnErrorPolicy.STOP
    fallback_agent_id: Optional[str] = None


class CreateWorkflowRequest(BaseModel):
    """Request model for creating or validating a workflow."""
    name: str = Field(..., description="Name of the workflow")
    description: str = Field("", description="Description of the workflow")
    steps: List[StepRequest] = Field(..., description="Steps in execution order")

    def to_workflow(self, default_max_retries: int) -> Workflow:
        steps = []
        for step in self.steps:
            data = step.model_dump()
            if data["max_retries"] is None:
                data["max_retries"] = default_max_retries
            steps.append(AgentStep.model_validate(data))
        return Workflow(name=self.name, description=self.description, steps=steps)


class CreateWorkflowResponse(BaseModel):
    """Response model for workflow creation."""
    workflow_id: str = Field(..., description="Unique identifier of the created workflow")
    message: str = Field(..., description="Success message")
    validation_warnings: List[str] = Field(default_factory=list, description="Validation warnings")


class RunWorkflowRequest(BaseModel):
    """Request model for running a workflow."""
    project_id: Optional[str] = Field(None, description="Project the run belongs to")
    wait: bool = Field(False, description="Run in the foreground and return the finished execution")


class RunWorkflowResponse(BaseModel):
    """Response model for workflow execution."""
    execution_id: str = Field(..., description="Unique identifier of the execution")
    status: ExecutionStatusEnum = Field(..., description="Execution status")
    message: str = Field(..., description="Success message")
    execution: Optional[WorkflowExecution] = Field(None, description="Finished execution, for foreground runs")


class CancelExecutionResponse(BaseModel):
    execution_id: str
    cancelled: bool
    message: str


def _http_error(e: WorkflowEngineError) -> HTTPException:
    """Map an engine error onto an HTTP error response."""
    if isinstance(e, (AgentNotFoundError, WorkflowNotFoundError)) or e.error_code == "ExecutionNotFound":
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(e, WorkflowValidationError):
        status_code = status.HTTP_400_BAD_REQUEST
    elif e.error_code == "EngineShuttingDown":
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    if status_code >= 500:
        logger.error(f"Request failed: {e.message}")
    else:
        logger.warning(f"Request rejected: {e.message}")
    return HTTPException(status_code=status_code, detail=create_error_response(e))


def _internal_error(action: str, e: Exception) -> HTTPException:
    logger.error(f"Unexpected error while {action}: {str(e)}", exc_info=True)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={
            "error": "InternalError",
            "message": f"An unexpected error occurred while {action}",
            "details": {"original_error": str(e)},
            "timestamp": datetime.utcnow().isoformat()
        }
    )


# Agents

@router.post(
    "/agents",
    response_model=AgentDefinition,
    status_code=status.HTTP_201_CREATED,
    summary="Register an agent"
)
def register_agent(
    agent: AgentDefinition,
    catalog: AgentCatalog = Depends(get_agent_catalog)
) -> AgentDefinition:
    try:
        return catalog.register_agent(agent)
    except AgentCatalogError as e:
        logger.warning(f"Agent registration rejected: {e.message}")
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=create_error_response(e))
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.get("/agents", response_model=List[AgentDefinition], summary="List registered agents")
def list_agents(catalog: AgentCatalog = Depends(get_agent_catalog)) -> List[AgentDefinition]:
    try:
        return catalog.list_agents()
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.get("/agents/{agent_id}", response_model=AgentDefinition, summary="Get an agent")
def get_agent(agent_id: str, catalog: AgentCatalog = Depends(get_agent_catalog)) -> AgentDefinition:
    try:
        return catalog.get_agent(agent_id)
    except WorkflowEngineError as e:
        raise _http_error(e)


# Workflows

def _build_workflow(request: CreateWorkflowRequest) -> Workflow:
    try:
        return request.to_workflow(_default_max_retries)
    except ValidationError as e:
        raise HTTPException(
            status_code=422,
            detail={
                "error": "InvalidWorkflowDefinition",
                "message": "Workflow definition is invalid",
                "details": {"validation_errors": e.errors(include_url=False, include_context=False)}
            }
        )


@router.post(
    "/workflows",
    response_model=CreateWorkflowResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a workflow",
    description="Validate a workflow against the agent catalog and store it"
)
def create_workflow(
    request: CreateWorkflowRequest,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> CreateWorkflowResponse:
    workflow = _build_workflow(request)
    try:
        validation_result = workflow_manager.validate_workflow(workflow)
        workflow_id = workflow_manager.create_workflow(workflow)
        return CreateWorkflowResponse(
            workflow_id=workflow_id,
            message=f"Workflow '{workflow.name}' created successfully",
            validation_warnings=validation_result.warnings
        )
    except WorkflowEngineError as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("creating the workflow", e)


@router.post("/workflows/validate", response_model=ValidationResult, summary="Validate a workflow without storing it")
def validate_workflow(
    request: CreateWorkflowRequest,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> ValidationResult:
    return workflow_manager.validate_workflow(_build_workflow(request))


@router.get("/workflows", response_model=List[WorkflowSummary], summary="List workflows")
def list_workflows(workflow_manager: WorkflowManager = Depends(get_workflow_manager)) -> List[WorkflowSummary]:
    try:
        return workflow_manager.list_workflows()
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.get("/workflows/{workflow_id}", response_model=Workflow, summary="Get a workflow definition")
def get_workflow(
    workflow_id: str,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> Workflow:
    try:
        return workflow_manager.get_workflow(workflow_id)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.delete("/workflows/{workflow_id}", status_code=status.HTTP_204_NO_CONTENT, summary="Delete a workflow")
def delete_workflow(
    workflow_id: str,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> Response:
    try:
        deleted = workflow_manager.delete_workflow(workflow_id)
    except WorkflowEngineError as e:
        raise _http_error(e)
    if not deleted:
        raise _http_error(WorkflowNotFoundError(workflow_id))
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/workflows/{workflow_id}/run",
    response_model=RunWorkflowResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Run a workflow",
    description="Start a run in the background, or with wait=true run it to completion"
)
def run_workflow(
    workflow_id: str,
    request: Optional[RunWorkflowRequest] = None,
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> RunWorkflowResponse:
    request = request or RunWorkflowRequest()
    try:
        if request.wait:
            execution = execution_engine.run_workflow(workflow_id, project_id=request.project_id)
            return RunWorkflowResponse(
                execution_id=execution.id,
                status=execution.status,
                message=f"Execution finished as {execution.status.value}",
                execution=execution
            )

        execution_id = execution_engine.execute_workflow(workflow_id, project_id=request.project_id)
        return RunWorkflowResponse(
            execution_id=execution_id,
            status=ExecutionStatusEnum.RUNNING,
            message="Workflow execution started"
        )
    except WorkflowEngineError as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("starting the workflow", e)


# Executions

@router.get("/executions", response_model=List[WorkflowExecution], summary="List recorded executions")
def list_executions(
    workflow_id: Optional[str] = None,
    limit: int = 50,
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> List[WorkflowExecution]:
    try:
        return execution_engine.list_executions(workflow_id=workflow_id, limit=max(1, min(limit, 500)))
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.get("/executions/{execution_id}", response_model=WorkflowExecution, summary="Get an execution")
def get_execution(
    execution_id: str,
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> WorkflowExecution:
    try:
        return execution_engine.get_execution(execution_id)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.get("/executions/{execution_id}/logs", response_model=List[LogEntry], summary="Get execution logs")
def get_execution_logs(
    execution_id: str,
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> List[LogEntry]:
    try:
        return execution_engine.get_execution_logs(execution_id)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.post("/executions/{execution_id}/cancel", response_model=CancelExecutionResponse, summary="Cancel an execution")
def cancel_execution(
    execution_id: str,
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> CancelExecutionResponse:
    cancelled = execution_engine.cancel_execution(execution_id)
    return CancelExecutionResponse(
        execution_id=execution_id,
        cancelled=cancelled,
        message="Cancellation requested" if cancelled else "Execution is not running"
    )


@router.websocket("/ws/monitor")
async def websocket_monitor(websocket: WebSocket):
    """
    WebSocket endpoint for real-time execution monitoring.

    Client messages:
    {
        "action": "subscribe" | "unsubscribe" | "ping" | "get_status",
        "execution_id": "execution to subscribe or unsubscribe"
    }

    Server messages carry an ``event_type`` of ``connection_established``,
    ``subscription_confirmed``, ``log_entry``, ``execution_status_update``,
    ``pong``, ``status_info`` or ``error``.
    """
    if not _websocket_manager:
        await websocket.close(code=1011, reason="WebSocket monitoring not available")
        return

    connection_id = None
    try:
        connection_id = await _websocket_manager.connect(websocket)

        while True:
            try:
                message = json.loads(await websocket.receive_text())
            except json.JSONDecodeError:
                await _websocket_manager.send_to_connection(connection_id, {
                    "event_type": "error",
                    "message": "Invalid JSON message format",
                    "timestamp": datetime.utcnow().isoformat()
                })
                continue

            action = message.get("action")
            execution_id = message.get("execution_id")

            if action == "subscribe" and execution_id:
                if not await _websocket_manager.subscribe_to_execution(connection_id, execution_id):
                    await _websocket_manager.send_to_connection(connection_id, {
                        "event_type": "error",
                        "message": f"Failed to subscribe to execution {execution_id}",
                        "timestamp": datetime.utcnow().isoformat()
                    })

            elif action == "unsubscribe" and execution_id:
                await _websocket_manager.unsubscribe_from_execution(connection_id, execution_id)
                await _websocket_manager.send_to_connection(connection_id, {
                    "event_type": "unsubscribed",
                    "execution_id": execution_id,
                    "timestamp": datetime.utcnow().isoformat()
                })

            elif action == "ping":
                await _websocket_manager.send_to_connection(connection_id, {
                    "event_type": "pong",
                    "timestamp": datetime.utcnow().isoformat()
                })

            elif action == "get_status":
                await _websocket_manager.send_to_connection(connection_id, {
                    "event_type": "status_info",
                    "data": _websocket_manager.get_connection_info(),
                    "timestamp": datetime.utcnow().isoformat()
                })

            else:
                await _websocket_manager.send_to_connection(connection_id, {
                    "event_type": "error",
                    "message": f"Unknown action: {action}",
                    "timestamp": datetime.utcnow().isoformat()
                })

    except WebSocketDisconnect:
        logger.info(f"WebSocket client disconnected: {connection_id}")
    finally:
        if connection_id:
            await _websocket_manager.disconnect(connection_id)


@router.get("/monitoring/connections", summary="WebSocket connection info")
def get_websocket_connections() -> Dict[str, Any]:
    if not _websocket_manager:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="WebSocket monitoring not available"
        )
    return _websocket_manager.get_connection_info()
