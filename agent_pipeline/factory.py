"""Application factory for creating FastAPI instances."""

from datetime import datetime
from typing import Optional
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from sqlalchemy import text

from .config import AppConfig, get_config
from .core.agent_catalog import AgentCatalog
from .core.error_recovery import HealthChecker
from .core.execution_engine import ExecutionEngine
from .core.expressions import ExpressionEvaluator
from .core.invoker import AgentInvoker, HttpAgentInvoker
from .core.logging import setup_logging, get_logger
from .core.rate_limiter import FixedWindowRateLimiter
from .core.recorder import SqlExecutionRecorder
from .core.scheduler import WorkflowScheduler
from .core.step_runner import StepRunner
from .core.websocket_manager import WebSocketManager
from .core.workflow_manager import WorkflowManager
from .storage.database import configure_database, create_tables, get_db
from .api.endpoints import router, init_dependencies


class ApplicationState:
    """Container for application state and components."""

    def __init__(self):
        self.config: Optional[AppConfig] = None
        self.agent_catalog: Optional[AgentCatalog] = None
        self.workflow_manager: Optional[WorkflowManager] = None
        self.invoker: Optional[AgentInvoker] = None
        self.scheduler: Optional[WorkflowScheduler] = None
        self.websocket_manager: Optional[WebSocketManager] = None
        self.execution_engine: Optional[ExecutionEngine] = None
        self.health_checker: Optional[HealthChecker] = None


# Global application state
app_state = ApplicationState()


def build_invoker(config: AppConfig) -> HttpAgentInvoker:
    """Create the HTTP invoker and its rate limiter from configuration."""
    rate_limiter = FixedWindowRateLimiter(
        max_requests=config.rate_limit_max_requests,
        window_seconds=config.rate_limit_window_seconds
    )
    return HttpAgentInvoker(
        base_url=config.invoker_base_url,
        api_key=config.invoker_api_key,
        model=config.invoker_model,
        timeout=config.invoker_timeout,
        rate_limiter=rate_limiter
    )


def initialize_core_components(config: AppConfig, invoker: Optional[AgentInvoker], logger) -> None:
    """Initialize core application components into the global application state."""
    agent_catalog = AgentCatalog()
    workflow_manager = WorkflowManager(agent_catalog)
    invoker = invoker or build_invoker(config)
    step_runner = StepRunner(
        catalog=agent_catalog,
        invoker=invoker,
        evaluator=ExpressionEvaluator(),
        backoff_unit=config.retry_backoff_unit
    )
    scheduler = WorkflowScheduler(step_runner, SqlExecutionRecorder())
    websocket_manager = WebSocketManager()
    execution_engine = ExecutionEngine(
        workflow_manager=workflow_manager,
        scheduler=scheduler,
        max_concurrent_executions=config.max_concurrent_executions,
        websocket_manager=websocket_manager
    )

    app_state.config = config
    app_state.agent_catalog = agent_catalog
    app_state.workflow_manager = workflow_manager
    app_state.invoker = invoker
    app_state.scheduler = scheduler
    app_state.websocket_manager = websocket_manager
    app_state.execution_engine = execution_engine

    logger.info("Core components initialized")


def setup_health_checks(config: AppConfig, logger) -> HealthChecker:
    """Set up health check functions."""
    health_checker = HealthChecker()

    def check_database():
        db = next(get_db())
        try:
            db.execute(text("SELECT 1"))
        finally:
            db.close()
        return {"status": "healthy", "message": "Database connection successful"}

    def check_execution_engine():
        return {
            "status": "healthy",
            "message": "Execution engine operational",
            **app_state.execution_engine.get_execution_metrics()
        }

    def check_agent_catalog():
        return {
            "status": "healthy",
            "message": "Agent catalog operational",
            "registered_agents": len(app_state.agent_catalog.list_agents())
        }

    def check_websocket_manager():
        return {
            "status": "healthy",
            "message": "WebSocket manager operational",
            **app_state.websocket_manager.get_connection_info()
        }

    health_checker.register_check("database", check_database, timeout=config.health_check_timeout)
    health_checker.register_check("execution_engine", check_execution_engine, timeout=3.0)
    health_checker.register_check("agent_catalog", check_agent_catalog, timeout=config.health_check_timeout)
    health_checker.register_check("websocket_manager", check_websocket_manager, timeout=2.0)

    logger.info("Health checks registered")
    return health_checker


def graceful_shutdown(logger) -> None:
    """Handle graceful shutdown of application components."""
    logger.info("Shutting down Agent Pipeline Engine")

    try:
        app_state.websocket_manager.stop_broadcast_processor()
    except Exception as e:
        logger.error(f"Error stopping WebSocket broadcast processor: {str(e)}")

    try:
        app_state.execution_engine.shutdown()
    except Exception as e:
        logger.error(f"Error during execution engine shutdown: {str(e)}")

    if isinstance(app_state.invoker, HttpAgentInvoker):
        app_state.invoker.close()


def create_lifespan_handler(config: AppConfig, invoker: Optional[AgentInvoker] = None):
    """Create application lifespan handler."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(
            level=config.log_level.value,
            log_file=config.log_file,
            log_format=config.log_format,
            structured=config.log_structured,
            max_size=config.log_max_size,
            backup_count=config.log_backup_count
        )
        logger = get_logger(__name__)
        logger.info(f"Starting {config.app_name} v{config.app_version}")

        try:
            configure_database(config.database_url, echo=config.database_echo)
            create_tables()
            logger.info("Database tables created")

            initialize_core_components(config, invoker, logger)

            init_dependencies(
                agent_catalog=app_state.agent_catalog,
                workflow_manager=app_state.workflow_manager,
                execution_engine=app_state.execution_engine,
                websocket_manager=app_state.websocket_manager,
                default_max_retries=config.default_max_retries
            )

            app_state.health_checker = setup_health_checks(config, logger)

            app_state.websocket_manager.start_broadcast_processor()
            logger.info("Application startup completed successfully")
        except Exception as e:
            logger.error(f"Application startup failed: {e}")
            raise

        yield

        graceful_shutdown(logger)

    return lifespan


def create_app(config: Optional[AppConfig] = None, invoker: Optional[AgentInvoker] = None) -> FastAPI:
    """Create and configure FastAPI application instance.

    Args:
        config: Application configuration, read from the environment if not given
        invoker: Agent invoker to use instead of the configured HTTP provider
    """
    if config is None:
        config = get_config()

    app = FastAPI(
        title=config.app_name,
        description="Runs ordered pipelines of agent steps with retries, fallbacks and live monitoring",
        version=config.app_version,
        debug=config.debug,
        lifespan=create_lifespan_handler(config, invoker)
    )

    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_credentials=True,
            allow_methods=config.cors_methods,
            allow_headers=["*"],
        )

    app.include_router(router)
    add_health_endpoints(app, config)

    return app


def add_health_endpoints(app: FastAPI, config: AppConfig) -> None:
    """Add health check endpoints to the application."""
    service_name = config.app_name.lower().replace(" ", "-")

    @app.get("/")
    async def root():
        """Root endpoint for basic health check."""
        return {"message": f"{config.app_name} is running", "version": config.app_version}

    @app.get("/health")
    async def health_check():
        """Basic health check endpoint."""
        return {
            "status": "healthy",
            "service": service_name,
            "version": config.app_version
        }

    @app.get("/health/detailed")
    async def detailed_health_check():
        """Detailed health check endpoint with component status."""
        if app_state.health_checker is None:
            return JSONResponse(
                status_code=503,
                content={
                    "service": service_name,
                    "overall_status": "unhealthy",
                    "error": "Application not started",
                    "timestamp": datetime.utcnow().isoformat()
                }
            )

        results = await app_state.health_checker.run_all_checks()
        return JSONResponse(
            status_code=200 if results["overall_status"] == "healthy" else 503,
            content={
                "service": service_name,
                "version": config.app_version,
                **results
            }
        )


def get_app_state() -> ApplicationState:
    """Get the current application state."""
    return app_state
