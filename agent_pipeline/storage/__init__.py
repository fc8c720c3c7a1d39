"""Database models and storage layer."""

from .database import Base, configure_database, get_db, create_tables
from .models import AgentModel, WorkflowModel, WorkflowExecutionModel

__all__ = [
    "Base",
    "configure_database",
    "get_db",
    "create_tables",
    "AgentModel",
    "WorkflowModel",
    "WorkflowExecutionModel",
]
