"""SQLAlchemy database models for the agent pipeline engine."""

from datetime import datetime
from sqlalchemy import Column, String, DateTime, Text, JSON, Integer, Index
from .database import Base


class AgentModel(Base):
    """Database model for agent catalog entries."""
    __tablename__ = "agents"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    system_prompt = Column(Text, nullable=False)
    icon = Column(String)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class WorkflowModel(Base):
    """Database model for workflow definitions."""
    __tablename__ = "workflows"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False, unique=True)
    description = Column(Text)
    definition = Column(JSON, nullable=False)  # Complete workflow definition
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class WorkflowExecutionModel(Base):
    """Database model for workflow executions."""
    __tablename__ = "workflow_executions"
    __table_args__ = (
        Index("idx_workflow_executions_workflow_started", "workflow_id", "started_at"),
        Index("idx_workflow_executions_status", "status"),
    )

    id = Column(String, primary_key=True)
    workflow_id = Column(String)  # ad-hoc workflows run without a stored definition
    project_id = Column(String)
    status = Column(String, nullable=False)  # running, completed, failed
    results = Column(JSON, default=list)  # Serialized StepResult list
    logs = Column(JSON, default=list)  # Serialized LogEntry list
    error_details = Column(JSON)
    started_at = Column(DateTime, default=datetime.utcnow)
    completed_at = Column(DateTime)
    duration_ms = Column(Integer)
