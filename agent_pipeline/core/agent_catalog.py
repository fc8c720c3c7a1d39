"""Agent catalog: the agents workflow steps can be bound to."""

from typing import Dict, List, Optional
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..models.core import AgentDefinition
from ..storage.database import get_db
from ..storage.models import AgentModel
from .exceptions import AgentCatalogError, AgentNotFoundError
from .logging import get_logger

logger = get_logger(__name__)


class AgentCatalog:
    """Database-backed catalog of agent definitions with an in-memory cache."""

    def __init__(self, db_session: Optional[Session] = None):
        """Initialize the agent catalog.

        Args:
            db_session: Optional database session. If not provided, will create new sessions as needed.
        """
        self._db_session = db_session
        self._memory_cache: Dict[str, AgentDefinition] = {}

    def _get_session(self) -> Session:
        """Get database session, creating a new one if needed."""
        if self._db_session:
            return self._db_session
        return next(get_db())

    def _release(self, session: Session) -> None:
        if not self._db_session:
            session.close()

    def register_agent(self, agent: AgentDefinition) -> AgentDefinition:
        """Add an agent to the catalog.

        Raises:
            AgentCatalogError: If an agent with the same ID is already registered
        """
        session = self._get_session()
        try:
            if session.get(AgentModel, agent.id) is not None:
                raise AgentCatalogError(f"Agent '{agent.id}' is already registered", agent_id=agent.id)

            session.add(AgentModel(
                id=agent.id,
                name=agent.name,
                system_prompt=agent.system_prompt,
                icon=agent.icon
            ))
            session.commit()

            self._memory_cache[agent.id] = agent
            logger.info(f"Registered agent '{agent.id}' ({agent.name})")
            return agent

        except AgentCatalogError:
            session.rollback()
            raise
        except IntegrityError:
            session.rollback()
            raise AgentCatalogError(f"Agent '{agent.id}' is already registered", agent_id=agent.id)
        except SQLAlchemyError as e:
            session.rollback()
            raise AgentCatalogError(f"Failed to register agent '{agent.id}': {e}", agent_id=agent.id)
        finally:
            self._release(session)

    def get_agent(self, agent_id: str) -> AgentDefinition:
        """Look up an agent by ID.

        Raises:
            AgentNotFoundError: If no agent has this ID
        """
        if not agent_id or not agent_id.strip():
            raise AgentNotFoundError(agent_id or "")

        agent_id = agent_id.strip()
        if agent_id in self._memory_cache:
            return self._memory_cache[agent_id]

        session = self._get_session()
        try:
            model = session.get(AgentModel, agent_id)
            if model is None:
                raise AgentNotFoundError(agent_id)

            agent = AgentDefinition(
                id=model.id,
                name=model.name,
                system_prompt=model.system_prompt,
                icon=model.icon
            )
            self._memory_cache[agent_id] = agent
            logger.debug(f"Loaded agent '{agent_id}' from the catalog")
            return agent

        except SQLAlchemyError as e:
            raise AgentCatalogError(f"Failed to load agent '{agent_id}': {e}", agent_id=agent_id)
        finally:
            self._release(session)

    def agent_exists(self, agent_id: str) -> bool:
        """Check if an agent is registered."""
        try:
            self.get_agent(agent_id)
            return True
        except AgentNotFoundError:
            return False

    def list_agents(self) -> List[AgentDefinition]:
        """List all registered agents ordered by name."""
        session = self._get_session()
        try:
            models = session.query(AgentModel).order_by(AgentModel.name).all()
            return [
                AgentDefinition(id=m.id, name=m.name, system_prompt=m.system_prompt, icon=m.icon)
                for m in models
            ]
        except SQLAlchemyError as e:
            raise AgentCatalogError(f"Failed to list agents: {e}")
        finally:
            self._release(session)

    def unregister_agent(self, agent_id: str) -> bool:
        """Remove an agent from the catalog.

        Returns:
            True if the agent was removed, False if it was not registered
        """
        session = self._get_session()
        try:
            model = session.get(AgentModel, agent_id)
            if model is None:
                return False

            session.delete(model)
            session.commit()
            self._memory_cache.pop(agent_id, None)

            logger.info(f"Unregistered agent '{agent_id}'")
            return True

        except SQLAlchemyError as e:
            session.rollback()
            raise AgentCatalogError(f"Failed to unregister agent '{agent_id}': {e}", agent_id=agent_id)
        finally:
            self._release(session)

    def clear_cache(self) -> None:
        """Clear the in-memory agent cache."""
        self._memory_cache.clear()
        logger.debug("Agent catalog memory cache cleared")
