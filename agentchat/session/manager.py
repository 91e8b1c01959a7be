"""
Session manager: one ``SessionAgent`` per session id, plus the directory.

Agents are created lazily on first contact and cached for the process
lifetime.  Creation is guarded by a lock so two concurrent first requests
for the same id end up on the same instance.  Agents never share mutable
state with each other; the store is the only common collaborator.
"""

from __future__ import annotations

import asyncio
import logging
import uuid

from agentchat.config import AppConfig
from agentchat.errors import NotFoundError
from agentchat.session.agent import ClientFactory, SessionAgent
from agentchat.session.store import SessionStore
from agentchat.session.titles import derive_title
from agentchat.tools.registry import ToolRegistry
from agentchat.types import SessionDirectoryEntry

logger = logging.getLogger(__name__)


class SessionManager:
    def __init__(
        self,
        store: SessionStore,
        registry: ToolRegistry,
        config: AppConfig,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.config = config
        self.client_factory = client_factory
        self._agents: dict[str, SessionAgent] = {}
        self._lock = asyncio.Lock()
        self._cleanup: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Agent resolution
    # ------------------------------------------------------------------

    async def get_agent(self, session_id: str) -> SessionAgent:
        """Return the agent for *session_id*, creating it on first use."""
        agent = self._agents.get(session_id)
        if agent is not None:
            return agent
        async with self._lock:
            agent = self._agents.get(session_id)
            if agent is None:
                agent = SessionAgent(
                    session_id,
                    registry=self.registry,
                    config=self.config,
                    store=self.store,
                    client_factory=self.client_factory,
                )
                await agent.start()
                self._agents[session_id] = agent
                logger.info("ChatAgent %s initialized", session_id)
        return agent

    def has_agent(self, session_id: str) -> bool:
        return session_id in self._agents

    # ------------------------------------------------------------------
    # Directory
    # ------------------------------------------------------------------

    async def list_sessions(self) -> list[SessionDirectoryEntry]:
        return await self.store.list_sessions()

    async def create_session(
        self,
        title: str | None = None,
        session_id: str | None = None,
        first_message: str | None = None,
    ) -> SessionDirectoryEntry:
        session_id = session_id or str(uuid.uuid4())
        return await self.store.create_session(session_id, derive_title(title, first_message))

    async def delete_session(self, session_id: str) -> None:
        """
        Remove a session from the directory and evict its agent.

        Agent shutdown runs in the background; a streaming turn still in
        flight is cancelled and its state dropped.
        """
        deleted = await self.store.delete_session(session_id)
        if not deleted:
            raise NotFoundError("Session", session_id)

        agent = self._agents.pop(session_id, None)
        if agent is not None:
            task = asyncio.create_task(self._evict(agent))
            self._cleanup.add(task)
            task.add_done_callback(self._cleanup.discard)

    async def _evict(self, agent: SessionAgent) -> None:
        try:
            await agent.aclose()
            # The cancelled turn may have saved state after the directory delete.
            await self.store.delete_state(agent.session_id)
        except Exception:
            logger.exception("Failed to clean up agent %s", agent.session_id)

    async def aclose(self) -> None:
        agents = list(self._agents.values())
        self._agents.clear()
        for agent in agents:
            await agent.aclose()
        if self._cleanup:
            await asyncio.gather(*self._cleanup, return_exceptions=True)
