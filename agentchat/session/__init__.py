"""Session runtime: agents, the agent manager, streaming channel and store."""

from agentchat.session.agent import AgentRequest, SessionAgent
from agentchat.session.channel import StreamChannel
from agentchat.session.manager import SessionManager
from agentchat.session.store import SessionStore
from agentchat.session.titles import derive_title

__all__ = [
    "AgentRequest",
    "SessionAgent",
    "SessionManager",
    "SessionStore",
    "StreamChannel",
    "derive_title",
]
