"""
HTTP routes: per-session forwarding and the session directory.

``/api/chat/{session_id}/...`` is a catch-all that resolves the session's
agent and hands it the request with the ``/api/chat/{session_id}`` prefix
stripped.  Method, headers and body are passed through untouched.
"""

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from agentchat import __version__
from agentchat.errors import ROUTING_FAILED, RoutingError, ValidationError
from agentchat.session.agent import AgentRequest
from agentchat.session.manager import SessionManager

logger = logging.getLogger(__name__)

router = APIRouter()

FORWARDED_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE"]


# ----- Request models -----


class CreateSessionRequest(BaseModel):
    """Body of ``POST /api/sessions``; every field is optional."""

    title: str | None = None
    session_id: str | None = Field(None, alias="sessionId")
    first_message: str | None = Field(None, alias="firstMessage")


def _manager(request: Request) -> SessionManager:
    return request.app.state.sessions


# ----- Session-scoped forwarding -----


@router.api_route("/chat/{session_id}/{agent_path:path}", methods=FORWARDED_METHODS)
async def forward_to_agent(session_id: str, agent_path: str, request: Request) -> Response:
    """Forward a request to the agent that owns *session_id*."""
    try:
        if not session_id.strip():
            raise RoutingError("empty session id")
        agent = await _manager(request).get_agent(session_id)
        agent_request = AgentRequest(
            method=request.method,
            path="/" + agent_path,
            headers=dict(request.headers),
            query=dict(request.query_params),
            body=await request.body(),
        )
    except Exception:
        logger.exception("Agent routing error for session %r", session_id)
        return JSONResponse({"success": False, "error": ROUTING_FAILED}, status_code=500)
    return await agent.handle(agent_request)


# ----- Directory -----


@router.get("/sessions")
async def list_sessions(request: Request) -> dict:
    sessions = await _manager(request).list_sessions()
    return {"success": True, "data": [s.to_dict() for s in sessions]}


@router.post("/sessions")
async def create_session(request: Request) -> dict:
    try:
        raw = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raw = {}
    try:
        body = CreateSessionRequest.model_validate(raw if isinstance(raw, dict) else {})
    except PydanticValidationError as exc:
        raise ValidationError("Invalid session request", details={"errors": exc.errors()}) from exc

    entry = await _manager(request).create_session(
        title=body.title,
        session_id=body.session_id,
        first_message=body.first_message,
    )
    logger.info("Registered session %s (%s)", entry.session_id, entry.title)
    return {"success": True, "data": {"sessionId": entry.session_id, "title": entry.title}}


@router.delete("/sessions/{session_id}")
async def delete_session(session_id: str, request: Request) -> dict:
    await _manager(request).delete_session(session_id)
    return {"success": True}


@router.get("/health")
async def health() -> dict:
    return {"success": True, "data": {"status": "ok", "version": __version__}}
