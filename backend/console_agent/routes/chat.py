"""
API routes for the console assistant.

Lists skills and tools, and streams a chat turn as
Server-Sent Events.
"""

import logging
import threading
from functools import lru_cache
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

from console_agent.config import settings
from console_agent.schemas import ChatRequest, SkillMetadata
from console_agent.services.agents import Orchestrator
from console_agent.services.db_connector import Connection, SqlAlchemyConnection
from console_agent.services.event_stream import EventStream
from console_agent.services.llm import OpenAIModelClient
from console_agent.services.skills import SkillRegistry
from console_agent.services.tools.base import CLIENT, SERVER, ToolCatalog
from console_agent.services.tools.client import build_client_tools
from console_agent.services.tools.server import build_server_tools

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["agent"])


@lru_cache(maxsize=1)
def get_orchestrator() -> Orchestrator:
    """Build the process-wide orchestrator on first use."""
    registry = SkillRegistry(settings.skills_root_dir)
    catalog = ToolCatalog(
        server=build_server_tools(registry),
        client=build_client_tools(),
    )
    return Orchestrator(
        model=OpenAIModelClient(),
        catalog=catalog,
        skills=registry,
    )


@router.get(
    "/skills",
    response_model=List[SkillMetadata],
    summary="List available skills",
)
def list_skills(orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Return name and description of every discovered skill."""
    return orchestrator.skills.list_skills()


@router.get("/tools", summary="List tool declarations")
def list_tools(
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Return tool declarations grouped by namespace."""
    catalog = orchestrator.catalog
    return {
        namespace: [
            d.model_dump() for d in catalog.declarations(catalog.names(namespace))
        ]
        for namespace in (SERVER, CLIENT)
    }


@router.post("/chat/stream", summary="Run a chat turn (SSE stream)")
def chat_stream(
    data: ChatRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """
    Stream one chat turn.

    The turn runs on a worker thread that writes to an
    ``EventStream``; this response drains it.  The connection
    is opened per request and closed when the turn ends.  If
    the client disconnects the stream is cancelled and the
    worker stops at its next write.
    """
    connection: Optional[Connection] = None
    if data.connection is not None:
        url = data.connection.sqlalchemy_url()
        try:
            make_url(url)
        except ArgumentError as exc:
            raise HTTPException(
                status_code=400,
                detail=f"Invalid connection URL: {exc}",
            )
        connection = SqlAlchemyConnection(url)

    stream = EventStream()

    def worker() -> None:
        logger.info(
            "[chat] turn started (%d message(s), connection=%s)",
            len(data.messages),
            connection is not None,
        )
        try:
            orchestrator.run_turn(data, stream, connection)
        finally:
            if connection is not None:
                connection.close()

    def event_stream():
        """Yield SSE frames as the orchestrator emits them."""
        try:
            yield from stream.iter_frames()
        finally:
            stream.cancel()

    threading.Thread(target=worker, name="chat-turn", daemon=True).start()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )
