"""
FastAPI application: tool REST endpoints and the chat stream WebSocket.

One federation manager and one orchestrator are built per app and shared by
every request; the lifespan connects the capability servers at startup and
disposes them at shutdown.
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from functools import partial
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from .builtin_tools import BuiltinTools
from .config import load_config
from .errors import FederationError, InvocationFailure, NoClient, ToolNotFound
from .federation import FederationManager
from .orchestrator import ChatStreamOrchestrator, to_jsonable
from .providers import StreamRequestType
from .settings import Settings
from .tool_registry import ToolRegistry

logger = logging.getLogger(__name__)


class ToolCallRequest(BaseModel):
    name: str
    args: Dict[str, Any] = Field(default_factory=dict)


class ChatHistoryRequest(BaseModel):
    messages: List[Dict[str, Any]] = Field(default_factory=list)


def create_app(
    settings: Optional[Settings] = None,
    manager: Optional[FederationManager] = None,
    orchestrator: Optional[ChatStreamOrchestrator] = None,
) -> FastAPI:
    """Build the HTTP/WebSocket surface around one manager and one orchestrator."""
    settings = settings or Settings.from_env()
    manager = manager or FederationManager(
        config_loader=partial(load_config, settings.mcp_config_path)
    )
    if orchestrator is None:
        builtin = ToolRegistry.from_plugins([BuiltinTools(workspace=settings.workspace)])
        orchestrator = ChatStreamOrchestrator.from_settings(
            settings, manager=manager, builtin_tools=builtin
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            await manager.initialize()
        except FederationError as e:
            logger.error(f"Failed to initialize MCP: {e}")
        yield
        report = await manager.dispose()
        if not report.ok:
            logger.warning(f"MCP shutdown finished with {len(report.failures)} error(s)")

    app = FastAPI(lifespan=lifespan)
    app.state.manager = manager
    app.state.orchestrator = orchestrator

    @app.get("/api/tools")
    async def list_tools():
        try:
            tools = await manager.list_tools()
        except FederationError as e:
            logger.error(f"Failed to initialize MCP for tool listing: {e}")
            return []
        return [tool.to_dict() for tool in tools]

    @app.post("/api/tools/refresh")
    async def refresh_tools():
        try:
            tools = await manager.refresh_tools()
        except FederationError as e:
            logger.error(f"Failed to refresh MCP tools: {e}")
            return []
        return [tool.to_dict() for tool in tools]

    @app.post("/api/tools/call")
    async def call_tool(request: ToolCallRequest):
        try:
            return {"result": await manager.call_tool(request.name, request.args)}
        except (NoClient, ToolNotFound) as e:
            raise HTTPException(status_code=404, detail=str(e))
        except InvocationFailure as e:
            raise HTTPException(status_code=502, detail=str(e))

    @app.post("/api/chat/suggestions")
    async def chat_suggestions(request: ChatHistoryRequest):
        suggestions = await orchestrator.generate_suggestions(request.messages)
        return [suggestion.model_dump() for suggestion in suggestions]

    @app.post("/api/chat/summary")
    async def chat_summary(request: ChatHistoryRequest):
        return {"summary": await orchestrator.generate_chat_summary(request.messages)}

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        await websocket.accept()
        await handle_websocket_session(websocket, orchestrator)

    return app


async def _send(websocket: WebSocket, message_data: dict) -> None:
    await websocket.send_text(json.dumps(message_data, ensure_ascii=False, default=str))


async def run_stream(websocket: WebSocket, orchestrator: ChatStreamOrchestrator, request: dict):
    """Stream one request, forwarding partial events then the terminal envelope."""

    async def forward(event):
        await _send(websocket, {"type": "partial", "payload": to_jsonable(event)})

    try:
        request_type = StreamRequestType(request.get("request_type", "chat"))
    except ValueError:
        await _send(websocket, {"type": "error", "message": "Unknown request type"})
        return

    result = await orchestrator.stream(
        request.get("messages", []),
        request_type,
        skip_preamble=bool(request.get("skip_preamble", False)),
        on_partial=forward,
    )
    await _send(websocket, result.to_dict())


async def handle_websocket_session(websocket: WebSocket, orchestrator: ChatStreamOrchestrator):
    """Route stream and abort requests for one websocket client."""
    stream_task: Optional[asyncio.Task] = None

    try:
        while True:
            data = await websocket.receive_text()
            message_data = json.loads(data)
            message_type = message_data.get("type")

            if message_type == "abort":
                aborted = orchestrator.abort_stream()
                await _send(websocket, {"type": "abort_ack", "aborted": aborted})
            elif message_type == "stream":
                if stream_task is not None and not stream_task.done():
                    await _send(websocket, {"type": "error", "message": "A stream is already running"})
                    continue
                stream_task = asyncio.create_task(run_stream(websocket, orchestrator, message_data))
            else:
                logger.warning(f"SYSTEM: Unknown message type: {message_type}")
    except WebSocketDisconnect:
        logger.info("SYSTEM: Client disconnected")
    except Exception as e:
        logger.error(f"ERROR: WebSocket error: {e}")
    finally:
        if stream_task is not None and not stream_task.done():
            orchestrator.abort_stream()
            await asyncio.gather(stream_task, return_exceptions=True)
