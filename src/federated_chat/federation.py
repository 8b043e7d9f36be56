"""
Federation manager: one flat tool namespace over many capability servers.

The manager owns the connection pool, the name mapping, the tool catalog and
the dispatcher. It is constructed explicitly and handed to whoever needs it.
Lifecycle transitions (initialize, refresh, dispose) are serialized through a
single lock.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from .catalog import ToolCatalog, ToolDescriptor
from .config import ServerDescriptor
from .connection import (
    ClientFactory,
    Connection,
    ConnectionState,
    McpClient,
    ServerConnectionPool,
    TeardownReport,
)
from .dispatcher import ToolDispatcher
from .namespace import NameMapping
from .schema import translate_schema
from .tool_registry import Tool

logger = logging.getLogger(__name__)


class ManagerState(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    READY = "ready"
    DISPOSING = "disposing"


class FederationManager:
    """Owns every capability server connection for one session."""

    def __init__(
        self,
        config_loader: Optional[Callable[[], Sequence[ServerDescriptor]]] = None,
        client_factory: ClientFactory = McpClient,
    ):
        self.config_loader = config_loader
        self.state = ManagerState.IDLE
        self.mapping = NameMapping()
        self.pool = ServerConnectionPool(client_factory, on_state_change=self._on_connection_state)
        self.dispatcher = ToolDispatcher(self.pool)
        self.catalog = ToolCatalog(self.pool, on_refresh=self.dispatcher.clear)
        self._lock = asyncio.Lock()

    @property
    def is_ready(self) -> bool:
        return self.state is ManagerState.READY

    def _on_connection_state(
        self, connection: Connection, previous: ConnectionState, current: ConnectionState
    ) -> None:
        if previous is ConnectionState.CONNECTED and current is ConnectionState.FAILED:
            logger.warning(f"Server {connection.server_id} went away, dropping its tools")
            self.catalog.drop_server(connection.escaped_id)

    async def initialize(self, descriptors: Optional[Sequence[ServerDescriptor]] = None) -> None:
        """Connect all enabled servers and fetch their tools.

        Re-initializing a ready manager tears it down first. Per-server
        failures are logged; configuration errors propagate.
        """
        async with self._lock:
            await self._initialize(descriptors)

    async def _initialize(self, descriptors: Optional[Sequence[ServerDescriptor]]) -> None:
        if self.state is ManagerState.READY:
            await self._teardown()

        self.state = ManagerState.INITIALIZING
        try:
            if descriptors is None:
                descriptors = self.config_loader() if self.config_loader else []
            enabled = [d for d in descriptors if d.enabled]
            self.mapping = NameMapping.from_server_ids(d.id for d in enabled)

            logger.info("Creating MCP client manager...")
            await self.pool.initialize_all(descriptors, self.mapping)
            logger.info("Fetching MCP tools...")
            tools = await self.catalog.list_all()
        except Exception:
            await self._teardown()
            raise

        self.state = ManagerState.READY
        logger.info(
            f"MCP initialized with {len(tools)} tools",
            extra={
                "structured": {
                    "log_type": "federation_ready",
                    "servers": [c.server_id for c in self.pool.connected()],
                    "tool_count": len(tools),
                }
            },
        )

    async def _ensure_ready(self) -> None:
        # Waits out an initialize or dispose already holding the lock
        if self.state is not ManagerState.READY:
            async with self._lock:
                if self.state is not ManagerState.READY:
                    await self._initialize(None)

    async def list_tools(self) -> List[ToolDescriptor]:
        await self._ensure_ready()
        return await self.catalog.list_all()

    async def refresh_tools(self) -> List[ToolDescriptor]:
        await self._ensure_ready()
        async with self._lock:
            return await self.catalog.refresh()

    async def call_tool(self, prefixed_name: str, args: Dict[str, Any]) -> Any:
        await self._ensure_ready()
        return await self.dispatcher.call(prefixed_name, args)

    async def get_tool_set(self) -> Dict[str, Tool]:
        """Return the federated tools keyed by prefixed name."""
        tools = await self.list_tools()
        tool_set = {}
        for descriptor in tools:
            name = descriptor.prefixed_name
            tool_set[name] = Tool(
                name=name,
                description=descriptor.description,
                parameters=translate_schema(descriptor.input_schema, name),
                execute=self._bind(name),
            )
        return tool_set

    def _bind(self, prefixed_name: str):
        async def execute(args: Dict[str, Any]) -> Any:
            return await self.call_tool(prefixed_name, args)

        return execute

    async def _teardown(self) -> TeardownReport:
        self.state = ManagerState.DISPOSING
        try:
            report = await self.pool.close()
        finally:
            self.catalog.clear()
            self.dispatcher.clear()
            self.mapping.clear()
            self.state = ManagerState.IDLE
        for failure in report.failures:
            logger.warning(f"Error closing {failure.server_id} during teardown: {failure.error}")
        return report

    async def dispose(self) -> TeardownReport:
        """Close every connection. Never raises; failures are reported."""
        async with self._lock:
            report = await self._teardown()
        logger.info("MCP service disposed")
        return report
