"""
Connections to capability servers.

Each enabled server gets exactly one ``Connection``. Connection attempts and
teardown run concurrently and are isolated: one server failing never affects
its siblings.
"""

import asyncio
import logging
import os
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol

import anyio
from mcp import ClientSession, StdioServerParameters
from mcp.client.sse import sse_client
from mcp.client.stdio import stdio_client

from .config import ServerDescriptor, SseTransport, StdioTransport
from .errors import ConfigError, ServerConnectionError
from .namespace import NameMapping

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"
    CLOSED = "closed"


class CapabilityClient(Protocol):
    """Protocol client for one capability server."""

    async def connect(self) -> None: ...

    async def list_tools(self) -> List[Dict[str, Any]]: ...

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> Any: ...

    async def close(self) -> None: ...


LostCallback = Callable[[BaseException], None]
ClientFactory = Callable[[ServerDescriptor, LostCallback], CapabilityClient]
StateListener = Callable[["Connection", ConnectionState, ConnectionState], None]


class McpClient:
    """MCP client session kept alive in a dedicated task.

    The transport and session context managers are entered and exited by the
    same task, which is what the MCP SDK's cancel scopes require.
    """

    def __init__(self, descriptor: ServerDescriptor, on_lost: Optional[LostCallback] = None):
        self.descriptor = descriptor
        self._on_lost = on_lost
        self._session: Optional[ClientSession] = None
        self._task: Optional[asyncio.Task] = None
        self._ready: Optional[asyncio.Future] = None
        self._closing = asyncio.Event()

    def _open_transport(self):
        transport = self.descriptor.transport
        if isinstance(transport, StdioTransport):
            params = StdioServerParameters(
                command=transport.command,
                args=list(transport.args),
                env={**os.environ, **transport.env},
                cwd=transport.cwd,
            )
            return stdio_client(params)
        if isinstance(transport, SseTransport):
            return sse_client(transport.url, headers=transport.headers or None)
        raise ConfigError(f"Unsupported transport for {self.descriptor.id}: {transport!r}")

    async def _run(self) -> None:
        try:
            async with AsyncExitStack() as stack:
                read, write = await stack.enter_async_context(self._open_transport())
                session = await stack.enter_async_context(ClientSession(read, write))
                await session.initialize()
                self._session = session
                if not self._ready.done():
                    self._ready.set_result(None)
                await self._closing.wait()
        except Exception as e:
            if not self._ready.done():
                self._ready.set_exception(e)
                return
            if self._closing.is_set():
                raise
            logger.error(f"Connection to {self.descriptor.id} lost: {e}")
            if self._on_lost:
                self._on_lost(e)
        finally:
            self._session = None

    async def connect(self) -> None:
        self._ready = asyncio.get_running_loop().create_future()
        self._closing.clear()
        self._task = asyncio.create_task(self._run(), name=f"mcp-{self.descriptor.id}")
        try:
            await self._ready
        except BaseException:
            self._task.cancel()
            self._task = None
            raise

    def _require_session(self) -> ClientSession:
        if self._session is None:
            raise ServerConnectionError(self.descriptor.id, "not connected")
        return self._session

    async def list_tools(self) -> List[Dict[str, Any]]:
        session = self._require_session()
        tools = []
        cursor = None
        while True:
            result = await session.list_tools(cursor=cursor)
            tools.extend(
                {
                    "name": tool.name,
                    "description": tool.description or "",
                    "inputSchema": tool.inputSchema or {},
                }
                for tool in result.tools
            )
            cursor = result.nextCursor
            if not cursor:
                return tools

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> Any:
        session = self._require_session()
        try:
            result = await session.call_tool(name, arguments)
        except (anyio.ClosedResourceError, anyio.BrokenResourceError, anyio.EndOfStream) as e:
            if self._on_lost:
                self._on_lost(e)
            raise
        return result.model_dump(mode="json", exclude_none=True)

    async def close(self) -> None:
        if self._task is None:
            return
        self._closing.set()
        task, self._task = self._task, None
        await task


class Connection:
    """Owns one client for one server descriptor and tracks its lifecycle."""

    def __init__(
        self,
        descriptor: ServerDescriptor,
        escaped_id: str,
        client_factory: ClientFactory,
        on_state_change: Optional[StateListener] = None,
    ):
        self.descriptor = descriptor
        self.escaped_id = escaped_id
        self.state = ConnectionState.DISCONNECTED
        self.error: Optional[BaseException] = None
        self._on_state_change = on_state_change
        self.client = client_factory(descriptor, self.mark_lost)

    @property
    def server_id(self) -> str:
        return self.descriptor.id

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    def _set_state(self, state: ConnectionState) -> None:
        previous, self.state = self.state, state
        if previous is not state and self._on_state_change:
            self._on_state_change(self, previous, state)

    async def open(self) -> None:
        """Connect the client, honouring the descriptor's timeout if any.

        Raises:
            ServerConnectionError: If the client fails or times out.
        """
        self._set_state(ConnectionState.CONNECTING)
        try:
            if self.descriptor.timeout:
                await asyncio.wait_for(self.client.connect(), self.descriptor.timeout)
            else:
                await self.client.connect()
        except Exception as e:
            self.error = e
            self._set_state(ConnectionState.FAILED)
            raise ServerConnectionError(self.server_id, str(e) or type(e).__name__) from e
        self._set_state(ConnectionState.CONNECTED)

    def mark_lost(self, error: BaseException) -> None:
        if self.state is ConnectionState.CONNECTED:
            self.error = error
            self._set_state(ConnectionState.FAILED)

    async def list_tools(self) -> List[Dict[str, Any]]:
        return await self.client.list_tools()

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> Any:
        return await self.client.call_tool(name, arguments)

    async def close(self) -> None:
        try:
            await self.client.close()
        finally:
            self._set_state(ConnectionState.CLOSED)


@dataclass
class TeardownFailure:
    server_id: str
    error: BaseException


@dataclass
class TeardownReport:
    """Non-fatal failures collected while shutting down."""

    failures: List[TeardownFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def extend(self, other: "TeardownReport") -> None:
        self.failures.extend(other.failures)


class ServerConnectionPool:
    """One connection per enabled server descriptor, keyed by escaped id."""

    def __init__(
        self,
        client_factory: ClientFactory = McpClient,
        on_state_change: Optional[StateListener] = None,
    ):
        self.client_factory = client_factory
        self.on_state_change = on_state_change
        self.connections: Dict[str, Connection] = {}

    async def initialize_all(
        self, descriptors: Iterable[ServerDescriptor], mapping: NameMapping
    ) -> List[ServerConnectionError]:
        """Connect every enabled descriptor concurrently.

        Completes once every attempt has settled. Failures are logged and
        returned, never raised.
        """
        attempts = []
        for descriptor in descriptors:
            if not descriptor.enabled:
                logger.warning(f"Server {descriptor.id} is disabled, skipping initialization.")
                continue
            connection = Connection(
                descriptor,
                mapping.add(descriptor.id),
                self.client_factory,
                on_state_change=self.on_state_change,
            )
            self.connections[connection.escaped_id] = connection
            attempts.append(self._open(connection))

        results = await asyncio.gather(*attempts)
        return [error for error in results if error is not None]

    async def _open(self, connection: Connection) -> Optional[ServerConnectionError]:
        try:
            await connection.open()
        except ServerConnectionError as e:
            logger.error(
                str(e),
                extra={
                    "structured": {
                        "log_type": "server_connect_failed",
                        "server": connection.server_id,
                    }
                },
            )
            return e
        logger.info(f"Successfully connected to MCP server: {connection.server_id}")
        return None

    def get(self, escaped_id: str) -> Optional[Connection]:
        """Return the connection for ``escaped_id`` if it is connected."""
        connection = self.connections.get(escaped_id)
        if connection is not None and connection.is_connected:
            return connection
        return None

    def connected(self) -> List[Connection]:
        return [c for c in self.connections.values() if c.is_connected]

    async def _close_one(self, connection: Connection) -> Optional[TeardownFailure]:
        try:
            await connection.close()
        except Exception as e:
            logger.error(f"Error closing client {connection.server_id}: {e}")
            return TeardownFailure(connection.server_id, e)
        return None

    async def close(self) -> TeardownReport:
        """Close every opened connection concurrently; always empties the pool.

        Connections that failed after connecting are closed too, their client
        may still hold a transport.
        """
        opened = [
            c
            for c in self.connections.values()
            if c.state not in (ConnectionState.DISCONNECTED, ConnectionState.CLOSED)
        ]
        try:
            results = await asyncio.gather(*(self._close_one(c) for c in opened))
        finally:
            self.connections = {}
        return TeardownReport([failure for failure in results if failure is not None])

    def __len__(self) -> int:
        return len(self.connections)
