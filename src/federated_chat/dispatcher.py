"""Route prefixed tool names back to the server that owns them."""

import functools
import logging
from typing import Any, Awaitable, Callable, Dict

from .connection import ServerConnectionPool
from .errors import InvocationFailure, NoClient, ToolNotFound
from .namespace import dispatch

logger = logging.getLogger(__name__)

CachedCallable = Callable[[Dict[str, Any]], Awaitable[Any]]


class ToolDispatcher:
    """Resolve, cache and invoke federated tool callables."""

    def __init__(self, pool: ServerConnectionPool):
        self.pool = pool
        self._callables: Dict[str, CachedCallable] = {}

    async def _resolve(self, prefixed_name: str) -> CachedCallable:
        escaped_server, tool_name = dispatch(prefixed_name)
        connection = self.pool.get(escaped_server)
        if connection is None:
            raise NoClient(escaped_server)

        cached = self._callables.get(prefixed_name)
        if cached is not None:
            return cached

        try:
            manifest = await connection.list_tools()
        except Exception as e:
            logger.error(f"Error fetching tools from {escaped_server}: {e}")
            raise InvocationFailure(escaped_server, tool_name, e) from e

        if not any(entry.get("name") == tool_name for entry in manifest):
            raise ToolNotFound(escaped_server, tool_name)

        bound = functools.partial(connection.call_tool, tool_name)
        self._callables[prefixed_name] = bound
        return bound

    async def call(self, prefixed_name: str, args: Dict[str, Any]) -> Any:
        """Invoke the tool behind ``prefixed_name`` with ``args``.

        Returns:
            The server's result payload, unchanged.

        Raises:
            NoClient: No connected server owns the prefix
            ToolNotFound: The server does not expose the tool
            InvocationFailure: The invocation itself failed
        """
        callable_func = await self._resolve(prefixed_name)
        escaped_server, tool_name = dispatch(prefixed_name)
        try:
            return await callable_func(args)
        except Exception as e:
            logger.error(
                f"Error calling tool {tool_name} on server {escaped_server}: {e}",
                extra={
                    "structured": {
                        "log_type": "tool_invocation_failed",
                        "tool_name": prefixed_name,
                    }
                },
            )
            raise InvocationFailure(escaped_server, tool_name, e) from e

    def clear(self) -> None:
        """Drop every cached callable."""
        self._callables.clear()

    def __len__(self) -> int:
        return len(self._callables)
