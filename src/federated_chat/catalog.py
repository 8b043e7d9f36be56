"""Tool manifest discovery and caching across connected servers."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .connection import Connection, ServerConnectionPool
from .errors import CatalogFetchError
from .namespace import SEPARATOR

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolDescriptor:
    """One tool exposed by one server."""

    name: str
    description: str
    server: str  # escaped server id
    input_schema: Dict[str, Any] = field(default_factory=dict)

    @property
    def prefixed_name(self) -> str:
        return f"{self.server}{SEPARATOR}{self.name}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
            "server": self.server,
        }


class ToolCatalog:
    """Fetch-once-per-session cache of every connected server's tools."""

    def __init__(self, pool: ServerConnectionPool, on_refresh: Optional[Callable[[], None]] = None):
        self.pool = pool
        self.on_refresh = on_refresh
        self._tools: List[ToolDescriptor] = []

    async def _fetch(self, connection: Connection) -> List[ToolDescriptor]:
        try:
            manifest = await connection.list_tools()
            return [
                ToolDescriptor(
                    name=entry["name"],
                    description=entry.get("description") or "",
                    server=connection.escaped_id,
                    input_schema=entry.get("inputSchema") or {},
                )
                for entry in manifest
            ]
        except Exception as e:
            logger.error(str(CatalogFetchError(connection.server_id, str(e))))
            return []

    async def list_all(self) -> List[ToolDescriptor]:
        """Return the cached tools, fetching them if the cache is empty."""
        if self._tools:
            return self._tools

        per_server = await asyncio.gather(*(self._fetch(c) for c in self.pool.connected()))
        self._tools = [tool for tools in per_server for tool in tools]

        logger.info(
            f"Available MCP tools: {[f'{t.name} ({t.server})' for t in self._tools]}",
            extra={
                "structured": {
                    "log_type": "catalog_fetched",
                    "tool_count": len(self._tools),
                }
            },
        )
        return self._tools

    async def refresh(self) -> List[ToolDescriptor]:
        """Discard the cache (and cached callables) and fetch again."""
        self.clear()
        if self.on_refresh:
            self.on_refresh()
        return await self.list_all()

    def drop_server(self, escaped_id: str) -> None:
        """Forget one server's tools without touching the others."""
        remaining = [t for t in self._tools if t.server != escaped_id]
        if len(remaining) != len(self._tools):
            logger.info(f"Dropping cached tools for {escaped_id}")
            self._tools = remaining

    def clear(self) -> None:
        self._tools = []

    def __len__(self) -> int:
        return len(self._tools)
