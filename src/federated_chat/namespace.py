"""
Reversible naming scheme for federated tools.

Every capability server gets an escaped identifier restricted to
``[A-Za-z0-9_]``. Tools are exposed to the model as
``<escaped server><SEPARATOR><raw tool name>``.

The separator must never survive ``escape()``; it is escaped like any other
character outside the allowed set, which is what lets ``dispatch()`` split on
its first occurrence.
"""

import re
from typing import Dict, Iterable, Tuple

from .errors import ConfigError

SEPARATOR = "-"
ESCAPE_MARKER = "_"

_SAFE_CHAR = re.compile(r"[A-Za-z0-9_]")

if _SAFE_CHAR.fullmatch(SEPARATOR):
    raise RuntimeError("separator must be escaped by escape()")


def escape(name: str) -> str:
    """Escape a raw server identifier to the pattern ``[A-Za-z0-9_]*``."""
    return "".join(
        c if _SAFE_CHAR.fullmatch(c) else f"{ESCAPE_MARKER}{ord(c):x}" for c in name
    )


def compose(server_id: str, tool_name: str) -> str:
    """Build the prefixed tool name for a raw server id and raw tool name."""
    return f"{escape(server_id)}{SEPARATOR}{tool_name}"


def dispatch(prefixed_name: str) -> Tuple[str, str]:
    """Split a prefixed tool name into ``(escaped server id, tool name)``.

    Only the first separator is significant; tool names may contain it.
    """
    escaped_server, _, tool_name = prefixed_name.partition(SEPARATOR)
    return escaped_server, tool_name


class NameMapping:
    """Bijective raw <-> escaped server id mapping for one session."""

    def __init__(self):
        self.server_to_escaped: Dict[str, str] = {}
        self.escaped_to_server: Dict[str, str] = {}

    @classmethod
    def from_server_ids(cls, server_ids: Iterable[str]) -> "NameMapping":
        """Build a mapping, failing fast when two raw ids escape identically."""
        mapping = cls()
        for server_id in server_ids:
            mapping.add(server_id)
        return mapping

    def add(self, server_id: str) -> str:
        escaped = escape(server_id)
        existing = self.escaped_to_server.get(escaped)
        if existing is not None and existing != server_id:
            raise ConfigError(
                f"Servers '{existing}' and '{server_id}' both escape to '{escaped}'"
            )
        self.server_to_escaped[server_id] = escaped
        self.escaped_to_server[escaped] = server_id
        return escaped

    def escaped(self, server_id: str) -> str:
        return self.server_to_escaped[server_id]

    def raw(self, escaped_id: str) -> str:
        return self.escaped_to_server[escaped_id]

    def clear(self) -> None:
        self.server_to_escaped.clear()
        self.escaped_to_server.clear()

    def __len__(self) -> int:
        return len(self.server_to_escaped)
