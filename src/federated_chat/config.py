"""
Capability server configuration.

The configuration file maps server ids to transport parameters::

    {
      "mcpServers": {
        "files": {"command": "npx", "args": ["-y", "server-files"], "env": {}},
        "search": {"url": "http://localhost:8931/sse", "disabled": true}
      }
    }

Entries are validated into a tagged union of transports when loaded, so the
rest of the package never inspects raw dictionaries.
"""

import json
import logging
import os
import shutil
import sys
from pathlib import Path
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import ConfigError
from .namespace import NameMapping

logger = logging.getLogger(__name__)


class StdioTransport(BaseModel):
    """Server launched as a subprocess speaking over stdin/stdout."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["stdio"] = "stdio"
    command: str = Field(min_length=1)
    args: Tuple[str, ...] = ()
    env: Dict[str, str] = Field(default_factory=dict)
    cwd: Optional[str] = None


class SseTransport(BaseModel):
    """Server reached over a streamed HTTP (server-sent events) endpoint."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["sse"] = "sse"
    url: str = Field(min_length=1)
    headers: Dict[str, str] = Field(default_factory=dict)


Transport = Annotated[Union[StdioTransport, SseTransport], Field(discriminator="kind")]


class ServerDescriptor(BaseModel):
    """One configured capability server. Immutable for the session."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    transport: Transport
    enabled: bool = True
    timeout: Optional[float] = Field(default=None, gt=0)


def _infer_kind(server_id: str, entry: Dict[str, Any]) -> str:
    kind = entry.pop("kind", None) or entry.pop("type", None)
    if kind is not None:
        return kind
    if "command" in entry:
        return "stdio"
    if "url" in entry:
        return "sse"
    raise ConfigError(f"Invalid server configuration for {server_id}: missing command or url")


def _with_inherited_env(server_id: str, entry: Dict[str, Any]) -> Dict[str, Any]:
    """Make sure spawned servers can still find their executables."""
    env = dict(entry.get("env") or {})
    if "PATH" not in env and os.environ.get("PATH"):
        logger.debug(f"Adding PATH environment variable to {server_id} configuration")
        env["PATH"] = os.environ["PATH"]
    if sys.platform == "darwin" and "HOME" not in env and os.environ.get("HOME"):
        env["HOME"] = os.environ["HOME"]
    entry["env"] = env

    command = entry.get("command")
    if command and not os.path.exists(command) and shutil.which(command, path=env.get("PATH")) is None:
        # Not fatal, the server may still resolve it at spawn time
        logger.warning(f"Command path for {server_id} may not exist: {command}")
    return entry


def parse_config(data: Any) -> List[ServerDescriptor]:
    """Validate a decoded configuration document into server descriptors.

    Raises:
        ConfigError: On any malformed entry or when two server ids escape to
            the same identifier.
    """
    if not isinstance(data, dict) or not isinstance(data.get("mcpServers"), dict):
        raise ConfigError("Invalid MCP configuration: missing or invalid mcpServers")

    descriptors = []
    for server_id, raw_entry in data["mcpServers"].items():
        if not isinstance(raw_entry, dict):
            raise ConfigError(f"Invalid server configuration for {server_id}: expected an object")

        entry = dict(raw_entry)
        enabled = not entry.pop("disabled", False)
        timeout = entry.pop("timeout", None)
        kind = _infer_kind(server_id, entry)
        if kind == "stdio" and enabled:
            entry = _with_inherited_env(server_id, entry)

        try:
            descriptor = ServerDescriptor.model_validate(
                {
                    "id": server_id,
                    "transport": {"kind": kind, **entry},
                    "enabled": enabled,
                    "timeout": timeout,
                }
            )
        except ValidationError as e:
            raise ConfigError(f"Invalid server configuration for {server_id}: {e}") from e
        descriptors.append(descriptor)

    NameMapping.from_server_ids(d.id for d in descriptors)
    return descriptors


def load_config(path: Union[str, Path]) -> List[ServerDescriptor]:
    """Read and validate the configuration file at ``path``.

    A missing file means no capability servers are configured.
    """
    config_path = Path(path).expanduser()
    if not config_path.exists():
        logger.info(f"No MCP configuration found at {config_path}")
        return []

    try:
        data = json.loads(config_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {config_path}: {e}") from e

    descriptors = parse_config(data)
    logger.info(
        f"Loaded {len(descriptors)} server(s) from {config_path}",
        extra={
            "structured": {
                "log_type": "config_loaded",
                "servers": [d.id for d in descriptors if d.enabled],
            }
        },
    )
    return descriptors
