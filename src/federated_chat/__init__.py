"""
Federated Chat - streaming LLM chat over federated MCP tools.

This package aggregates tools from independently running capability (MCP)
servers into one prefixed namespace, merges them with a small built-in tool
set, and streams model responses with ordered partial events and cancellation.
"""

__version__ = "0.1.0"

from .catalog import ToolCatalog, ToolDescriptor
from .config import ServerDescriptor, SseTransport, StdioTransport, load_config, parse_config
from .connection import ConnectionState, ServerConnectionPool, TeardownReport
from .dispatcher import ToolDispatcher
from .federation import FederationManager
from .orchestrator import (
    ChatStreamOrchestrator,
    ChatSuggestion,
    ChatSummary,
    StreamOutcome,
    StreamResult,
)
from .providers import StreamRequestType
from .schema import translate_schema
from .tool_registry import Tool, ToolRegistry, callable_to_tool_schema

__all__ = [
    "ChatStreamOrchestrator",
    "ChatSuggestion",
    "ChatSummary",
    "ConnectionState",
    "FederationManager",
    "ServerConnectionPool",
    "ServerDescriptor",
    "SseTransport",
    "StdioTransport",
    "StreamOutcome",
    "StreamRequestType",
    "StreamResult",
    "TeardownReport",
    "Tool",
    "ToolCatalog",
    "ToolDescriptor",
    "ToolDispatcher",
    "ToolRegistry",
    "callable_to_tool_schema",
    "load_config",
    "parse_config",
    "translate_schema",
]
