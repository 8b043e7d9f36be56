"""Exception types shared by the federation manager and the stream orchestrator."""


class FederationError(Exception):
    """Base class for all federation errors."""


class ConfigError(FederationError):
    """Raised when the capability server configuration is invalid."""


class ServerConnectionError(FederationError):
    """Raised when a single capability server cannot be connected."""

    def __init__(self, server_id: str, message: str):
        super().__init__(f"Error connecting to server {server_id}: {message}")
        self.server_id = server_id


class CatalogFetchError(FederationError):
    """Raised when a server's tool manifest cannot be fetched."""

    def __init__(self, server_id: str, message: str):
        super().__init__(f"Failed to list tools for {server_id}: {message}")
        self.server_id = server_id


class DispatchError(FederationError):
    """Base class for failures while routing a prefixed tool call."""


class NoClient(DispatchError):
    """No connected server owns the escaped server id."""

    def __init__(self, server_id: str):
        super().__init__(f"No client found for server: {server_id}")
        self.server_id = server_id


class ToolNotFound(DispatchError):
    """The server is connected but does not expose the tool."""

    def __init__(self, server_id: str, tool_name: str):
        super().__init__(f"Tool not found: {tool_name} (server {server_id})")
        self.server_id = server_id
        self.tool_name = tool_name


class InvocationFailure(DispatchError):
    """The server rejected or failed the tool invocation."""

    def __init__(self, server_id: str, tool_name: str, cause: BaseException):
        super().__init__(f"Error calling tool {tool_name} on server {server_id}: {cause}")
        self.server_id = server_id
        self.tool_name = tool_name
        self.cause = cause


class ProviderError(FederationError):
    """Raised when a model client cannot be resolved."""


class ModelStreamError(FederationError):
    """Raised when the model reports a failure inside the event stream."""


class StreamAborted(FederationError):
    """Raised inside the stream loop once the cancellation token fires."""
