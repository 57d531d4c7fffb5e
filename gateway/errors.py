"""Gateway error taxonomy."""
from typing import Optional


class GatewayError(Exception):
    """Base class for errors raised inside the gateway."""

    def __init__(self, message: str, *, code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.code = code


class ConfigurationError(GatewayError):
    """A client or provider setting is missing or unsupported."""


class ConnectionClosedError(GatewayError):
    """The peer connection went away while a request was outstanding."""


class CorrelationTimeoutError(GatewayError):
    """No response arrived for a correlated request in time."""

    def __init__(self, operation: str, request_id: str, timeout: float):
        super().__init__(f"{operation} timeout: id={request_id} after {timeout:g}s")
        self.operation = operation
        self.request_id = request_id
        self.timeout = timeout


class SubSessionError(GatewayError):
    """Downstream ASR/TTS session failed to connect or initialize."""


class SubSessionClosedError(SubSessionError):
    """Downstream session was closed before it became ready."""


class ToolNotFoundError(GatewayError):
    """No tool with this name is registered anywhere."""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool not found: {tool_name}", code=-32601)
        self.tool_name = tool_name


class ToolNotConnectedError(GatewayError):
    """The tool is known but its provider is not connected."""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool provider not connected: {tool_name}", code=-32001)
        self.tool_name = tool_name


class ToolCallError(GatewayError):
    """The tool provider answered with an error."""
