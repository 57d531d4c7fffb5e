"""
Gateway wire protocol.

Inbound client frames fall into four families, recognised in this order:
control envelopes (``protocol``), JSON-RPC 2.0 (``jsonrpc``), pub/sub control
(``key``) and legacy typed messages (``type``). Outbound client events are
``{"event": name, "payload": [...]}`` pairs.
"""
import json
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


JSONRPC_VERSION = "2.0"
MCP_PROTOCOL_VERSION = "2024-11-05"

# JSON-RPC error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
TOOL_ERROR = -32000

# WebSocket close codes used during the handshake
CLOSE_UNAUTHORIZED = 4000
CLOSE_ALREADY_ACTIVE = 4001


class EventType(str, Enum):
    """Domain events carried on the in-process bus."""
    CLIENT_CONNECTED = "client.connected"
    CLIENT_DISCONNECTED = "client.disconnected"
    CLIENT_STATUS_UPDATE = "client.status.update"
    # Named events republished from client frames
    CLIENT_EVENT = "client.event"
    EDGE_STATUS_UPDATE = "edge.status.update"
    TOOLS_UPDATE = "tools.update"
    WIDGET_UPDATE = "widget.update"
    # Agent record progress (delta/content/done/error)
    RECORD_UPDATE = "record.update"
    TOOL_CALL_START = "tool.call.start"
    TOOL_CALL_RESULT = "tool.call.result"
    TOOL_CALL_ERROR = "tool.call.error"


class ConnectionStatus(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class RecordStatus(str, Enum):
    DELTA = "delta"
    CONTENT = "content"
    DONE = "done"
    ERROR = "error"


class EventMessage(BaseModel):
    """Bus event envelope."""
    event: EventType
    payload: Dict[str, Any] = Field(default_factory=dict)
    seq: Optional[int] = None
    timestamp: datetime = Field(default_factory=datetime.now)


class RecordUpdate(BaseModel):
    """Progress of one agent record, as produced by the agent pipeline or the task queue."""
    record_id: str
    status: RecordStatus
    content: str = ""
    history: Optional[List[Dict[str, Any]]] = None
    error: Optional[str] = None


# ============ Inbound families ============

class ControlEnvelope(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    protocol: str
    action: Optional[str] = None
    payload: Any = None
    trace_id: Optional[str] = Field(default=None, alias="traceId")


class JsonRpcError(BaseModel):
    code: int
    message: str
    data: Any = None


class JsonRpcMessage(BaseModel):
    jsonrpc: Literal["2.0"]
    id: Optional[Union[int, str]] = None
    method: Optional[str] = None
    params: Optional[Union[Dict[str, Any], List[Any]]] = None
    result: Any = None
    error: Optional[JsonRpcError] = None

    @property
    def is_response(self) -> bool:
        return self.method is None and self.id is not None

    @property
    def is_notification(self) -> bool:
        return self.method is not None and self.id is None

    @property
    def param_dict(self) -> Dict[str, Any]:
        return self.params if isinstance(self.params, dict) else {}


class PubSubMessage(BaseModel):
    key: Literal["publish", "subscribe", "unsubscribe"]
    event: str = Field(min_length=1)
    payload: Any = None

    @property
    def args(self) -> List[Any]:
        if self.payload is None:
            return []
        if isinstance(self.payload, list):
            return self.payload
        return [self.payload]


class LegacyMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str = Field(min_length=1)

    @property
    def fields(self) -> Dict[str, Any]:
        return dict(self.model_extra or {})


InboundMessage = Union[ControlEnvelope, JsonRpcMessage, PubSubMessage, LegacyMessage]

PUBSUB_KEYS = ("publish", "subscribe", "unsubscribe")


class GatewayProtocol:
    """Helper utilities for building/parsing gateway protocol messages."""

    @staticmethod
    def parse_inbound(data: Union[str, bytes, Dict[str, Any]]) -> InboundMessage:
        """
        Classify and validate one inbound frame.

        Raises ``ValueError`` (``pydantic.ValidationError`` included) for
        frames that are not JSON objects or do not fit their family.
        """
        raw = json.loads(data) if isinstance(data, (str, bytes)) else data
        if not isinstance(raw, dict):
            raise ValueError("Inbound frame must be a JSON object")

        if "protocol" in raw:
            return ControlEnvelope.model_validate(raw)
        if raw.get("jsonrpc") == JSONRPC_VERSION:
            return JsonRpcMessage.model_validate(raw)
        if raw.get("key") in PUBSUB_KEYS:
            return PubSubMessage.model_validate(raw)
        if "type" in raw:
            return LegacyMessage.model_validate(raw)
        raise ValueError("Unrecognized message shape")

    @staticmethod
    def client_event(event: str, *args: Any) -> Dict[str, Any]:
        """Create an outbound ``{event, payload}`` client event."""
        return {"event": event, "payload": list(args)}

    @staticmethod
    def jsonrpc_request(request_id: Union[int, str], method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        message: Dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": request_id, "method": method}
        if params is not None:
            message["params"] = params
        return message

    @staticmethod
    def jsonrpc_notification(method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        message: Dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": method}
        if params is not None:
            message["params"] = params
        return message

    @staticmethod
    def jsonrpc_result(request_id: Union[int, str, None], result: Any) -> Dict[str, Any]:
        return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result}

    @staticmethod
    def jsonrpc_error(
        request_id: Union[int, str, None],
        code: int,
        message: str,
        data: Any = None,
    ) -> Dict[str, Any]:
        error: Dict[str, Any] = {"code": code, "message": message}
        if data is not None:
            error["data"] = data
        return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "error": error}

    @staticmethod
    def mcp_initialize_result(server_name: str, version: str = "1.0.0") -> Dict[str, Any]:
        return {
            "protocolVersion": MCP_PROTOCOL_VERSION,
            "capabilities": {"tools": {}},
            "serverInfo": {"name": server_name, "version": version},
        }

    @staticmethod
    def mcp_text_content(result: Any) -> Dict[str, Any]:
        """Wrap a tool result in the MCP content envelope."""
        text = result if isinstance(result, str) else json.dumps(result, ensure_ascii=False)
        return {"content": [{"type": "text", "text": text}]}
