"""JSON-RPC peer: outbound requests over a socket, correlated with their responses."""
from typing import Any, Awaitable, Callable, Dict, Optional

from loguru import logger

from .correlation import CorrelationTable
from .errors import ConnectionClosedError, GatewayError
from .metrics import MetricsCollector
from .protocol import GatewayProtocol, JsonRpcMessage

SendJson = Callable[[Dict[str, Any]], Awaitable[None]]


class JsonRpcPeer:
    """
    One side of a JSON-RPC conversation.

    Used as a tool transport by the ToolCallBridge: ``call_tool`` sends
    ``tools/call`` and waits for the correlated response.
    """

    def __init__(
        self,
        peer_id: str,
        send_json: SendJson,
        *,
        timeout: float = 10.0,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.peer_id = peer_id
        self.send_json = send_json
        self.timeout = timeout
        self.pending = CorrelationTable(peer_id, timeout, metrics)

    async def request(self, method: str, params: Optional[Dict[str, Any]] = None, timeout: Optional[float] = None) -> Any:
        request_id = self.pending.next_id()
        future = self.pending.register(request_id, timeout, operation=method)
        try:
            await self.send_json(GatewayProtocol.jsonrpc_request(request_id, method, params))
        except Exception as e:
            logger.warning(f"[{self.peer_id}] failed to send {method}: {e}")
            self.pending.settle(request_id, error=ConnectionClosedError(f"Failed to send {method}: {e}"))
        return await future

    async def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        await self.send_json(GatewayProtocol.jsonrpc_notification(method, params))

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None, timeout: Optional[float] = None) -> Any:
        return await self.request("tools/call", {"name": name, "arguments": arguments or {}}, timeout)

    def handle_response(self, message: JsonRpcMessage) -> bool:
        """Settle the request ``message`` answers; False when nothing was waiting for it."""
        if message.error is not None:
            error = GatewayError(message.error.message or "Unknown error", code=message.error.code)
            return self.pending.settle(message.id, error=error)
        return self.pending.settle(message.id, result=message.result)

    def close(self, reason: str = "Connection closed") -> int:
        return self.pending.reject_all(reason)
