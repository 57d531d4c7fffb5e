"""
Edge (MCP server) connections.

An edge connects with a token, completes the MCP ``initialize`` handshake,
publishes its tools and then serves ``tools/call`` requests routed to it by
the ToolCallBridge.
"""
import asyncio
import json
from typing import Any, Dict, List, Optional

from fastapi import WebSocketDisconnect
from loguru import logger
from pydantic import ValidationError

from .connection import Connection
from .jsonrpc import JsonRpcPeer
from .protocol import (
    CLOSE_ALREADY_ACTIVE,
    CLOSE_UNAUTHORIZED,
    METHOD_NOT_FOUND,
    EventType,
    GatewayProtocol,
    JsonRpcMessage,
)
from .runtime import GatewayRuntime
from .schemas import TokenRecord, ToolDefinition

EDGE_KIND = "edge"


class EdgeGateway:
    def __init__(self, connection: Connection, runtime: GatewayRuntime):
        self.connection = connection
        self.runtime = runtime
        self.token: Optional[str] = None
        self.token_record: Optional[TokenRecord] = None
        self.rpc: Optional[JsonRpcPeer] = None
        self.tools: List[ToolDefinition] = []
        self._initialized = asyncio.Event()
        self._handshake_task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def label(self) -> str:
        return f"edge:{(self.token or '?')[:8]}"

    async def prepare(self, token: Optional[str]) -> bool:
        """Authenticate and claim the token; closes the socket and returns False on rejection."""
        if not token:
            await self._reject(CLOSE_UNAUTHORIZED, "Token is required", "missing_token")
            return False
        record = await self.runtime.tokens.validate(token)
        if record is None:
            await self._reject(CLOSE_UNAUTHORIZED, "Invalid token", "invalid_token")
            return False
        if not self.runtime.registry.acquire(EDGE_KIND, token, self):
            await self._reject(CLOSE_ALREADY_ACTIVE, "Edge singleton: connection already active", "already_active")
            return False

        self.token = token
        self.token_record = record
        self.rpc = JsonRpcPeer(
            self.label,
            self.connection.send_message,
            timeout=self.runtime.realtime.tool_call_timeout_s,
            metrics=self.runtime.metrics,
        )
        self.runtime.metrics.record_connection(EDGE_KIND)
        logger.info(f"[{self.label}] connected (domain {record.domain_id})")
        await self.runtime.events.emit(
            EventType.EDGE_STATUS_UPDATE,
            {"token": token, "domain_id": record.domain_id, "status": "online"},
        )
        return True

    async def _reject(self, code: int, reason: str, metric_reason: str) -> None:
        logger.warning(f"Edge connection rejected: {reason}")
        self.runtime.metrics.record_rejection(metric_reason)
        await self.connection.close(code=code, reason=reason)

    async def run(self) -> None:
        try:
            while True:
                raw = await self.connection.receive_text()
                await self.handle_message(raw)
        except WebSocketDisconnect:
            logger.info(f"[{self.label}] disconnected")
        except Exception as e:
            logger.error(f"[{self.label}] connection error: {e}")
        finally:
            await self.close()

    async def handle_message(self, raw: str) -> None:
        self.runtime.metrics.record_message()
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.warning(f"[{self.label}] malformed message dropped: {e}")
            self.runtime.metrics.record_dropped_message()
            return
        if not isinstance(data, dict):
            self.runtime.metrics.record_dropped_message()
            return

        if data.get("jsonrpc") == "2.0":
            try:
                message = JsonRpcMessage.model_validate(data)
            except ValidationError as e:
                logger.warning(f"[{self.label}] invalid JSON-RPC message dropped: {e}")
                self.runtime.metrics.record_dropped_message()
                return
            await self._handle_jsonrpc(message)
            return

        msg_type = data.get("type")
        if msg_type == "ping":
            await self.connection.send_message({"type": "pong"})
        elif msg_type == "status":
            await self.runtime.events.emit(
                EventType.EDGE_STATUS_UPDATE,
                {
                    "token": self.token,
                    "domain_id": self.token_record.domain_id if self.token_record else None,
                    "status": data.get("status"),
                    "error": data.get("error"),
                },
            )
        elif msg_type == "tools/list":
            await self.sync_tools(data.get("tools"))
        else:
            logger.debug(f"[{self.label}] ignoring message type {msg_type}")

    async def _handle_jsonrpc(self, message: JsonRpcMessage) -> None:
        if message.is_response:
            self.rpc.handle_response(message)
            return

        method = message.method
        if method == "initialize":
            await self.connection.send_message(
                GatewayProtocol.jsonrpc_result(
                    message.id,
                    GatewayProtocol.mcp_initialize_result(self.runtime.server.server_name),
                )
            )
            if self._handshake_task is None:
                self._handshake_task = asyncio.create_task(self._request_tools_when_initialized())
        elif method == "notifications/initialized":
            self._initialized.set()
        elif method == "notifications/tools-update":
            await self.sync_tools(message.param_dict.get("tools"))
        elif message.id is not None:
            await self.connection.send_message(
                GatewayProtocol.jsonrpc_error(message.id, METHOD_NOT_FOUND, "Method not found")
            )
        else:
            logger.debug(f"[{self.label}] ignoring notification {method}")

    async def _request_tools_when_initialized(self) -> None:
        timeout = self.runtime.realtime.mcp_initialized_timeout_s
        try:
            await asyncio.wait_for(self._initialized.wait(), timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[{self.label}] no notifications/initialized within {timeout:g}s, listing tools anyway")
            self.runtime.metrics.record_init_fallback("mcp")
        try:
            result = await self.rpc.request("tools/list", {})
        except Exception as e:
            logger.error(f"[{self.label}] tools/list failed: {e}")
            return
        await self.sync_tools((result or {}).get("tools") if isinstance(result, dict) else None)

    async def sync_tools(self, raw_tools: Any) -> int:
        """Validate and publish the edge's tool list."""
        if not isinstance(raw_tools, list):
            logger.warning(f"[{self.label}] tools update without a tool list")
            return 0
        tools: List[ToolDefinition] = []
        for item in raw_tools:
            try:
                tools.append(ToolDefinition.model_validate(item))
            except ValidationError as e:
                logger.warning(f"[{self.label}] skipping invalid tool definition: {e}")

        self.tools = tools
        domain_id = self.token_record.domain_id if self.token_record else ""
        await self.runtime.tools.sync(domain_id, self.token, tools)
        self.runtime.bridge.register_transport(self.rpc, tools)
        await self.connection.send_message({"type": "tools/synced", "count": len(tools)})
        await self.runtime.events.emit(
            EventType.TOOLS_UPDATE,
            {
                "token": self.token,
                "domain_id": domain_id,
                "tools": [tool.to_mcp() for tool in tools],
            },
        )
        return len(tools)

    async def close(self) -> None:
        """Release everything this edge holds; safe to call twice."""
        if self._closed or self.token is None:
            self._closed = True
            return
        self._closed = True

        if self._handshake_task is not None and not self._handshake_task.done():
            self._handshake_task.cancel()
        self.runtime.bridge.unregister_transport(self.rpc)
        self.rpc.close("Connection closed")
        self.runtime.registry.release(EDGE_KIND, self.token, self)
        await self.runtime.events.emit(
            EventType.EDGE_STATUS_UPDATE,
            {
                "token": self.token,
                "domain_id": self.token_record.domain_id if self.token_record else None,
                "status": "offline",
            },
        )
        logger.info(f"[{self.label}] closed")
