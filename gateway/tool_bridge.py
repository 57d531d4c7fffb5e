from __future__ import annotations

"""
工具调用桥

- 本地注册工具（进程内 Python 工具）优先
- 其次路由到在线的工具提供方（edge 连接或暴露工具的 client），走 JSON-RPC tools/call
- 工具未在线时立即失败：已知工具 -> not connected，未知工具 -> not found
- 在事件总线上发出 TOOL_CALL_* 生命周期事件
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from loguru import logger

from .errors import ToolCallError, ToolNotConnectedError, ToolNotFoundError
from .events import EventEmitter
from .metrics import MetricsCollector
from .protocol import EventType
from .schemas import ToolDefinition
from .stores import ToolStore


@dataclass
class ToolInvocationContext:
    """
    工具调用上下文
    - client_id: 触发调用的 client
    - domain_id: 所属域
    - source: 调用来源（agent / client / http 等）
    """

    client_id: Optional[str] = None
    domain_id: Optional[str] = None
    source: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class Tool(Protocol):
    """进程内工具接口"""

    tool_id: str
    name: str
    description: str

    async def invoke(self, args: Dict[str, Any], ctx: Optional[ToolInvocationContext] = None) -> Any:  # pragma: no cover - 协议接口
        ...


class ToolTransport(Protocol):
    """在线工具提供方（JsonRpcPeer）"""

    peer_id: str

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None, timeout: Optional[float] = None) -> Any:  # pragma: no cover - 协议接口
        ...


def unwrap_tool_result(result: Any) -> Any:
    """
    解开 MCP content 信封

    ``{"content": [{"type": "text", "text": "..."}]}`` -> 文本按 JSON 解析，失败则返回原始字符串。
    ``isError: true`` 抛出 ToolCallError。其他结构原样返回。
    """
    if not isinstance(result, dict) or not isinstance(result.get("content"), list):
        return result

    texts = [
        item.get("text", "")
        for item in result["content"]
        if isinstance(item, dict) and item.get("type") == "text"
    ]
    if not texts:
        return result
    text = texts[0] if len(texts) == 1 else "\n".join(texts)

    if result.get("isError"):
        raise ToolCallError(text or "Tool reported an error")

    try:
        return json.loads(text)
    except (TypeError, ValueError):
        return text


class ToolCallBridge:
    def __init__(
        self,
        event_emitter: Optional[EventEmitter] = None,
        tool_store: Optional[ToolStore] = None,
        metrics: Optional[MetricsCollector] = None,
        call_timeout: float = 10.0,
    ) -> None:
        self.event_emitter = event_emitter
        self.tool_store = tool_store
        self.metrics = metrics
        self.call_timeout = call_timeout

        self._registered_tools: Dict[str, Tool] = {}
        # tool name -> (transport, definition)
        self._routes: Dict[str, tuple] = {}

    # ===== 本地工具 =====

    def register_tool(self, tool: Tool) -> None:
        if tool.tool_id in self._registered_tools:
            logger.warning(f"Tool already registered: {tool.tool_id}, will overwrite")
        self._registered_tools[tool.tool_id] = tool
        logger.info(f"Registered local tool: {tool.tool_id}")

    def unregister_tool(self, tool_id: str) -> None:
        if tool_id in self._registered_tools:
            del self._registered_tools[tool_id]
            logger.info(f"Unregistered local tool: {tool_id}")

    # ===== 在线提供方 =====

    def register_transport(self, transport: ToolTransport, tools: List[ToolDefinition]) -> None:
        """把 transport 设为 tools 的路由目标，替换它此前公布的工具"""
        self.unregister_transport(transport)
        for tool in tools:
            current = self._routes.get(tool.name)
            if current is not None and current[0] is not transport:
                logger.warning(
                    f"Tool {tool.name} moved from {current[0].peer_id} to {transport.peer_id}"
                )
            self._routes[tool.name] = (transport, tool)
        logger.info(f"Registered {len(tools)} tool(s) from {transport.peer_id}")

    def unregister_transport(self, transport: ToolTransport) -> int:
        names = [name for name, (owner, _) in self._routes.items() if owner is transport]
        for name in names:
            del self._routes[name]
        if names:
            logger.info(f"Unregistered {len(names)} tool(s) from {transport.peer_id}")
        return len(names)

    def is_connected(self, tool_name: str) -> bool:
        return tool_name in self._registered_tools or tool_name in self._routes

    # ===== 查询 =====

    def list_tools(self) -> List[Dict[str, Any]]:
        tools: List[Dict[str, Any]] = []
        for tool_id, tool in self._registered_tools.items():
            tools.append(
                {
                    "name": tool_id,
                    "description": getattr(tool, "description", ""),
                    "inputSchema": getattr(tool, "input_schema", {"type": "object", "properties": {}}),
                    "source": "local",
                }
            )
        for name, (transport, definition) in self._routes.items():
            entry = definition.to_mcp()
            entry["source"] = transport.peer_id
            tools.append(entry)
        return tools

    # ===== 调用 =====

    async def call_tool(
        self,
        tool_name: str,
        arguments: Optional[Dict[str, Any]] = None,
        *,
        ctx: Optional[ToolInvocationContext] = None,
        request_id: Optional[str] = None,
    ) -> Any:
        arguments = arguments or {}

        local_tool = self._registered_tools.get(tool_name)
        if local_tool is not None:
            return await self._invoke("local", tool_name, arguments, ctx, request_id,
                                      lambda: local_tool.invoke(arguments, ctx))

        route = self._routes.get(tool_name)
        if route is None:
            known = await self.tool_store.find(tool_name) if self.tool_store else None
            error = ToolNotConnectedError(tool_name) if known else ToolNotFoundError(tool_name)
            logger.warning(f"Tool call rejected [{tool_name}]: {error}")
            if self.metrics:
                self.metrics.record_tool_call(ok=False)
            raise error

        transport = route[0]

        async def remote_call():
            raw = await transport.call_tool(tool_name, arguments, self.call_timeout)
            return unwrap_tool_result(raw)

        return await self._invoke(transport.peer_id, tool_name, arguments, ctx, request_id, remote_call)

    async def _invoke(self, source, tool_name, arguments, ctx, request_id, call):
        base = {
            "request_id": request_id,
            "tool_name": tool_name,
            "source": source,
            "client_id": ctx.client_id if ctx else None,
        }
        await self._emit_event(EventType.TOOL_CALL_START, {**base, "args": arguments})
        try:
            result = await call()
        except Exception as e:
            logger.error(f"Tool invocation failed [{tool_name}] via {source}: {e}")
            if self.metrics:
                self.metrics.record_tool_call(ok=False)
            await self._emit_event(EventType.TOOL_CALL_ERROR, {**base, "error": str(e)})
            raise
        if self.metrics:
            self.metrics.record_tool_call(ok=True)
        await self._emit_event(EventType.TOOL_CALL_RESULT, {**base, "result": result})
        return result

    async def _emit_event(self, event: EventType, payload: Dict[str, Any]) -> None:
        if not self.event_emitter:
            return
        try:
            await self.event_emitter.emit(event, payload)
        except Exception as e:  # pragma: no cover - 防御性代码
            logger.error(f"Failed to emit tool event {event}: {e}")
