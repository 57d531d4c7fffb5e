"""
Agent 对话核心

流式调用 OpenAI 兼容接口，模型请求工具时经 ToolCallBridge 调用，
结果回填后继续下一轮，直到模型给出最终回复或达到轮数上限。
进度通过 AgentCallbacks 回调给网关。
"""
import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple

from loguru import logger
from openai import AsyncOpenAI

from config import APIConfig
from gateway.errors import GatewayError
from gateway.schemas import AgentRecord
from gateway.tool_bridge import ToolCallBridge, ToolInvocationContext


@dataclass
class AgentCallbacks:
    on_content: Callable[[str], Awaitable[None]]
    on_tool_call: Callable[[List[Dict[str, Any]]], Awaitable[None]]
    on_tool_result: Callable[[str, Any], Awaitable[None]]
    on_done: Callable[[str, List[Dict[str, Any]]], Awaitable[None]]
    on_error: Callable[[str], Awaitable[None]]


class AgentRunner(Protocol):
    async def run(
        self,
        agent: AgentRecord,
        message: str,
        history: List[Dict[str, Any]],
        callbacks: AgentCallbacks,
        ctx: Optional[ToolInvocationContext] = None,
    ) -> None:  # pragma: no cover - 协议接口
        ...


def to_openai_tools(tools: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """MCP 工具定义 -> OpenAI function 定义"""
    return [
        {
            "type": "function",
            "function": {
                "name": tool["name"],
                "description": tool.get("description", ""),
                "parameters": tool.get("inputSchema") or {"type": "object", "properties": {}},
            },
        }
        for tool in tools
    ]


class AgentConversation:

    def __init__(self, bridge: ToolCallBridge, api_config: APIConfig, max_tool_rounds: int = 5):
        self.bridge = bridge
        self.api_config = api_config
        self.max_tool_rounds = max_tool_rounds
        self._clients: Dict[Tuple[str, str], AsyncOpenAI] = {}

    def _client_for(self, agent: AgentRecord) -> AsyncOpenAI:
        api_key = agent.api_key or self.api_config.api_key
        base_url = (agent.base_url or self.api_config.base_url).rstrip("/") + "/"
        key = (api_key, base_url)
        if key not in self._clients:
            self._clients[key] = AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=self.api_config.timeout)
        return self._clients[key]

    async def run(
        self,
        agent: AgentRecord,
        message: str,
        history: List[Dict[str, Any]],
        callbacks: AgentCallbacks,
        ctx: Optional[ToolInvocationContext] = None,
    ) -> None:
        client = self._client_for(agent)
        model = agent.model or self.api_config.model
        tools = to_openai_tools(self.bridge.list_tools())

        messages: List[Dict[str, Any]] = []
        if agent.prompt:
            messages.append({"role": "system", "content": agent.prompt})
        messages.extend(m for m in history if m.get("role") in ("user", "assistant", "tool"))
        messages.append({"role": "user", "content": message})

        final_message = ""
        try:
            for _ in range(self.max_tool_rounds + 1):
                content, tool_calls = await self._stream_round(client, model, messages, tools, callbacks)
                final_message = content
                if not tool_calls:
                    messages.append({"role": "assistant", "content": content})
                    break

                messages.append({"role": "assistant", "content": content or None, "tool_calls": tool_calls})
                await callbacks.on_tool_call(tool_calls)
                for call in tool_calls:
                    name = call["function"]["name"]
                    result = await self._call_tool(name, call["function"]["arguments"], ctx)
                    await callbacks.on_tool_result(name, result)
                    messages.append({
                        "role": "tool",
                        "tool_call_id": call["id"],
                        "content": result if isinstance(result, str) else json.dumps(result, ensure_ascii=False),
                    })
            else:
                logger.warning(f"Agent {agent.agent_id} hit the tool round limit ({self.max_tool_rounds})")
        except Exception as e:
            logger.error(f"Agent {agent.agent_id} run failed: {e}")
            await callbacks.on_error(str(e))
            return

        out_history = [m for m in messages if m.get("role") != "system"]
        await callbacks.on_done(final_message, out_history)

    async def _call_tool(self, name: str, raw_arguments: str, ctx: Optional[ToolInvocationContext]) -> Any:
        try:
            arguments = json.loads(raw_arguments) if raw_arguments else {}
        except ValueError:
            logger.warning(f"Tool {name} called with unparseable arguments: {raw_arguments!r}")
            return {"error": "Invalid tool arguments"}
        try:
            return await self.bridge.call_tool(name, arguments, ctx=ctx)
        except GatewayError as e:
            return {"error": e.message}

    async def _stream_round(self, client, model, messages, tools, callbacks):
        """一轮流式请求，返回 (文本, 工具调用列表)"""
        kwargs: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": self.api_config.temperature,
            "max_tokens": self.api_config.max_tokens,
            "stream": True,
        }
        if tools:
            kwargs["tools"] = tools

        stream = await client.chat.completions.create(**kwargs)
        parts: List[str] = []
        calls: Dict[int, Dict[str, Any]] = {}
        async for chunk in stream:
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta
            if delta.content:
                parts.append(delta.content)
                await callbacks.on_content(delta.content)
            for tc in delta.tool_calls or []:
                slot = calls.setdefault(
                    tc.index,
                    {"id": "", "type": "function", "function": {"name": "", "arguments": ""}},
                )
                if tc.id:
                    slot["id"] = tc.id
                if tc.function is not None:
                    if tc.function.name:
                        slot["function"]["name"] += tc.function.name
                    if tc.function.arguments:
                        slot["function"]["arguments"] += tc.function.arguments

        return "".join(parts), [calls[i] for i in sorted(calls)]
