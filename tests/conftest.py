"""
测试配置和共享 fixtures
"""
import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

# 添加项目根目录到路径
project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

import pytest
from fastapi import WebSocketDisconnect

from config import RealtimeConfig
from conversation_core import AgentCallbacks
from gateway.connection import Connection
from gateway.runtime import GatewayRuntime
from gateway.schemas import AgentRecord, ClientRecord, ClientSettings, TokenRecord


class FakeWebSocket:
    """客户端一侧的 WebSocket，记录发出的消息"""

    def __init__(self, incoming: Optional[List[str]] = None):
        self.sent: List[Any] = []
        self.incoming = list(incoming or [])
        self.close_code: Optional[int] = None
        self.close_reason: Optional[str] = None

    async def send_text(self, data: str) -> None:
        self.sent.append(json.loads(data))

    async def receive_text(self) -> str:
        if not self.incoming:
            raise WebSocketDisconnect(code=1000)
        return self.incoming.pop(0)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.close_code = code
        self.close_reason = reason

    def events(self, name: str) -> List[List[Any]]:
        """Payload lists of every ``{event, payload}`` message named ``name``."""
        return [m["payload"] for m in self.sent if isinstance(m, dict) and m.get("event") == name and "payload" in m]

    def event_names(self) -> List[str]:
        return [m["event"] for m in self.sent if isinstance(m, dict) and "event" in m and "payload" in m]


class FakeDownstream:
    """语音服务一侧的 socket"""

    def __init__(self, auto_ack: bool = True):
        self.sent: List[Dict[str, Any]] = []
        self.closed = False
        self.auto_ack = auto_ack
        self.queue: asyncio.Queue = asyncio.Queue()

    async def send(self, data: str) -> None:
        message = json.loads(data)
        self.sent.append(message)
        if self.auto_ack and message.get("type") == "session.update":
            await self.push({"type": "session.created"})

    async def push(self, message: Dict[str, Any]) -> None:
        await self.queue.put(json.dumps(message))

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        item = await self.queue.get()
        if item is None:
            raise StopAsyncIteration
        return item

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.queue.put_nowait(None)

    def sent_of(self, msg_type: str) -> List[Dict[str, Any]]:
        return [m for m in self.sent if m.get("type") == msg_type]


class FakeConnector:
    def __init__(self, auto_ack: bool = True, delay: float = 0.0):
        self.auto_ack = auto_ack
        self.delay = delay
        self.urls: List[str] = []
        self.sockets: List[FakeDownstream] = []

    @property
    def calls(self) -> int:
        return len(self.urls)

    async def __call__(self, url: str) -> FakeDownstream:
        self.urls.append(url)
        if self.delay:
            await asyncio.sleep(self.delay)
        ws = FakeDownstream(self.auto_ack)
        self.sockets.append(ws)
        return ws


class ScriptedAgentRunner:
    """按脚本输出内容的 agent runner"""

    def __init__(self, chunks: Optional[List[str]] = None, final: str = "", fail: Optional[str] = None):
        self.chunks = chunks or []
        self.final = final or "".join(self.chunks)
        self.fail = fail
        self.calls: List[Dict[str, Any]] = []

    async def run(self, agent, message, history, callbacks: AgentCallbacks, ctx=None) -> None:
        self.calls.append({"agent": agent.agent_id, "message": message, "history": history})
        if self.fail:
            await callbacks.on_error(self.fail)
            return
        for chunk in self.chunks:
            await callbacks.on_content(chunk)
        await callbacks.on_done(
            self.final,
            history + [{"role": "user", "content": message}, {"role": "assistant", "content": self.final}],
        )


async def wait_until(predicate, timeout: float = 1.0) -> None:
    """让出事件循环直到条件满足"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


def make_runtime(**overrides) -> GatewayRuntime:
    realtime = RealtimeConfig(
        connect_timeout_s=1.0,
        init_timeout_s=0.5,
        tool_call_timeout_s=0.5,
        mcp_initialized_timeout_s=0.2,
        tts_generation_wait_s=0.2,
        tts_playback_wait_s=0.2,
    )
    overrides.setdefault("realtime", realtime)
    return GatewayRuntime(**overrides)


def seed_client(
    runtime: GatewayRuntime,
    token: str = "client-token",
    client_id: str = "1",
    domain_id: str = "system",
    settings: Optional[Dict[str, Any]] = None,
) -> ClientRecord:
    runtime.tokens.add(TokenRecord(token=token, kind="client", domain_id=domain_id, owner="alice"))
    client = ClientRecord(
        client_id=client_id,
        domain_id=domain_id,
        owner="alice",
        settings=ClientSettings.model_validate(settings or {}),
    )
    runtime.clients.add(client, token=token)
    return client


def seed_agent(runtime: GatewayRuntime, agent_id: str = "assistant", domain_id: str = "system") -> AgentRecord:
    agent = AgentRecord(agent_id=agent_id, domain_id=domain_id, prompt="be brief")
    runtime.agents.add(agent)
    return agent


def make_connection(connection_id: str = "conn_test") -> Connection:
    return Connection(FakeWebSocket(), connection_id)


@pytest.fixture
def runtime():
    return make_runtime()


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture(autouse=True)
def reset_environment(monkeypatch):
    """每个测试前重置环境变量"""
    original_env = os.environ.copy()
    monkeypatch.setenv("EJUNZ_TEST", "1")

    yield

    os.environ.clear()
    os.environ.update(original_env)
