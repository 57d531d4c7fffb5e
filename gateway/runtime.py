"""Shared services handed to every connection handler."""
from dataclasses import dataclass, field
from typing import Optional

from config import RealtimeConfig, ServerConfig

from .connection import ConnectionRegistry
from .events import EventEmitter
from .metrics import MetricsCollector
from .stores import (
    AgentStore,
    AudioStorage,
    ChatStore,
    ClientStore,
    InMemoryAgentStore,
    InMemoryChatStore,
    InMemoryClientStore,
    InMemoryTokenStore,
    InMemoryToolStore,
    TokenStore,
    ToolStore,
)
from .subsession import Connector
from .tool_bridge import ToolCallBridge


@dataclass
class GatewayRuntime:
    realtime: RealtimeConfig = field(default_factory=RealtimeConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    events: EventEmitter = field(default_factory=EventEmitter)
    registry: ConnectionRegistry = field(default_factory=ConnectionRegistry)
    metrics: MetricsCollector = field(default_factory=MetricsCollector)
    tokens: TokenStore = field(default_factory=InMemoryTokenStore)
    clients: ClientStore = field(default_factory=InMemoryClientStore)
    agents: AgentStore = field(default_factory=InMemoryAgentStore)
    tools: ToolStore = field(default_factory=InMemoryToolStore)
    chats: ChatStore = field(default_factory=InMemoryChatStore)
    audio: Optional[AudioStorage] = None
    agent_runner: Optional[object] = None
    # downstream socket factory for ASR/TTS; None uses websockets
    connector: Optional[Connector] = None
    bridge: Optional[ToolCallBridge] = None

    def __post_init__(self):
        if self.bridge is None:
            self.bridge = ToolCallBridge(
                event_emitter=self.events,
                tool_store=self.tools,
                metrics=self.metrics,
                call_timeout=self.realtime.tool_call_timeout_s,
            )
