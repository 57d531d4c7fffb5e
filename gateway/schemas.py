from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class AsrSettings(_CamelModel):
    provider: str = "qwen-realtime"
    api_key: Optional[str] = Field(default=None, alias="apiKey")
    model: Optional[str] = None
    base_url: Optional[str] = Field(default=None, alias="baseUrl")
    enable_server_vad: bool = Field(default=True, alias="enableServerVad")


class TtsSettings(_CamelModel):
    provider: str = "qwen"
    api_key: Optional[str] = Field(default=None, alias="apiKey")
    model: Optional[str] = None
    voice: Optional[str] = None
    base_url: Optional[str] = Field(default=None, alias="baseUrl")


class AgentSettings(_CamelModel):
    agent_id: Optional[str] = Field(default=None, alias="agentId")


class ClientSettings(_CamelModel):
    asr: Optional[AsrSettings] = None
    tts: Optional[TtsSettings] = None
    agent: Optional[AgentSettings] = None


class ClientRecord(_CamelModel):
    client_id: str = Field(alias="clientId")
    domain_id: str = Field(alias="domainId")
    name: str = ""
    owner: Optional[str] = None
    status: str = "disconnected"
    error_message: Optional[str] = Field(default=None, alias="errorMessage")
    last_seen: Optional[datetime] = Field(default=None, alias="lastSeen")
    settings: ClientSettings = Field(default_factory=ClientSettings)


class AgentRecord(_CamelModel):
    agent_id: str = Field(alias="agentId")
    domain_id: str = Field(alias="domainId")
    name: str = ""
    prompt: str = ""
    model: Optional[str] = None
    api_key: Optional[str] = Field(default=None, alias="apiKey")
    base_url: Optional[str] = Field(default=None, alias="baseUrl")


class TokenRecord(_CamelModel):
    token: str
    kind: str = "client"
    domain_id: str = Field(alias="domainId")
    owner: Optional[str] = None


class ToolDefinition(_CamelModel):
    """An MCP tool as announced by its provider."""
    name: str = Field(min_length=1)
    description: str = ""
    input_schema: Dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}}, alias="inputSchema")

    def to_mcp(self) -> Dict[str, Any]:
        return {"name": self.name, "description": self.description, "inputSchema": self.input_schema}


class ChatMessage(BaseModel):
    role: str
    content: str = ""
    timestamp: datetime = Field(default_factory=datetime.now)
    tool_name: Optional[str] = None
    tool_result: Any = None
    audio_path: Optional[str] = None


class ChatRecord(BaseModel):
    conversation_id: int
    domain_id: str
    client_id: str
    owner: Optional[str] = None
    messages: List[ChatMessage] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.now)
