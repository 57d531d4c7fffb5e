"""
Collaborator interfaces used by the gateway, with in-memory implementations.

Persistent storage is owned by the host platform; these implementations keep
the gateway runnable on its own and back the tests.
"""
from __future__ import annotations

import asyncio
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Protocol

from loguru import logger

from .schemas import (
    AgentRecord,
    ChatMessage,
    ChatRecord,
    ClientRecord,
    TokenRecord,
    ToolDefinition,
)


class TokenStore(Protocol):
    async def validate(self, token: str) -> Optional[TokenRecord]:  # pragma: no cover - 协议接口
        ...


class ClientStore(Protocol):
    async def resolve(self, token: TokenRecord) -> ClientRecord:  # pragma: no cover - 协议接口
        ...

    async def get(self, domain_id: str, client_id: str) -> Optional[ClientRecord]:  # pragma: no cover - 协议接口
        ...

    async def update_status(
        self, domain_id: str, client_id: str, status: str, error: Optional[str] = None
    ) -> None:  # pragma: no cover - 协议接口
        ...


class AgentStore(Protocol):
    async def get(self, domain_id: str, agent_id: str) -> Optional[AgentRecord]:  # pragma: no cover - 协议接口
        ...


class ToolStore(Protocol):
    async def sync(self, domain_id: str, provider: str, tools: List[ToolDefinition]) -> int:  # pragma: no cover - 协议接口
        ...

    async def find(self, name: str) -> Optional[ToolDefinition]:  # pragma: no cover - 协议接口
        ...


class ChatStore(Protocol):
    async def add(
        self, domain_id: str, client_id: str, owner: Optional[str], messages: List[ChatMessage]
    ) -> int:  # pragma: no cover - 协议接口
        ...


class AudioStorage(Protocol):
    async def put(self, path: str, data: bytes) -> str:  # pragma: no cover - 协议接口
        ...


class InMemoryTokenStore:
    def __init__(self, tokens: Optional[List[TokenRecord]] = None):
        self._tokens: Dict[str, TokenRecord] = {t.token: t for t in tokens or []}

    def add(self, record: TokenRecord) -> None:
        self._tokens[record.token] = record

    async def validate(self, token: str) -> Optional[TokenRecord]:
        return self._tokens.get(token)


class InMemoryClientStore:
    def __init__(self, clients: Optional[List[ClientRecord]] = None):
        self._clients: Dict[tuple, ClientRecord] = {}
        self._by_token: Dict[str, str] = {}
        for client in clients or []:
            self.add(client)

    def add(self, client: ClientRecord, token: Optional[str] = None) -> None:
        self._clients[(client.domain_id, client.client_id)] = client
        if token:
            self._by_token[token] = client.client_id

    async def resolve(self, token: TokenRecord) -> ClientRecord:
        """Find the client bound to ``token``, creating it on first use."""
        client_id = self._by_token.get(token.token)
        if client_id is not None:
            existing = self._clients.get((token.domain_id, client_id))
            if existing is not None:
                return existing

        client_id = str(len(self._clients) + 1)
        while (token.domain_id, client_id) in self._clients:
            client_id = str(int(client_id) + 1)
        client = ClientRecord(client_id=client_id, domain_id=token.domain_id, owner=token.owner, name=f"Client {client_id}")
        self.add(client, token.token)
        logger.info(f"Created client {client_id} for domain {token.domain_id}")
        return client

    async def get(self, domain_id: str, client_id: str) -> Optional[ClientRecord]:
        return self._clients.get((domain_id, client_id))

    async def update_status(self, domain_id: str, client_id: str, status: str, error: Optional[str] = None) -> None:
        client = self._clients.get((domain_id, client_id))
        if client is None:
            return
        client.status = status
        client.error_message = error
        client.last_seen = datetime.now()


class InMemoryAgentStore:
    def __init__(self, agents: Optional[List[AgentRecord]] = None):
        self._agents: Dict[tuple, AgentRecord] = {}
        for agent in agents or []:
            self.add(agent)

    def add(self, agent: AgentRecord) -> None:
        self._agents[(agent.domain_id, agent.agent_id)] = agent

    async def get(self, domain_id: str, agent_id: str) -> Optional[AgentRecord]:
        return self._agents.get((domain_id, agent_id))


class InMemoryToolStore:
    def __init__(self):
        self._tools: Dict[str, Dict[str, ToolDefinition]] = {}

    async def sync(self, domain_id: str, provider: str, tools: List[ToolDefinition]) -> int:
        """Replace the tools recorded for ``provider``."""
        self._tools[provider] = {tool.name: tool for tool in tools}
        logger.info(f"Synced {len(tools)} tool(s) for provider {provider} in domain {domain_id}")
        return len(tools)

    async def find(self, name: str) -> Optional[ToolDefinition]:
        for tools in self._tools.values():
            if name in tools:
                return tools[name]
        return None


class InMemoryChatStore:
    def __init__(self):
        self._chats: Dict[int, ChatRecord] = {}
        self._counter = 0

    async def add(self, domain_id: str, client_id: str, owner: Optional[str], messages: List[ChatMessage]) -> int:
        self._counter += 1
        self._chats[self._counter] = ChatRecord(
            conversation_id=self._counter,
            domain_id=domain_id,
            client_id=client_id,
            owner=owner,
            messages=list(messages),
        )
        return self._counter

    def get(self, conversation_id: int) -> Optional[ChatRecord]:
        return self._chats.get(conversation_id)


class FileAudioStorage:
    """Write audio blobs below a root directory."""

    def __init__(self, root: Path):
        self.root = Path(root)

    async def put(self, path: str, data: bytes) -> str:
        target = (self.root / path).resolve()
        if self.root.resolve() not in target.parents:
            raise ValueError(f"Audio path escapes storage root: {path}")
        await asyncio.to_thread(self._write, target, data)
        return path

    @staticmethod
    def _write(target: Path, data: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
