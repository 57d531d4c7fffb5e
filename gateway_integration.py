"""
Gateway integration module.

Builds the shared gateway runtime (stores, event bus, tool bridge, agent
runner) and seeds the in-memory stores from a JSON file.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Optional

from loguru import logger
from pydantic import ValidationError

from config import EjunzConfig, config as default_config
from conversation_core import AgentConversation
from gateway.runtime import GatewayRuntime
from gateway.schemas import AgentRecord, ClientRecord, TokenRecord
from gateway.stores import (
    FileAudioStorage,
    InMemoryAgentStore,
    InMemoryClientStore,
    InMemoryTokenStore,
)


class GatewayIntegration:
    """Gateway integration facade."""

    def __init__(self, config_path: str = "gateway_config.json", app_config: Optional[EjunzConfig] = None):
        self.config_path = Path(config_path)
        self.app_config = app_config or default_config
        self.seed = self._load_seed()
        self.runtime: Optional[GatewayRuntime] = None

    def _load_seed(self) -> Dict[str, Any]:
        """Load tokens, clients and agents for the in-memory stores."""
        if not self.config_path.exists():
            logger.warning(f"Config file not found: {self.config_path}, starting with empty stores")
            return {}
        try:
            with self.config_path.open("r", encoding="utf-8") as f:
                return json.load(f)
        except Exception as e:
            logger.error(f"Failed to load {self.config_path}: {e}")
            return {}

    def build_runtime(self) -> GatewayRuntime:
        tokens = InMemoryTokenStore()
        clients = InMemoryClientStore()
        agents = InMemoryAgentStore()

        for item in self.seed.get("tokens", []):
            try:
                tokens.add(TokenRecord.model_validate(item))
            except ValidationError as e:
                logger.warning(f"Skipping invalid token entry: {e}")
        for item in self.seed.get("clients", []):
            try:
                clients.add(ClientRecord.model_validate(item), token=item.get("token"))
            except ValidationError as e:
                logger.warning(f"Skipping invalid client entry: {e}")
        for item in self.seed.get("agents", []):
            try:
                agents.add(AgentRecord.model_validate(item))
            except ValidationError as e:
                logger.warning(f"Skipping invalid agent entry: {e}")

        audio_dir = self.seed.get("audio_dir") or (self.app_config.system.base_dir / "storage" / "audio")
        runtime = GatewayRuntime(
            realtime=self.app_config.realtime,
            server=self.app_config.gateway,
            tokens=tokens,
            clients=clients,
            agents=agents,
            audio=FileAudioStorage(Path(audio_dir)),
        )
        runtime.agent_runner = AgentConversation(
            runtime.bridge,
            self.app_config.api,
            max_tool_rounds=self.app_config.realtime.max_tool_rounds,
        )
        logger.info(
            f"Gateway runtime ready: {len(self.seed.get('tokens', []))} token(s), "
            f"{len(self.seed.get('agents', []))} agent(s)"
        )
        self.runtime = runtime
        return runtime

    async def shutdown(self) -> None:
        if self.runtime is None:
            return
        self.runtime.events.clear_listeners()
        logger.info("Gateway runtime shut down")


async def initialize_gateway(config_path: str = "gateway_config.json", app_config: Optional[EjunzConfig] = None) -> GatewayIntegration:
    integration = GatewayIntegration(config_path, app_config)
    integration.build_runtime()
    return integration
