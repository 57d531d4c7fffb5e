from __future__ import annotations

import json
from pathlib import Path
from typing import List, Optional

from loguru import logger
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class SystemConfig(BaseSettings):
    version: str = Field(default="1.0")
    base_dir: Path = Field(default_factory=lambda: Path(__file__).parent)
    log_dir: Path = Field(default_factory=lambda: Path(__file__).parent / "logs")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        value = (v or "INFO").upper()
        if value not in valid_levels:
            raise ValueError(f"log_level must be one of: {sorted(valid_levels)}")
        return value


class APIConfig(BaseSettings):
    """OpenAI-compatible endpoint used by the agent runner."""

    api_key: str = Field(default="placeholder-key-not-set")
    base_url: str = Field(default="https://dashscope.aliyuncs.com/compatible-mode/v1")
    model: str = Field(default="qwen-plus")
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=2000, ge=1, le=8192)
    timeout: Optional[int] = Field(default=None, ge=1, le=300)

    @field_validator("api_key")
    @classmethod
    def validate_api_key(cls, v: str) -> str:
        if v and v != "placeholder-key-not-set":
            v.encode("ascii")
        return v


class ServerConfig(BaseSettings):
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000, ge=1, le=65535)
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    server_name: str = Field(default="ejunz-gateway")


class RealtimeConfig(BaseSettings):
    asr_base_url: str = Field(default="wss://dashscope.aliyuncs.com/api-ws/v1/realtime")
    asr_model: str = Field(default="qwen3-asr-flash-realtime")
    tts_base_url: str = Field(default="wss://dashscope.aliyuncs.com/api-ws/v1/realtime")
    tts_model: str = Field(default="qwen3-tts-flash-realtime")
    tts_voice: str = Field(default="Cherry")

    connect_timeout_s: float = Field(default=10.0, gt=0)
    init_timeout_s: float = Field(default=5.0, gt=0)
    tool_call_timeout_s: float = Field(default=10.0, gt=0)
    mcp_initialized_timeout_s: float = Field(default=5.0, gt=0)
    tts_generation_wait_s: float = Field(default=10.0, gt=0)
    tts_playback_wait_s: float = Field(default=30.0, gt=0)

    sentence_soft_limit: int = Field(default=80, ge=8)
    max_tool_rounds: int = Field(default=5, ge=1, le=50)


class EjunzConfig(BaseSettings):
    system: SystemConfig = Field(default_factory=SystemConfig)
    api: APIConfig = Field(default_factory=APIConfig)
    gateway: ServerConfig = Field(default_factory=ServerConfig)
    realtime: RealtimeConfig = Field(default_factory=RealtimeConfig)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.system.log_dir.mkdir(exist_ok=True)


def _deep_merge(target: dict, source: dict) -> dict:
    for k, v in source.items():
        if isinstance(v, dict) and isinstance(target.get(k), dict):
            _deep_merge(target[k], v)
        else:
            target[k] = v
    return target


def load_config(config_path: Optional[Path] = None) -> EjunzConfig:
    base_from_env = EjunzConfig()
    merged_data = base_from_env.model_dump()

    config_path = config_path or Path("config/default.json")
    if config_path.exists():
        try:
            with config_path.open("r", encoding="utf-8") as f:
                file_data = json.load(f)
            _deep_merge(merged_data, file_data)
        except Exception as e:
            logger.warning(f"Failed to load {config_path}: {e}")

    # Sensitive values stay sourced from env/.env.
    merged_data.setdefault("api", {})["api_key"] = base_from_env.api.api_key

    cfg = EjunzConfig(**merged_data)

    if not cfg.api.api_key or cfg.api.api_key == "placeholder-key-not-set":
        logger.warning("Agent API key is not configured, set API__API_KEY in .env before running agent chat")

    return cfg


config = load_config()
