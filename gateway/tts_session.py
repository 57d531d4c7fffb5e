"""Realtime speech synthesis sub-session (DashScope qwen realtime)."""
import base64
import binascii
from typing import Any, Awaitable, Callable, Dict, List, Optional

from loguru import logger

from .errors import ConfigurationError, SubSessionError
from .schemas import TtsSettings
from .subsession import EmitFn, StreamingSubSession, require_setting

SUPPORTED_TTS_PROVIDERS = ("qwen",)

AudioDoneCallback = Callable[[], Awaitable[None]]


class TtsSession(StreamingSubSession):
    kind = "tts"

    def __init__(
        self,
        owner_id: str,
        settings: TtsSettings,
        emit: EmitFn,
        *,
        default_base_url: str,
        default_model: str,
        default_voice: str,
        on_audio_done: Optional[AudioDoneCallback] = None,
        **kwargs,
    ):
        super().__init__(owner_id, emit, **kwargs)
        self.settings = settings
        self.default_base_url = default_base_url
        self.default_model = default_model
        self.default_voice = default_voice
        self.on_audio_done = on_audio_done
        self.audio_chunks: List[bytes] = []

    def validate_settings(self) -> None:
        if self.settings.provider not in SUPPORTED_TTS_PROVIDERS:
            raise ConfigurationError(f"Unsupported TTS provider: {self.settings.provider}")
        require_setting(self.settings.api_key, "TTS API key")

    def base_url(self) -> str:
        return self.settings.base_url or self.default_base_url

    def query_params(self) -> Dict[str, str]:
        return {"model": self.settings.model or self.default_model, "api_key": self.settings.api_key or ""}

    def build_init_message(self) -> Dict[str, Any]:
        return {
            "type": "session.update",
            "session": {
                "modalities": ["audio"],
                "output_audio_format": "pcm16",
                "sample_rate": 24000,
                "voice": self.settings.voice or self.default_voice,
            },
        }

    async def send_text(self, text: str) -> None:
        """Append one unit of text and commit it for synthesis."""
        if not self.is_ready:
            raise SubSessionError("tts session is not ready")
        await self._send({"type": "input_text_buffer.append", "text": text})
        await self._send({"type": "input_text_buffer.commit"})

    def take_audio(self) -> bytes:
        data = b"".join(self.audio_chunks)
        self.audio_chunks = []
        return data

    async def dispatch(self, message: Dict[str, Any]) -> None:
        msg_type = message.get("type")

        if msg_type == "response.audio.delta":
            delta = message.get("delta")
            if not delta:
                return
            try:
                self.audio_chunks.append(base64.b64decode(delta))
            except (binascii.Error, ValueError) as e:
                logger.warning(f"[tts] {self.owner_id} undecodable audio delta: {e}")
            await self.emit("tts/audio", {"audio": delta})

        elif msg_type == "response.audio.done":
            if self.on_audio_done:
                await self.on_audio_done()

        elif msg_type == "error":
            error = message.get("error") or {}
            detail = error.get("message") if isinstance(error, dict) else str(error)
            await self.emit("tts/error", {"message": detail or "TTS error"})

        else:
            logger.debug(f"[tts] {self.owner_id} ignoring message type {msg_type}")
