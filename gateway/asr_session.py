"""Realtime speech recognition sub-session (DashScope qwen realtime)."""
import base64
import binascii
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from loguru import logger

from .errors import ConfigurationError, SubSessionError
from .schemas import AsrSettings
from .subsession import EmitFn, StreamingSubSession, require_setting

SUPPORTED_ASR_PROVIDERS = ("qwen-realtime",)

TranscriptCallback = Callable[[str], Awaitable[None]]


class AsrSession(StreamingSubSession):
    kind = "asr"

    def __init__(
        self,
        owner_id: str,
        settings: AsrSettings,
        emit: EmitFn,
        *,
        default_base_url: str,
        default_model: str,
        on_final_transcript: Optional[TranscriptCallback] = None,
        **kwargs,
    ):
        super().__init__(owner_id, emit, **kwargs)
        self.settings = settings
        self.default_base_url = default_base_url
        self.default_model = default_model
        self.on_final_transcript = on_final_transcript
        self.task_id: Optional[str] = None
        self.audio_chunks: List[bytes] = []

    def validate_settings(self) -> None:
        if self.settings.provider not in SUPPORTED_ASR_PROVIDERS:
            raise ConfigurationError(f"Unsupported ASR provider: {self.settings.provider}")
        require_setting(self.settings.api_key, "ASR API key")

    def base_url(self) -> str:
        return self.settings.base_url or self.default_base_url

    @property
    def model(self) -> str:
        return self.settings.model or self.default_model

    def query_params(self) -> Dict[str, str]:
        return {"model": self.model, "api_key": self.settings.api_key or ""}

    def build_init_message(self) -> Dict[str, Any]:
        self.task_id = f"task-{self.owner_id}-{int(time.time() * 1000)}"
        return {
            "type": "session.update",
            "session": {
                "input_audio_format": "pcm",
                "input_audio_transcription": {"model": self.model},
                "turn_detection": {
                    "type": "server_vad" if self.settings.enable_server_vad else "none",
                    "threshold": 0.2,
                    "silence_duration_ms": 800,
                },
            },
        }

    async def append_audio(self, audio_b64: str) -> None:
        """Forward one base64 PCM chunk, connecting first if needed."""
        try:
            chunk = base64.b64decode(audio_b64, validate=True)
        except (binascii.Error, ValueError, TypeError) as e:
            raise SubSessionError(f"Invalid audio payload: {e}") from e
        await self.ensure_connection()
        self.audio_chunks.append(chunk)
        await self._send({"type": "input_audio_buffer.append", "audio": audio_b64})

    async def commit(self) -> bool:
        if not self.is_ready:
            logger.warning(f"[asr] {self.owner_id} commit ignored, session not ready")
            return False
        await self._send({"type": "input_audio_buffer.commit"})
        return True

    def take_audio(self) -> bytes:
        """Return and clear the audio retained since the last call."""
        data = b"".join(self.audio_chunks)
        self.audio_chunks = []
        return data

    async def dispatch(self, message: Dict[str, Any]) -> None:
        msg_type = message.get("type")

        if msg_type == "conversation.item.input_audio_transcription.text":
            text = message.get("stash") or message.get("text") or ""
            await self.emit("asr/result", {"text": text, "isFinal": False})

        elif msg_type == "conversation.item.input_audio_transcription.started":
            await self.emit("asr/sentence_begin", {"taskId": self.task_id})

        elif msg_type == "conversation.item.input_audio_transcription.completed":
            transcript = message.get("transcript") or ""
            await self.emit("asr/result", {"text": transcript, "isFinal": True})
            await self.emit("asr/sentence_end", {"text": transcript, "taskId": self.task_id})
            if transcript.strip() and self.on_final_transcript:
                await self.on_final_transcript(transcript)

        elif msg_type == "conversation.item.input_audio_transcription.failed":
            error = message.get("error") or {}
            detail = error.get("message") if isinstance(error, dict) else str(error)
            await self.emit("asr/error", {"message": detail or "Transcription failed"})

        elif msg_type == "error":
            error = message.get("error") or {}
            detail = error.get("message") if isinstance(error, dict) else str(error)
            await self.emit("asr/error", {"message": detail or "ASR error"})

        else:
            logger.debug(f"[asr] {self.owner_id} ignoring message type {msg_type}")
