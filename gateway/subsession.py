"""
Streaming sub-sessions to realtime speech providers.

A sub-session moves CLOSED -> CONNECTING -> INIT_PENDING -> READY and falls
back to CLOSED on downstream close or error, or when ``close()`` is called.
Concurrent ``ensure_connection()`` calls share a single connection attempt.
"""
import asyncio
import json
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import urlencode

import websockets
from loguru import logger

from .errors import ConfigurationError, SubSessionClosedError, SubSessionError
from .metrics import MetricsCollector

# (event_name, payload) -> sends one client event
EmitFn = Callable[[str, Dict[str, Any]], Awaitable[None]]
Connector = Callable[[str], Awaitable[Any]]
# reason -> called when the provider drops a session we did not close
ClosedCallback = Callable[[str], Awaitable[None]]


class SubSessionState(str, Enum):
    CLOSED = "closed"
    CONNECTING = "connecting"
    INIT_PENDING = "init_pending"
    READY = "ready"


async def websocket_connector(url: str):
    """Open a downstream provider socket."""
    return await websockets.connect(url, max_size=None)


def mask_secret(value: Optional[str]) -> str:
    if not value:
        return ""
    if len(value) <= 12:
        return "***"
    return f"{value[:8]}...{value[-4:]}"


class StreamingSubSession:
    """Base class holding the connection state machine; subclasses speak the provider protocol."""

    kind = "subsession"
    INIT_ACK = "session.created"

    def __init__(
        self,
        owner_id: str,
        emit: EmitFn,
        *,
        connector: Optional[Connector] = None,
        connect_timeout: float = 10.0,
        init_timeout: float = 5.0,
        metrics: Optional[MetricsCollector] = None,
        on_closed: Optional[ClosedCallback] = None,
    ):
        self.owner_id = owner_id
        self.emit = emit
        self.connector = connector or websocket_connector
        self.connect_timeout = connect_timeout
        self.init_timeout = init_timeout
        self.metrics = metrics
        self.on_closed = on_closed

        self.state = SubSessionState.CLOSED
        self.init_resolved = False
        self._ws = None
        self._reader: Optional[asyncio.Task] = None
        self._attempt: Optional[asyncio.Future] = None
        self._init_future: Optional[asyncio.Future] = None

    # ===== provider hooks =====

    def validate_settings(self) -> None:
        """Raise ConfigurationError when the provider settings are unusable."""

    def base_url(self) -> str:
        raise NotImplementedError

    def query_params(self) -> Dict[str, str]:
        return {}

    def build_init_message(self) -> Dict[str, Any]:
        raise NotImplementedError

    async def dispatch(self, message: Dict[str, Any]) -> None:
        raise NotImplementedError

    # ===== lifecycle =====

    @property
    def is_ready(self) -> bool:
        return self.state is SubSessionState.READY

    def build_url(self) -> str:
        params = self.query_params()
        if not params:
            return self.base_url()
        return f"{self.base_url()}?{urlencode(params)}"

    async def ensure_connection(self) -> None:
        """Return once the sub-session is READY, opening it if needed."""
        if self.state is SubSessionState.READY:
            return
        if self._attempt is None:
            self.validate_settings()
            attempt = asyncio.ensure_future(self._establish())
            attempt.add_done_callback(self._clear_attempt)
            self._attempt = attempt
        await asyncio.shield(self._attempt)

    def _clear_attempt(self, attempt: asyncio.Future) -> None:
        if self._attempt is attempt:
            self._attempt = None
        if not attempt.cancelled():
            attempt.exception()

    async def _establish(self) -> None:
        loop = asyncio.get_running_loop()
        self.state = SubSessionState.CONNECTING
        self.init_resolved = False
        url = self.build_url()
        logger.info(f"[{self.kind}] {self.owner_id} connecting to {self.base_url()} (key {mask_secret(self.query_params().get('api_key'))})")

        try:
            ws = await asyncio.wait_for(self.connector(url), self.connect_timeout)
        except asyncio.TimeoutError:
            self.state = SubSessionState.CLOSED
            raise SubSessionError(f"{self.kind} connection timeout after {self.connect_timeout:g}s")
        except SubSessionError:
            self.state = SubSessionState.CLOSED
            raise
        except Exception as e:
            self.state = SubSessionState.CLOSED
            raise SubSessionError(f"{self.kind} connection failed: {e}") from e

        if self.state is not SubSessionState.CONNECTING:
            # close() ran while we were connecting
            await self._close_socket(ws)
            raise SubSessionClosedError(f"{self.kind} session closed before init complete")

        self._ws = ws
        self.state = SubSessionState.INIT_PENDING
        init_future = loop.create_future()
        init_future.add_done_callback(lambda f: f.cancelled() or f.exception())
        self._init_future = init_future
        self._reader = asyncio.create_task(self._read_loop(ws))

        await self._send(self.build_init_message())

        try:
            await asyncio.wait_for(asyncio.shield(init_future), self.init_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"[{self.kind}] {self.owner_id} no {self.INIT_ACK} within {self.init_timeout:g}s, proceeding as ready"
            )
            if self.metrics:
                self.metrics.record_init_fallback(self.kind)
        except SubSessionError:
            await self.close()
            raise

        if self.state is not SubSessionState.INIT_PENDING:
            raise SubSessionClosedError(f"{self.kind} session closed before init complete")
        self.init_resolved = True
        self.state = SubSessionState.READY
        logger.info(f"[{self.kind}] {self.owner_id} ready")

    async def close(self) -> None:
        """Tear the sub-session down; safe to call repeatedly."""
        was_open = self.state is not SubSessionState.CLOSED
        self.state = SubSessionState.CLOSED
        self.init_resolved = False

        init_future, self._init_future = self._init_future, None
        if init_future is not None and not init_future.done():
            init_future.set_exception(SubSessionClosedError(f"{self.kind} session closed before init complete"))

        reader, self._reader = self._reader, None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()

        ws, self._ws = self._ws, None
        if ws is not None:
            await self._close_socket(ws)
        if was_open:
            logger.info(f"[{self.kind}] {self.owner_id} closed")

    async def _close_socket(self, ws) -> None:
        try:
            await ws.close()
        except Exception as e:
            logger.debug(f"[{self.kind}] {self.owner_id} error closing socket: {e}")

    async def _send(self, message: Dict[str, Any]) -> None:
        if self._ws is None:
            raise SubSessionError(f"{self.kind} session is not connected")
        await self._ws.send(json.dumps(message, ensure_ascii=False))

    async def _read_loop(self, ws) -> None:
        reason = f"{self.kind} connection closed by provider"
        try:
            async for raw in ws:
                await self._handle_raw(raw)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"[{self.kind}] {self.owner_id} downstream error: {e}")
            reason = f"{self.kind} connection error: {e}"
        if self._ws is not ws:
            # close() already ran
            return

        was_ready = self.state is SubSessionState.READY
        logger.info(f"[{self.kind}] {self.owner_id} downstream closed")
        self._reader = None
        await self.close()
        if not was_ready:
            # a pending ensure_connection() reports this one
            return
        await self._report_closed(reason)

    async def _report_closed(self, reason: str) -> None:
        try:
            await self.emit(f"{self.kind}/error", {"message": reason})
            if self.on_closed:
                await self.on_closed(reason)
        except Exception as e:
            logger.error(f"[{self.kind}] {self.owner_id} failed reporting closed session: {e}")

    async def _handle_raw(self, raw: Any) -> None:
        try:
            message = json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.warning(f"[{self.kind}] {self.owner_id} malformed downstream message: {e}")
            return
        if not isinstance(message, dict):
            logger.warning(f"[{self.kind}] {self.owner_id} ignoring non-object downstream message")
            return

        msg_type = message.get("type")
        init_future = self._init_future
        if init_future is not None and not init_future.done():
            if msg_type == self.INIT_ACK:
                init_future.set_result(message)
                return
            if msg_type == "error":
                error = message.get("error") or {}
                detail = error.get("message") if isinstance(error, dict) else str(error)
                init_future.set_exception(SubSessionError(f"{self.kind} init failed: {detail or 'unknown error'}"))
                return

        try:
            await self.dispatch(message)
        except Exception as e:
            logger.error(f"[{self.kind}] {self.owner_id} failed handling {msg_type}: {e}")


def require_setting(value: Optional[str], what: str) -> str:
    if not value:
        raise ConfigurationError(f"{what} not configured")
    return value
