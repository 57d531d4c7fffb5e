"""
Client gateway - one instance per connected client socket.

Routes inbound frames (control envelopes, JSON-RPC, pub/sub, legacy typed
messages) and bridges the client to its ASR/TTS sub-sessions, the tool-call
bridge and the agent pipeline.
"""
import asyncio
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from fastapi import WebSocketDisconnect
from loguru import logger
from pydantic import ValidationError

from conversation_core import AgentCallbacks
from .asr_session import AsrSession
from .connection import Connection
from .errors import ConfigurationError, GatewayError
from .jsonrpc import JsonRpcPeer
from .protocol import (
    CLOSE_ALREADY_ACTIVE,
    CLOSE_UNAUTHORIZED,
    INTERNAL_ERROR,
    INVALID_PARAMS,
    METHOD_NOT_FOUND,
    TOOL_ERROR,
    ConnectionStatus,
    ControlEnvelope,
    EventMessage,
    EventType,
    GatewayProtocol,
    JsonRpcMessage,
    LegacyMessage,
    PubSubMessage,
    RecordStatus,
    RecordUpdate,
)
from .runtime import GatewayRuntime
from .schemas import ChatMessage, ClientRecord, ToolDefinition
from .sentence_buffer import SentenceBuffer
from .tool_bridge import ToolInvocationContext
from .tts_session import TtsSession

CLIENT_KIND = "client"
PLAYBACK_COMPLETED = "tts/playback_completed"


@dataclass
class ConnectionSession:
    client_id: str
    token: str
    domain_id: str
    client: ClientRecord
    tts_text_buffer: SentenceBuffer
    tts_pending_text: str = ""
    pending_commits: int = 0
    subscribed_record_ids: Set[str] = field(default_factory=set)
    sent_content_record_ids: Set[str] = field(default_factory=set)
    # record id -> deferred agent/done payload, in arrival order
    pending_agent_done_records: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    widgets: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    asr_session: Optional[AsrSession] = None
    tts_session: Optional[TtsSession] = None


def public_client(client: ClientRecord) -> Dict[str, Any]:
    """Client record as sent to the client itself, without provider keys."""
    data = client.model_dump(mode="json", by_alias=True)
    for section in ("asr", "tts"):
        settings = (data.get("settings") or {}).get(section)
        if isinstance(settings, dict):
            settings.pop("apiKey", None)
    return data


class ClientGateway:
    def __init__(self, connection: Connection, runtime: GatewayRuntime):
        self.connection = connection
        self.runtime = runtime
        self.session: Optional[ConnectionSession] = None
        self.rpc: Optional[JsonRpcPeer] = None

        self._subscriptions: Dict[str, Callable[[], None]] = {}
        self._bus_disposers: List[Callable[[], None]] = []
        self._tasks: Set[asyncio.Task] = set()
        self._tts_lock = asyncio.Lock()
        self._tts_idle = asyncio.Event()
        self._tts_idle.set()
        self._spoken_since_wait = False
        self._playback_done: Optional[asyncio.Future] = None
        self._closed = False

        self._client_handlers: Dict[str, Callable[[Dict[str, Any]], Awaitable[None]]] = {
            "client/asr/audio": self._on_asr_audio,
            "client/asr/commit": self._on_asr_commit,
            "client/asr/recording_started": self._on_asr_recording_started,
            "client/asr/recording_completed": self._on_asr_commit,
            "client/tts/start": self._on_tts_start,
            "client/tts/text": self._on_tts_text,
            "client/tts/stop": self._on_tts_stop,
            "client/agent/chat": self._on_agent_chat,
        }

    @property
    def label(self) -> str:
        if self.session is None:
            return f"client:{self.connection.connection_id}"
        return f"client:{self.session.domain_id}/{self.session.client_id}"

    # ===== handshake =====

    async def prepare(self, token: Optional[str]) -> bool:
        """Authenticate, resolve the client and claim its singleton slot."""
        if not token:
            await self._reject(CLOSE_UNAUTHORIZED, "Token is required", "missing_token")
            return False
        record = await self.runtime.tokens.validate(token)
        if record is None or record.kind != CLIENT_KIND:
            await self._reject(CLOSE_UNAUTHORIZED, "Invalid token", "invalid_token")
            return False

        client = await self.runtime.clients.resolve(record)
        identity = f"{client.domain_id}:{client.client_id}"
        if not self.runtime.registry.acquire(CLIENT_KIND, identity, self):
            await self._reject(CLOSE_ALREADY_ACTIVE, "Client singleton: connection already active", "already_active")
            return False

        self.session = ConnectionSession(
            client_id=client.client_id,
            token=token,
            domain_id=client.domain_id,
            client=client,
            tts_text_buffer=SentenceBuffer(self.runtime.realtime.sentence_soft_limit),
        )
        self.rpc = JsonRpcPeer(
            self.label,
            self.connection.send_message,
            timeout=self.runtime.realtime.tool_call_timeout_s,
            metrics=self.runtime.metrics,
        )
        self.runtime.metrics.record_connection(CLIENT_KIND)

        await self.runtime.clients.update_status(client.domain_id, client.client_id, ConnectionStatus.CONNECTED.value)
        self._bus_disposers.append(self.runtime.events.on(EventType.CLIENT_STATUS_UPDATE, self._on_status_event))
        self._bus_disposers.append(self.runtime.events.on(EventType.RECORD_UPDATE, self._on_record_event))

        logger.info(f"[{self.label}] connected")
        await self.send_event("status/update", public_client(client))
        await self.runtime.events.emit(
            EventType.CLIENT_CONNECTED,
            {"client_id": client.client_id, "domain_id": client.domain_id},
        )
        return True

    async def _reject(self, code: int, reason: str, metric_reason: str) -> None:
        logger.warning(f"Client connection rejected: {reason}")
        self.runtime.metrics.record_rejection(metric_reason)
        await self.connection.close(code=code, reason=reason)

    # ===== message loop =====

    async def run(self) -> None:
        try:
            while True:
                raw = await self.connection.receive_text()
                await self.handle_message(raw)
        except WebSocketDisconnect:
            logger.info(f"[{self.label}] disconnected")
        except Exception as e:
            logger.error(f"[{self.label}] connection error: {e}")
        finally:
            await self.close()

    async def send_event(self, event: str, *payload: Any) -> None:
        try:
            await self.connection.send_message(GatewayProtocol.client_event(event, *payload))
        except Exception as e:
            logger.warning(f"[{self.label}] failed to send {event}: {e}")

    async def _send_raw(self, message: Dict[str, Any]) -> None:
        try:
            await self.connection.send_message(message)
        except Exception as e:
            logger.warning(f"[{self.label}] failed to send message: {e}")

    async def handle_message(self, raw: Any) -> None:
        """Dispatch one inbound frame; errors are logged, never raised."""
        self.runtime.metrics.record_message()
        try:
            message = GatewayProtocol.parse_inbound(raw)
        except ValueError as e:
            logger.warning(f"[{self.label}] dropping malformed message: {e}")
            self.runtime.metrics.record_dropped_message()
            return

        try:
            if isinstance(message, ControlEnvelope):
                await self._handle_control(message)
            elif isinstance(message, JsonRpcMessage):
                await self._handle_jsonrpc(message)
            elif isinstance(message, PubSubMessage):
                await self._handle_pubsub(message)
            else:
                await self._handle_legacy(message)
        except Exception as e:
            logger.error(f"[{self.label}] failed handling {type(message).__name__}: {e}")

    def _spawn(self, coro: Awaitable[Any], name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=f"{self.label}:{name}")
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"[{self.label}] background task {task.get_name()} failed: {task.exception()}")

    # ===== control envelopes =====

    async def _handle_control(self, message: ControlEnvelope) -> None:
        protocol = message.protocol
        if protocol == "handshake":
            await self._send_raw({
                "protocol": "handshake",
                "action": "ack",
                "traceId": message.trace_id,
                "payload": {
                    "clientId": self.session.client_id,
                    "domainId": self.session.domain_id,
                    "server": self.runtime.server.server_name,
                },
            })
        elif protocol == "widget":
            await self._handle_widgets(message.payload)
        elif protocol == "mcp":
            inner = message.payload
            try:
                rpc = GatewayProtocol.parse_inbound(inner) if inner is not None else None
            except ValueError as e:
                logger.warning(f"[{self.label}] invalid mcp envelope: {e}")
                self.runtime.metrics.record_dropped_message()
                return
            if not isinstance(rpc, JsonRpcMessage):
                logger.warning(f"[{self.label}] mcp envelope without a JSON-RPC payload")
                self.runtime.metrics.record_dropped_message()
                return
            await self._handle_jsonrpc(rpc)
        else:
            await self._republish(f"protocol/{protocol}", [message.model_dump(by_alias=True)])

    async def _handle_widgets(self, payload: Any) -> None:
        widgets = payload.get("widgets") if isinstance(payload, dict) else payload
        if not isinstance(widgets, list):
            logger.warning(f"[{self.label}] widget update without a widget list")
            return
        for widget in widgets:
            if not isinstance(widget, dict) or not isinstance(widget.get("name"), str):
                continue
            name = widget["name"]
            visible = bool(widget.get("visible", True))
            self.session.widgets[name] = {"name": name, "visible": visible}
            await self.runtime.events.emit(
                EventType.WIDGET_UPDATE,
                {
                    "client_id": self.session.client_id,
                    "domain_id": self.session.domain_id,
                    "widget_name": name,
                    "visible": visible,
                },
            )

    # ===== JSON-RPC =====

    async def _handle_jsonrpc(self, message: JsonRpcMessage) -> None:
        if message.is_response:
            self.rpc.handle_response(message)
            return

        method = message.method
        if method is None:
            logger.warning(f"[{self.label}] JSON-RPC message without method or id")
            return

        if method == "initialize":
            await self._send_raw(GatewayProtocol.jsonrpc_result(
                message.id, GatewayProtocol.mcp_initialize_result(self.runtime.server.server_name)
            ))
        elif method == "notifications/initialized":
            logger.debug(f"[{self.label}] MCP session initialized")
        elif method == "tools/list":
            await self._send_raw(GatewayProtocol.jsonrpc_result(message.id, {"tools": self.runtime.bridge.list_tools()}))
        elif method == "tools/call":
            if message.id is None:
                logger.warning(f"[{self.label}] tools/call sent as a notification, ignoring")
                return
            self._spawn(self._jsonrpc_tool_call(message), "tools/call")
        elif method == "notifications/tools-update":
            await self._register_client_tools(message.param_dict.get("tools"))
        elif message.id is not None:
            await self._send_raw(GatewayProtocol.jsonrpc_error(message.id, METHOD_NOT_FOUND, "Method not found"))
        else:
            logger.debug(f"[{self.label}] ignoring notification {method}")

    async def _jsonrpc_tool_call(self, message: JsonRpcMessage) -> None:
        params = message.param_dict
        name = params.get("name")
        if not isinstance(name, str) or not name:
            await self._send_raw(GatewayProtocol.jsonrpc_error(message.id, INVALID_PARAMS, "Tool name is required"))
            return
        try:
            result = await self.runtime.bridge.call_tool(
                name, params.get("arguments") or {}, ctx=self._tool_context("client"), request_id=str(message.id)
            )
        except GatewayError as e:
            await self._send_raw(GatewayProtocol.jsonrpc_error(message.id, e.code or TOOL_ERROR, e.message))
            return
        except Exception as e:
            await self._send_raw(GatewayProtocol.jsonrpc_error(message.id, INTERNAL_ERROR, str(e)))
            return
        await self._send_raw(GatewayProtocol.jsonrpc_result(message.id, GatewayProtocol.mcp_text_content(result)))

    async def _register_client_tools(self, raw_tools: Any) -> None:
        if not isinstance(raw_tools, list):
            logger.warning(f"[{self.label}] tools-update without a tool list")
            return
        tools: List[ToolDefinition] = []
        for item in raw_tools:
            try:
                tools.append(ToolDefinition.model_validate(item))
            except ValidationError as e:
                logger.warning(f"[{self.label}] skipping invalid tool definition: {e}")
        await self.runtime.tools.sync(self.session.domain_id, self.label, tools)
        self.runtime.bridge.register_transport(self.rpc, tools)
        await self.runtime.events.emit(
            EventType.TOOLS_UPDATE,
            {
                "client_id": self.session.client_id,
                "domain_id": self.session.domain_id,
                "tools": [tool.to_mcp() for tool in tools],
            },
        )

    # ===== pub/sub =====

    async def _handle_pubsub(self, message: PubSubMessage) -> None:
        if message.key == "publish":
            await self._publish(message.event, message.args)
        elif message.key == "subscribe":
            await self._subscribe(message.event)
        else:
            disposer = self._subscriptions.pop(message.event, None)
            if disposer is not None:
                disposer()
            await self._send_raw({"ok": 1, "event": message.event})

    async def _publish(self, event: str, args: List[Any]) -> None:
        if event == PLAYBACK_COMPLETED:
            if self._playback_done is not None and not self._playback_done.done():
                self._playback_done.set_result(True)
            return
        handler = self._client_handlers.get(event)
        if handler is not None:
            payload = args[0] if args and isinstance(args[0], dict) else {}
            await handler(payload)
            return
        await self._republish(event, args)

    async def _subscribe(self, event: str) -> None:
        try:
            event_type = EventType(event)
        except ValueError:
            await self._send_raw({"ok": 0, "event": event, "error": "Unknown event"})
            return
        if event not in self._subscriptions:
            async def forward(msg: EventMessage):
                await self.send_event(msg.event.value, msg.payload)
            self._subscriptions[event] = self.runtime.events.on(event_type, forward)
        await self._send_raw({"ok": 1, "event": event})

    async def _republish(self, name: str, args: List[Any]) -> None:
        await self.runtime.events.emit(
            EventType.CLIENT_EVENT,
            {
                "client_id": self.session.client_id,
                "domain_id": self.session.domain_id,
                "name": name,
                "payload": args,
            },
        )

    # ===== legacy typed messages =====

    async def _handle_legacy(self, message: LegacyMessage) -> None:
        fields = message.fields
        msg_type = message.type

        if msg_type == "ping":
            await self._send_raw({"type": "pong"})
        elif msg_type == "status":
            await self._update_status(fields.get("status"), fields.get("error"))
        elif msg_type == "voice_chat":
            self._spawn(self.handle_agent_chat(fields.get("message"), fields.get("history")), "voice_chat")
        elif msg_type == "tools/call":
            self._spawn(self._legacy_tool_call(fields), "tools/call")
        else:
            handler = self._client_handlers.get(f"client/{msg_type}")
            if handler is not None:
                await handler(fields)
            else:
                await self._republish(msg_type, [fields])

    async def _update_status(self, status: Any, error: Any = None) -> None:
        try:
            status = ConnectionStatus(status)
        except ValueError:
            logger.warning(f"[{self.label}] ignoring unknown status {status!r}")
            return
        error = error if isinstance(error, str) else None
        await self.runtime.clients.update_status(self.session.domain_id, self.session.client_id, status.value, error)
        await self.runtime.events.emit(
            EventType.CLIENT_STATUS_UPDATE,
            {
                "client_id": self.session.client_id,
                "domain_id": self.session.domain_id,
                "status": status.value,
                "error": error,
            },
        )

    async def _legacy_tool_call(self, fields: Dict[str, Any]) -> None:
        name = fields.get("name")
        request_id = fields.get("id") or fields.get("requestId")
        reply = {"id": request_id, "name": name}
        if not isinstance(name, str) or not name:
            await self._send_raw({"type": "tools/call/error", **reply, "error": "Tool name is required"})
            return
        try:
            result = await self.runtime.bridge.call_tool(
                name, fields.get("arguments") or {}, ctx=self._tool_context("client"), request_id=request_id
            )
        except Exception as e:
            await self._send_raw({"type": "tools/call/error", **reply, "error": str(e)})
            return
        await self._send_raw({"type": "tools/call/result", **reply, "result": result})

    def _tool_context(self, source: str) -> ToolInvocationContext:
        return ToolInvocationContext(
            client_id=self.session.client_id,
            domain_id=self.session.domain_id,
            source=source,
        )

    # ===== bus listeners =====

    async def _on_status_event(self, message: EventMessage) -> None:
        payload = message.payload
        if payload.get("client_id") != self.session.client_id or payload.get("domain_id") != self.session.domain_id:
            return
        client = await self.runtime.clients.get(self.session.domain_id, self.session.client_id)
        if client is not None:
            self.session.client = client
            await self.send_event("status/update", public_client(client))

    async def _on_record_event(self, message: EventMessage) -> None:
        try:
            update = RecordUpdate.model_validate(message.payload)
        except ValidationError as e:
            logger.warning(f"[{self.label}] invalid record update: {e}")
            return
        await self.handle_record_update(update)

    # ===== ASR =====

    def _subsession_kwargs(self) -> Dict[str, Any]:
        realtime = self.runtime.realtime
        kwargs: Dict[str, Any] = {
            "connect_timeout": realtime.connect_timeout_s,
            "init_timeout": realtime.init_timeout_s,
            "metrics": self.runtime.metrics,
        }
        if self.runtime.connector is not None:
            kwargs["connector"] = self.runtime.connector
        return kwargs

    def _get_asr(self) -> AsrSession:
        settings = self.session.client.settings.asr
        if settings is None:
            raise ConfigurationError("ASR not configured")
        if self.session.asr_session is None:
            self.session.asr_session = AsrSession(
                self.session.client_id,
                settings,
                self.send_event,
                default_base_url=self.runtime.realtime.asr_base_url,
                default_model=self.runtime.realtime.asr_model,
                on_final_transcript=self._on_final_transcript,
                **self._subsession_kwargs(),
            )
        return self.session.asr_session

    async def _on_asr_audio(self, payload: Dict[str, Any]) -> None:
        audio = payload.get("audio")
        if not isinstance(audio, str) or not audio:
            await self.send_event("asr/error", {"message": "Audio data is required"})
            return
        try:
            await self._get_asr().append_audio(audio)
        except Exception as e:
            logger.warning(f"[{self.label}] ASR audio failed: {e}")
            await self.send_event("asr/error", {"message": str(e)})

    async def _on_asr_commit(self, payload: Dict[str, Any]) -> None:
        asr = self.session.asr_session
        if asr is None:
            return
        try:
            await asr.commit()
        except Exception as e:
            logger.warning(f"[{self.label}] ASR commit failed: {e}")
            await self.send_event("asr/error", {"message": str(e)})

    async def _on_asr_recording_started(self, payload: Dict[str, Any]) -> None:
        try:
            await self._get_asr().ensure_connection()
        except Exception as e:
            logger.warning(f"[{self.label}] ASR connect failed: {e}")
            await self.send_event("asr/error", {"message": str(e)})

    async def _on_final_transcript(self, text: str) -> None:
        client = await self.runtime.clients.get(self.session.domain_id, self.session.client_id)
        if client is not None:
            self.session.client = client
        agent = self.session.client.settings.agent
        if agent is None or not agent.agent_id:
            return
        self._spawn(self.handle_agent_chat(text, [], from_asr=True), "asr_chat")

    # ===== TTS =====

    def _get_tts(self) -> Optional[TtsSession]:
        settings = self.session.client.settings.tts
        if settings is None:
            return None
        if self.session.tts_session is None:
            self.session.tts_session = TtsSession(
                self.session.client_id,
                settings,
                self.send_event,
                default_base_url=self.runtime.realtime.tts_base_url,
                default_model=self.runtime.realtime.tts_model,
                default_voice=self.runtime.realtime.tts_voice,
                on_audio_done=self._on_tts_audio_done,
                on_closed=self._on_tts_closed,
                **self._subsession_kwargs(),
            )
        return self.session.tts_session

    async def feed_tts(self, text: str) -> None:
        """Push streamed text through the sentence buffer into TTS."""
        for unit in self.session.tts_text_buffer.append(text):
            await self._send_tts_unit(unit)

    async def flush_tts(self) -> None:
        rest = self.session.tts_text_buffer.flush()
        if rest:
            await self._send_tts_unit(rest)

    async def _send_tts_unit(self, unit: str) -> None:
        tts = self._get_tts()
        if tts is None:
            return
        session = self.session
        async with self._tts_lock:
            try:
                await tts.ensure_connection()
            except Exception as e:
                first_failure = not session.tts_pending_text
                session.tts_pending_text += unit
                logger.warning(f"[{self.label}] TTS unavailable, parked text: {e}")
                if first_failure:
                    await self.send_event("tts/error", {"message": str(e)})
                return

            if session.tts_pending_text:
                parked, session.tts_pending_text = session.tts_pending_text, ""
                await self._commit_tts_text(tts, parked)
            await self._commit_tts_text(tts, unit)

    async def _commit_tts_text(self, tts: TtsSession, text: str) -> None:
        session = self.session
        session.pending_commits += 1
        self._tts_idle.clear()
        self._spoken_since_wait = True
        try:
            await tts.send_text(text)
        except Exception as e:
            logger.warning(f"[{self.label}] TTS send failed, parked text: {e}")
            session.tts_pending_text += text
            session.pending_commits = max(0, session.pending_commits - 1)
            if session.pending_commits == 0:
                self._tts_idle.set()

    async def _on_tts_audio_done(self) -> None:
        session = self.session
        session.pending_commits = max(0, session.pending_commits - 1)
        if session.pending_commits > 0:
            return
        self._tts_idle.set()
        await self.send_event("tts/done", {})
        await self._release_deferred_done()

    async def _on_tts_closed(self, reason: str) -> None:
        """Provider dropped the TTS socket: nothing in flight will finish."""
        session = self.session
        if session.pending_commits or session.pending_agent_done_records:
            logger.warning(
                f"[{self.label}] TTS dropped with {session.pending_commits} commit(s) pending: {reason}"
            )
        session.pending_commits = 0
        self._tts_idle.set()
        await self._release_deferred_done()

    async def _release_deferred_done(self) -> None:
        session = self.session
        deferred = list(session.pending_agent_done_records.items())
        session.pending_agent_done_records.clear()
        for record_id, payload in deferred:
            await self.send_event("agent/done", payload)
            self._forget_record(record_id)

    async def _on_tts_start(self, payload: Dict[str, Any]) -> None:
        tts = self._get_tts()
        if tts is None:
            await self.send_event("tts/error", {"message": "TTS not configured"})
            return
        try:
            await tts.ensure_connection()
        except Exception as e:
            logger.warning(f"[{self.label}] TTS connect failed: {e}")
            await self.send_event("tts/error", {"message": str(e)})

    async def _on_tts_text(self, payload: Dict[str, Any]) -> None:
        text = payload.get("text")
        if not isinstance(text, str) or not text.strip():
            await self.send_event("tts/error", {"message": "Text is required"})
            return
        if self._get_tts() is None:
            await self.send_event("tts/error", {"message": "TTS not configured"})
            return
        await self.feed_tts(text)
        await self.flush_tts()

    async def _on_tts_stop(self, payload: Dict[str, Any]) -> None:
        session = self.session
        if session.tts_session is not None:
            await session.tts_session.close()
        session.tts_text_buffer.clear()
        session.tts_pending_text = ""
        session.pending_commits = 0
        self._tts_idle.set()
        await self._release_deferred_done()

    async def _wait_for_tts_playback(self) -> None:
        """Before a tool call, let spoken text finish generating and playing on the client."""
        if self.session.tts_session is None or not self._spoken_since_wait:
            return
        realtime = self.runtime.realtime
        try:
            await asyncio.wait_for(self._tts_idle.wait(), realtime.tts_generation_wait_s)
        except asyncio.TimeoutError:
            logger.warning(f"[{self.label}] TTS still generating after {realtime.tts_generation_wait_s:g}s")

        self._playback_done = asyncio.get_running_loop().create_future()
        await self.send_event("agent/wait_tts_playback", {})
        try:
            await asyncio.wait_for(asyncio.shield(self._playback_done), realtime.tts_playback_wait_s)
        except asyncio.TimeoutError:
            logger.warning(f"[{self.label}] no playback confirmation within {realtime.tts_playback_wait_s:g}s")
        finally:
            self._playback_done = None
            self._spoken_since_wait = False

    # ===== agent records =====

    async def handle_record_update(self, update: RecordUpdate) -> None:
        session = self.session
        record_id = update.record_id
        if record_id not in session.subscribed_record_ids:
            return

        if update.status is RecordStatus.DELTA:
            if update.content:
                await self.send_event("agent/content", update.content)
                await self.feed_tts(update.content)

        elif update.status is RecordStatus.CONTENT:
            if record_id in session.sent_content_record_ids:
                logger.debug(f"[{self.label}] content for record {record_id} already sent")
                return
            session.sent_content_record_ids.add(record_id)
            if update.content:
                await self.send_event("agent/content", update.content)
                await self.feed_tts(update.content)

        elif update.status is RecordStatus.DONE:
            await self.flush_tts()
            payload = {"message": update.content, "history": update.history or []}
            if session.pending_commits > 0:
                session.pending_agent_done_records[record_id] = payload
                logger.debug(f"[{self.label}] deferring agent/done for {record_id}, {session.pending_commits} commit(s) pending")
            else:
                await self.send_event("agent/done", payload)
                self._forget_record(record_id)

        else:
            await self.send_event("agent/error", {"message": update.error or "Agent failed"})
            self._forget_record(record_id)

    def _forget_record(self, record_id: str) -> None:
        self.session.subscribed_record_ids.discard(record_id)
        self.session.sent_content_record_ids.discard(record_id)
        self.session.pending_agent_done_records.pop(record_id, None)

    def track_record(self, record_id: str) -> None:
        """Forward bus updates for a record created elsewhere (e.g. the task queue)."""
        self.session.subscribed_record_ids.add(record_id)

    async def _on_agent_chat(self, payload: Dict[str, Any]) -> None:
        self._spawn(self.handle_agent_chat(payload.get("message"), payload.get("history")), "agent_chat")

    async def handle_agent_chat(self, message: Any, history: Any = None, *, from_asr: bool = False) -> Optional[str]:
        """Run one agent turn; returns its record id, or None when it could not start."""
        session = self.session
        agent_settings = session.client.settings.agent
        if agent_settings is None or not agent_settings.agent_id:
            await self.send_event("agent/error", {"message": "Agent not configured"})
            return None
        if not isinstance(message, str) or not message.strip():
            await self.send_event("agent/error", {"message": "Message is required"})
            return None
        runner = self.runtime.agent_runner
        if runner is None:
            await self.send_event("agent/error", {"message": "Agent runner not available"})
            return None
        agent = await self.runtime.agents.get(session.domain_id, agent_settings.agent_id)
        if agent is None:
            await self.send_event("agent/error", {"message": f"Agent not found: {agent_settings.agent_id}"})
            return None

        history = [m for m in history if isinstance(m, dict)] if isinstance(history, list) else []
        record_id = uuid.uuid4().hex
        session.subscribed_record_ids.add(record_id)

        user_audio = None
        if from_asr and session.asr_session is not None:
            user_audio = await self._save_audio("asr", session.asr_session.take_audio())
        transcript: List[ChatMessage] = [ChatMessage(role="user", content=message, audio_path=user_audio)]

        async def on_content(chunk: str) -> None:
            await self.handle_record_update(RecordUpdate(record_id=record_id, status=RecordStatus.DELTA, content=chunk))

        async def on_tool_call(tool_calls: List[Dict[str, Any]]) -> None:
            await self._wait_for_tts_playback()
            await self.send_event("agent/tool_call", {"tools": [c["function"]["name"] for c in tool_calls]})

        async def on_tool_result(tool_name: str, result: Any) -> None:
            transcript.append(ChatMessage(role="tool", tool_name=tool_name, tool_result=result))
            await self.send_event("agent/tool_result", {"tool": tool_name, "result": result})

        async def on_done(final_message: str, final_history: List[Dict[str, Any]]) -> None:
            tts_audio = None
            if session.tts_session is not None:
                tts_audio = await self._save_audio("tts", session.tts_session.take_audio())
            transcript.append(ChatMessage(role="assistant", content=final_message, audio_path=tts_audio))
            try:
                await self.runtime.chats.add(session.domain_id, session.client_id, session.client.owner, transcript)
            except Exception as e:
                logger.error(f"[{self.label}] failed to save chat: {e}")
            await self.handle_record_update(RecordUpdate(
                record_id=record_id, status=RecordStatus.DONE, content=final_message, history=final_history
            ))

        async def on_error(error: str) -> None:
            await self.handle_record_update(RecordUpdate(record_id=record_id, status=RecordStatus.ERROR, error=error))

        callbacks = AgentCallbacks(on_content, on_tool_call, on_tool_result, on_done, on_error)
        logger.info(f"[{self.label}] agent {agent.agent_id} chat started, record {record_id}")
        try:
            await runner.run(agent, message, history, callbacks, self._tool_context("agent"))
        except Exception as e:
            logger.error(f"[{self.label}] agent run failed: {e}")
            await on_error(str(e))
        return record_id

    async def _save_audio(self, kind: str, data: bytes) -> Optional[str]:
        if self.runtime.audio is None or not data:
            return None
        path = f"{self.session.domain_id}/{self.session.client_id}/{kind}-{int(time.time() * 1000)}.pcm"
        try:
            return await self.runtime.audio.put(path, data)
        except Exception as e:
            logger.warning(f"[{self.label}] failed to store {kind} audio: {e}")
            return None

    # ===== teardown =====

    async def close(self) -> None:
        """Release sub-sessions, pending calls and subscriptions; safe to call twice."""
        if self._closed:
            return
        self._closed = True
        session = self.session
        if session is None:
            return

        for sub in (session.asr_session, session.tts_session):
            if sub is not None:
                try:
                    await sub.close()
                except Exception as e:
                    logger.warning(f"[{self.label}] error closing {sub.kind}: {e}")

        self.runtime.bridge.unregister_transport(self.rpc)
        self.rpc.close("Connection closed")

        for disposer in list(self._subscriptions.values()) + self._bus_disposers:
            disposer()
        self._subscriptions.clear()
        self._bus_disposers.clear()

        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()
        if self._playback_done is not None and not self._playback_done.done():
            self._playback_done.cancel()

        session.subscribed_record_ids.clear()
        session.sent_content_record_ids.clear()
        session.pending_agent_done_records.clear()
        session.tts_text_buffer.clear()
        session.tts_pending_text = ""
        session.pending_commits = 0

        self.runtime.registry.release(CLIENT_KIND, f"{session.domain_id}:{session.client_id}", self)
        try:
            await self.runtime.clients.update_status(
                session.domain_id, session.client_id, ConnectionStatus.DISCONNECTED.value
            )
        except Exception as e:
            logger.warning(f"[{self.label}] failed to store disconnected status: {e}")
        await self.runtime.events.emit(
            EventType.CLIENT_STATUS_UPDATE,
            {
                "client_id": session.client_id,
                "domain_id": session.domain_id,
                "status": ConnectionStatus.DISCONNECTED.value,
                "error": None,
            },
        )
        await self.runtime.events.emit(
            EventType.CLIENT_DISCONNECTED,
            {"client_id": session.client_id, "domain_id": session.domain_id},
        )
        logger.info(f"[{self.label}] closed")
