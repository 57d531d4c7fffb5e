"""
ClientGateway 测试
"""
import asyncio
import base64
import json

import pytest

from conftest import (
    FakeConnector,
    ScriptedAgentRunner,
    make_connection,
    make_runtime,
    seed_agent,
    seed_client,
    wait_until,
)
from gateway.client_gateway import ClientGateway
from gateway.errors import ConnectionClosedError
from gateway.protocol import (
    CLOSE_ALREADY_ACTIVE,
    CLOSE_UNAUTHORIZED,
    EventType,
    RecordStatus,
    RecordUpdate,
)
from gateway.schemas import ToolDefinition

TTS_SETTINGS = {"tts": {"provider": "qwen", "apiKey": "sk-tts-key-123456"}}
FULL_SETTINGS = {
    "asr": {"provider": "qwen-realtime", "apiKey": "sk-asr-key-123456"},
    "tts": {"provider": "qwen", "apiKey": "sk-tts-key-123456"},
    "agent": {"agentId": "assistant"},
}


async def connect(runtime, token="client-token", settings=None, seed=True):
    if seed:
        seed_client(runtime, token=token, settings=settings)
    gateway = ClientGateway(make_connection(), runtime)
    ok = await gateway.prepare(token)
    return gateway, ok


def ws(gateway):
    return gateway.connection.websocket


class TestHandshake:

    @pytest.mark.asyncio
    async def test_connect_sends_status_and_registers(self):
        """连接成功后下发 status/update 并登记"""
        runtime = make_runtime()
        gateway, ok = await connect(runtime)

        assert ok
        status = ws(gateway).events("status/update")
        assert status and status[0][0]["clientId"] == "1"
        assert runtime.registry.is_active("client", "system:1")
        client = await runtime.clients.get("system", "1")
        assert client.status == "connected"

    @pytest.mark.asyncio
    async def test_status_update_hides_provider_keys(self):
        """status/update 不包含服务密钥"""
        runtime = make_runtime()
        gateway, _ = await connect(runtime, settings=FULL_SETTINGS)
        settings = ws(gateway).events("status/update")[0][0]["settings"]
        assert "apiKey" not in settings["asr"]
        assert "apiKey" not in settings["tts"]

    @pytest.mark.asyncio
    async def test_missing_and_invalid_token(self):
        """缺少或无效 token"""
        runtime = make_runtime()
        gateway = ClientGateway(make_connection(), runtime)
        assert await gateway.prepare(None) is False
        assert ws(gateway).close_code == CLOSE_UNAUTHORIZED

        gateway = ClientGateway(make_connection(), runtime)
        assert await gateway.prepare("unknown") is False
        assert ws(gateway).close_code == CLOSE_UNAUTHORIZED
        assert gateway.session is None

    @pytest.mark.asyncio
    async def test_second_connection_rejected_without_side_effects(self):
        """同一客户端的第二个连接被拒绝且不影响第一个"""
        runtime = make_runtime()
        first, _ = await connect(runtime)

        second = ClientGateway(make_connection("conn_2"), runtime)
        assert await second.prepare("client-token") is False

        assert ws(second).close_code == CLOSE_ALREADY_ACTIVE
        assert second.session is None
        assert ws(second).sent == []
        assert runtime.registry.get("client", "system:1") is first
        assert runtime.metrics.stats["connections_rejected"] == 1

        # closing the rejected handler must not release the first one
        await second.close()
        assert runtime.registry.get("client", "system:1") is first


class TestDispatch:

    @pytest.mark.asyncio
    async def test_ping(self):
        """测试 ping"""
        gateway, _ = await connect(make_runtime())
        await gateway.handle_message(json.dumps({"type": "ping"}))
        assert ws(gateway).sent[-1] == {"type": "pong"}

    @pytest.mark.asyncio
    async def test_control_envelope_wins(self):
        """控制信封优先于其他消息族"""
        gateway, _ = await connect(make_runtime())
        before = len(ws(gateway).sent)
        await gateway.handle_message(json.dumps({
            "protocol": "handshake", "jsonrpc": "2.0", "method": "initialize", "id": 1,
            "key": "subscribe", "event": "tools.update", "type": "ping",
        }))
        replies = ws(gateway).sent[before:]
        assert len(replies) == 1
        assert replies[0]["protocol"] == "handshake"
        assert replies[0]["payload"]["clientId"] == "1"

    @pytest.mark.asyncio
    async def test_jsonrpc_before_pubsub_and_legacy(self):
        """JSON-RPC 优先于 pub/sub 和旧消息"""
        gateway, _ = await connect(make_runtime())
        before = len(ws(gateway).sent)
        await gateway.handle_message(json.dumps({
            "jsonrpc": "2.0", "id": 5, "method": "initialize", "key": "subscribe", "event": "x", "type": "ping",
        }))
        replies = ws(gateway).sent[before:]
        assert len(replies) == 1
        assert replies[0]["id"] == 5
        assert replies[0]["result"]["protocolVersion"] == "2024-11-05"
        assert replies[0]["result"]["capabilities"] == {"tools": {}}

    @pytest.mark.asyncio
    async def test_malformed_messages_dropped(self):
        """格式错误的消息被丢弃并计数"""
        runtime = make_runtime()
        gateway, _ = await connect(runtime)
        before = len(ws(gateway).sent)

        await gateway.handle_message("{not json")
        await gateway.handle_message(json.dumps([1, 2]))
        await gateway.handle_message(json.dumps({"key": "publish", "event": ""}))
        await gateway.handle_message(json.dumps({"hello": "world"}))

        assert len(ws(gateway).sent) == before
        assert runtime.metrics.stats["messages_dropped"] == 4

    @pytest.mark.asyncio
    async def test_unknown_jsonrpc_method(self):
        """未知 JSON-RPC 方法返回 -32601"""
        gateway, _ = await connect(make_runtime())
        await gateway.handle_message(json.dumps({"jsonrpc": "2.0", "id": "q1", "method": "resources/list"}))
        reply = ws(gateway).sent[-1]
        assert reply["error"] == {"code": -32601, "message": "Method not found"}

    @pytest.mark.asyncio
    async def test_mcp_envelope_unwraps_jsonrpc(self):
        """mcp 信封内的 JSON-RPC 被解包处理"""
        gateway, _ = await connect(make_runtime())
        await gateway.handle_message(json.dumps({
            "protocol": "mcp", "payload": json.dumps({"jsonrpc": "2.0", "id": 9, "method": "tools/list"}),
        }))
        reply = ws(gateway).sent[-1]
        assert reply["id"] == 9
        assert reply["result"] == {"tools": []}

    @pytest.mark.asyncio
    async def test_widget_updates_emit_events(self):
        """组件更新触发事件"""
        runtime = make_runtime()
        seen = []
        runtime.events.on(EventType.WIDGET_UPDATE, lambda msg: seen.append(msg.payload))
        gateway, _ = await connect(runtime)

        await gateway.handle_message(json.dumps({
            "protocol": "widget", "action": "update",
            "payload": {"widgets": [{"name": "clock", "visible": False}, {"name": "weather"}]},
        }))

        assert [(w["widget_name"], w["visible"]) for w in seen] == [("clock", False), ("weather", True)]
        assert gateway.session.widgets["clock"]["visible"] is False

    @pytest.mark.asyncio
    async def test_status_message_updates_store_and_bus(self):
        """状态消息写入存储并广播"""
        runtime = make_runtime()
        seen = []
        runtime.events.on(EventType.CLIENT_STATUS_UPDATE, lambda msg: seen.append(msg.payload))
        gateway, _ = await connect(runtime)

        await gateway.handle_message(json.dumps({"type": "status", "status": "error", "error": "mic broken"}))

        client = await runtime.clients.get("system", "1")
        assert client.status == "error"
        assert client.error_message == "mic broken"
        assert seen[-1]["status"] == "error"

    @pytest.mark.asyncio
    async def test_unknown_type_is_republished(self):
        """未处理的消息重新发布到事件总线"""
        runtime = make_runtime()
        seen = []
        runtime.events.on(EventType.CLIENT_EVENT, lambda msg: seen.append(msg.payload))
        gateway, _ = await connect(runtime)

        await gateway.handle_message(json.dumps({"type": "sensor/reading", "value": 3}))
        await gateway.handle_message(json.dumps({"key": "publish", "event": "custom/thing", "payload": [{"a": 1}]}))

        assert [(e["name"], e["payload"]) for e in seen] == [
            ("sensor/reading", [{"value": 3}]),
            ("custom/thing", [{"a": 1}]),
        ]


class TestPubSub:

    @pytest.mark.asyncio
    async def test_subscribe_forwards_and_unsubscribe_stops(self):
        """订阅转发事件，取消后停止"""
        runtime = make_runtime()
        gateway, _ = await connect(runtime)

        await gateway.handle_message(json.dumps({"key": "subscribe", "event": "tools.update"}))
        assert ws(gateway).sent[-1] == {"ok": 1, "event": "tools.update"}

        await runtime.events.emit(EventType.TOOLS_UPDATE, {"tools": ["a"]})
        assert ws(gateway).events("tools.update") == [[{"tools": ["a"]}]]

        await gateway.handle_message(json.dumps({"key": "unsubscribe", "event": "tools.update"}))
        assert ws(gateway).sent[-1] == {"ok": 1, "event": "tools.update"}
        await runtime.events.emit(EventType.TOOLS_UPDATE, {"tools": ["b"]})
        assert len(ws(gateway).events("tools.update")) == 1

    @pytest.mark.asyncio
    async def test_subscribe_unknown_event(self):
        """订阅未知事件"""
        gateway, _ = await connect(make_runtime())
        await gateway.handle_message(json.dumps({"key": "subscribe", "event": "no.such.event"}))
        assert ws(gateway).sent[-1]["ok"] == 0


class TestTtsPipeline:

    @pytest.mark.asyncio
    async def test_agent_done_waits_for_last_audio(self):
        """agent/done 等到最后一段音频之后"""
        connector = FakeConnector()
        runtime = make_runtime(connector=connector)
        gateway, _ = await connect(runtime, settings=TTS_SETTINGS)
        gateway.track_record("r1")

        await gateway.handle_record_update(RecordUpdate(
            record_id="r1", status=RecordStatus.DELTA, content="你好。今天天气很好。还有呢？",
        ))
        assert gateway.session.pending_commits == 3

        downstream = connector.sockets[0]
        texts = [m["text"] for m in downstream.sent_of("input_text_buffer.append")]
        assert texts == ["你好。", "今天天气很好。", "还有呢？"]
        assert len(downstream.sent_of("input_text_buffer.commit")) == 3

        await gateway.handle_record_update(RecordUpdate(record_id="r1", status=RecordStatus.DONE, content="done"))
        assert ws(gateway).events("agent/done") == []
        assert "r1" in gateway.session.pending_agent_done_records

        await downstream.push({"type": "response.audio.delta", "delta": base64.b64encode(b"a").decode()})
        await downstream.push({"type": "response.audio.done"})
        await downstream.push({"type": "response.audio.done"})
        await wait_until(lambda: gateway.session.pending_commits == 1)
        assert ws(gateway).events("agent/done") == []

        await downstream.push({"type": "response.audio.done"})
        await wait_until(lambda: ws(gateway).events("agent/done"))

        names = ws(gateway).event_names()
        assert names.count("agent/done") == 1
        assert names.index("tts/audio") < names.index("tts/done") < names.index("agent/done")
        assert ws(gateway).events("agent/done")[0] == [{"message": "done", "history": []}]
        assert "r1" not in gateway.session.subscribed_record_ids
        await gateway.close()

    @pytest.mark.asyncio
    async def test_tts_drop_releases_deferred_done(self):
        """TTS 服务断开：报告 tts/error，并放行被推迟的 agent/done"""
        connector = FakeConnector()
        runtime = make_runtime(connector=connector)
        gateway, _ = await connect(runtime, settings=TTS_SETTINGS)
        gateway.track_record("r1")

        await gateway.handle_record_update(RecordUpdate(record_id="r1", status=RecordStatus.DELTA, content="你好。"))
        await gateway.handle_record_update(RecordUpdate(record_id="r1", status=RecordStatus.DONE, content="你好。"))
        assert ws(gateway).events("agent/done") == []

        await connector.sockets[0].close()
        await wait_until(lambda: ws(gateway).events("agent/done"))

        assert len(ws(gateway).events("tts/error")) == 1
        assert ws(gateway).events("agent/done") == [[{"message": "你好。", "history": []}]]
        assert gateway.session.pending_commits == 0
        assert gateway.session.pending_agent_done_records == {}

        # a later answer on a fresh TTS connection is not held back by the old count
        gateway.track_record("r2")
        await gateway.handle_record_update(RecordUpdate(record_id="r2", status=RecordStatus.DELTA, content="再见。"))
        assert connector.calls == 2
        assert gateway.session.pending_commits == 1
        await gateway.handle_record_update(RecordUpdate(record_id="r2", status=RecordStatus.DONE, content="再见。"))
        await connector.sockets[1].push({"type": "response.audio.done"})
        await wait_until(lambda: len(ws(gateway).events("agent/done")) == 2)
        await gateway.close()

    @pytest.mark.asyncio
    async def test_intentional_close_reports_nothing(self):
        """网关自己关闭 TTS 时不发送 tts/error"""
        connector = FakeConnector()
        runtime = make_runtime(connector=connector)
        gateway, _ = await connect(runtime, settings=TTS_SETTINGS)
        await gateway.handle_message(json.dumps({"type": "tts/start"}))
        assert gateway.session.tts_session.is_ready

        await gateway.handle_message(json.dumps({"type": "tts/stop"}))
        await asyncio.sleep(0.02)

        assert ws(gateway).events("tts/error") == []

    @pytest.mark.asyncio
    async def test_done_without_tts_is_immediate(self):
        """未配置 TTS 时立即发送 agent/done"""
        gateway, _ = await connect(make_runtime())
        gateway.track_record("r2")
        await gateway.handle_record_update(RecordUpdate(record_id="r2", status=RecordStatus.DELTA, content="hi. "))
        await gateway.handle_record_update(RecordUpdate(record_id="r2", status=RecordStatus.DONE, content="hi."))
        assert ws(gateway).events("agent/content") == [["hi. "]]
        assert len(ws(gateway).events("agent/done")) == 1

    @pytest.mark.asyncio
    async def test_remaining_text_flushed_on_done(self):
        """完成时冲刷剩余文本"""
        connector = FakeConnector()
        runtime = make_runtime(connector=connector)
        gateway, _ = await connect(runtime, settings=TTS_SETTINGS)
        gateway.track_record("r3")

        await gateway.handle_record_update(RecordUpdate(record_id="r3", status=RecordStatus.DELTA, content="没有标点的结尾"))
        assert gateway.session.pending_commits == 0
        await gateway.handle_record_update(RecordUpdate(record_id="r3", status=RecordStatus.DONE, content="x"))

        texts = [m["text"] for m in connector.sockets[0].sent_of("input_text_buffer.append")]
        assert texts == ["没有标点的结尾"]
        assert gateway.session.pending_commits == 1
        await gateway.close()

    @pytest.mark.asyncio
    async def test_unavailable_tts_parks_text(self):
        """TTS 不可用时暂存文本"""
        async def refuse(url):
            raise OSError("connection refused")

        runtime = make_runtime(connector=refuse)
        gateway, _ = await connect(runtime, settings=TTS_SETTINGS)
        gateway.track_record("r4")

        await gateway.handle_record_update(RecordUpdate(record_id="r4", status=RecordStatus.DELTA, content="第一句。第二句。"))

        assert gateway.session.tts_pending_text == "第一句。第二句。"
        assert gateway.session.pending_commits == 0
        assert len(ws(gateway).events("tts/error")) == 1

    @pytest.mark.asyncio
    async def test_content_is_sent_once_per_record(self):
        """每条记录的完整内容只发送一次"""
        gateway, _ = await connect(make_runtime())
        gateway.track_record("r5")
        update = RecordUpdate(record_id="r5", status=RecordStatus.CONTENT, content="full answer")

        await gateway.handle_record_update(update)
        await gateway.handle_record_update(update)

        assert ws(gateway).events("agent/content") == [["full answer"]]

    @pytest.mark.asyncio
    async def test_updates_for_other_records_ignored(self):
        """忽略未订阅记录的更新"""
        runtime = make_runtime()
        gateway, _ = await connect(runtime)
        await runtime.events.emit(EventType.RECORD_UPDATE, {"record_id": "other", "status": "content", "content": "x"})
        assert ws(gateway).events("agent/content") == []

        gateway.track_record("mine")
        await runtime.events.emit(EventType.RECORD_UPDATE, {"record_id": "mine", "status": "content", "content": "y"})
        assert ws(gateway).events("agent/content") == [["y"]]


class TestAgentChat:

    @pytest.mark.asyncio
    async def test_chat_streams_and_saves_history(self):
        """对话流式输出并保存聊天记录"""
        runtime = make_runtime()
        runtime.agent_runner = ScriptedAgentRunner(chunks=["Hello", " there."])
        seed_agent(runtime)
        gateway, _ = await connect(runtime, settings={"agent": {"agentId": "assistant"}})

        record_id = await gateway.handle_agent_chat("hi", [])

        assert record_id
        assert ws(gateway).events("agent/content") == [["Hello"], [" there."]]
        done = ws(gateway).events("agent/done")
        assert len(done) == 1 and done[0][0]["message"] == "Hello there."
        chat = runtime.chats.get(1)
        assert [m.role for m in chat.messages] == ["user", "assistant"]
        assert chat.owner == "alice"

    @pytest.mark.asyncio
    async def test_voice_chat_message_runs_in_background(self):
        """voice_chat 在后台执行"""
        runtime = make_runtime()
        runner = ScriptedAgentRunner(chunks=["ok"])
        runtime.agent_runner = runner
        seed_agent(runtime)
        gateway, _ = await connect(runtime, settings={"agent": {"agentId": "assistant"}})

        await gateway.handle_message(json.dumps({"type": "voice_chat", "message": "turn on the light", "history": []}))
        await wait_until(lambda: ws(gateway).events("agent/done"))
        assert runner.calls[0]["message"] == "turn on the light"

    @pytest.mark.asyncio
    async def test_chat_without_agent_configured(self):
        """未配置 agent"""
        runtime = make_runtime()
        runtime.agent_runner = ScriptedAgentRunner(chunks=["x"])
        gateway, _ = await connect(runtime)

        assert await gateway.handle_agent_chat("hi") is None
        assert ws(gateway).events("agent/error")[0][0]["message"] == "Agent not configured"

    @pytest.mark.asyncio
    async def test_runner_error_reported(self):
        """agent 出错时发送 agent/error"""
        runtime = make_runtime()
        runtime.agent_runner = ScriptedAgentRunner(fail="model overloaded")
        seed_agent(runtime)
        gateway, _ = await connect(runtime, settings={"agent": {"agentId": "assistant"}})

        record_id = await gateway.handle_agent_chat("hi")
        assert ws(gateway).events("agent/error")[0][0]["message"] == "model overloaded"
        assert record_id not in gateway.session.subscribed_record_ids

    @pytest.mark.asyncio
    async def test_final_transcript_triggers_chat(self):
        """最终识别结果触发对话"""
        connector = FakeConnector()
        runtime = make_runtime(connector=connector)
        runner = ScriptedAgentRunner(chunks=["好的。"])
        runtime.agent_runner = runner
        seed_agent(runtime)
        gateway, _ = await connect(runtime, settings={
            "asr": FULL_SETTINGS["asr"], "agent": {"agentId": "assistant"},
        })

        audio = base64.b64encode(b"\x00" * 32).decode()
        await gateway.handle_message(json.dumps({"key": "publish", "event": "client/asr/audio", "payload": [{"audio": audio}]}))
        downstream = connector.sockets[0]
        assert downstream.sent_of("input_audio_buffer.append")[0]["audio"] == audio

        await downstream.push({"type": "conversation.item.input_audio_transcription.completed", "transcript": "开灯"})
        await wait_until(lambda: ws(gateway).events("agent/done"))

        assert ws(gateway).events("asr/result")[-1] == [{"text": "开灯", "isFinal": True}]
        assert runner.calls[0]["message"] == "开灯"
        await gateway.close()

    @pytest.mark.asyncio
    async def test_asr_drop_reports_error(self):
        """ASR 服务断开时客户端收到 asr/error，下次音频重新连接"""
        connector = FakeConnector()
        runtime = make_runtime(connector=connector)
        gateway, _ = await connect(runtime, settings={"asr": FULL_SETTINGS["asr"]})
        audio = base64.b64encode(b"\x00" * 8).decode()

        await gateway.handle_message(json.dumps({"type": "asr/audio", "audio": audio}))
        await connector.sockets[0].close()
        await wait_until(lambda: ws(gateway).events("asr/error"))

        assert "closed" in ws(gateway).events("asr/error")[0][0]["message"]

        await gateway.handle_message(json.dumps({"type": "asr/audio", "audio": audio}))
        assert connector.calls == 2
        await gateway.close()

    @pytest.mark.asyncio
    async def test_asr_without_configuration(self):
        """未配置 ASR"""
        gateway, _ = await connect(make_runtime())
        audio = base64.b64encode(b"\x00" * 4).decode()
        await gateway.handle_message(json.dumps({"type": "asr/audio", "audio": audio}))
        assert ws(gateway).events("asr/error")[0][0]["message"] == "ASR not configured"


class TestToolCalls:

    @pytest.mark.asyncio
    async def test_legacy_tool_call_not_found(self):
        """旧格式工具调用找不到工具"""
        gateway, _ = await connect(make_runtime())
        await gateway.handle_message(json.dumps({"type": "tools/call", "id": "t1", "name": "missing", "arguments": {}}))
        await wait_until(lambda: ws(gateway).sent[-1].get("type") == "tools/call/error")
        assert "not found" in ws(gateway).sent[-1]["error"]

    @pytest.mark.asyncio
    async def test_client_exposed_tools_are_callable(self):
        """客户端发布的工具可被调用"""
        runtime = make_runtime()
        gateway, _ = await connect(runtime)
        await gateway.handle_message(json.dumps({
            "jsonrpc": "2.0", "method": "notifications/tools-update",
            "params": {"tools": [{"name": "screen_brightness", "description": "set brightness"}]},
        }))

        task = asyncio.create_task(runtime.bridge.call_tool("screen_brightness", {"level": 3}))
        await wait_until(lambda: ws(gateway).sent[-1].get("method") == "tools/call")
        request = ws(gateway).sent[-1]
        await gateway.handle_message(json.dumps({
            "jsonrpc": "2.0", "id": request["id"],
            "result": {"content": [{"type": "text", "text": "{\"level\": 3}"}]},
        }))
        assert await task == {"level": 3}


class TestTeardown:

    @pytest.mark.asyncio
    async def test_close_rejects_pending_and_releases_everything(self):
        """关闭时拒绝未完成请求并释放资源"""
        connector = FakeConnector()
        runtime = make_runtime(connector=connector)
        disconnected = []
        runtime.events.on(EventType.CLIENT_DISCONNECTED, lambda msg: disconnected.append(msg.payload))
        gateway, _ = await connect(runtime, settings=TTS_SETTINGS)

        runtime.bridge.register_transport(gateway.rpc, [ToolDefinition(name="beep")])
        pending = asyncio.create_task(runtime.bridge.call_tool("beep"))
        await wait_until(lambda: len(gateway.rpc.pending) == 1)
        request_id = gateway.rpc.pending.pending_ids()[0]

        await gateway.handle_message(json.dumps({"key": "subscribe", "event": "tools.update"}))
        gateway.track_record("r1")
        await gateway.handle_record_update(RecordUpdate(record_id="r1", status=RecordStatus.DELTA, content="一句话。"))
        tts = gateway.session.tts_session
        assert tts.is_ready

        await gateway.close()

        with pytest.raises(ConnectionClosedError):
            await pending
        assert len(gateway.rpc.pending) == 0
        assert gateway.rpc.pending.settle(request_id, result="late") is False
        assert not tts.is_ready
        assert connector.sockets[0].closed
        assert runtime.events.listener_count(EventType.TOOLS_UPDATE) == 0
        assert runtime.events.listener_count(EventType.RECORD_UPDATE) == 0
        assert not runtime.registry.is_active("client", "system:1")
        assert not runtime.bridge.is_connected("beep")
        assert gateway.session.subscribed_record_ids == set()
        assert gateway.session.pending_commits == 0
        client = await runtime.clients.get("system", "1")
        assert client.status == "disconnected"

        await gateway.close()
        assert len(disconnected) == 1

    @pytest.mark.asyncio
    async def test_run_loop_tears_down_on_disconnect(self):
        """断开后消息循环执行清理"""
        runtime = make_runtime()
        seed_client(runtime)
        gateway = ClientGateway(make_connection(), runtime)
        await gateway.prepare("client-token")
        ws(gateway).incoming = [json.dumps({"type": "ping"})]

        await gateway.run()

        assert {"type": "pong"} in ws(gateway).sent
        assert not runtime.registry.is_active("client", "system:1")

    @pytest.mark.asyncio
    async def test_reconnect_after_close(self):
        """关闭后可以重新连接"""
        runtime = make_runtime()
        first, _ = await connect(runtime)
        await first.close()
        second, ok = await connect(runtime, seed=False)
        assert ok
        assert runtime.registry.get("client", "system:1") is second
