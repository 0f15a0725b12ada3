"""Tests for the relay server."""

import asyncio
import json
import logging
import socket

import pytest
import websockets

from quizsync.config import DEFAULT_RELAY_PORT
from quizsync.networking import relay as relay_module
from quizsync.networking.protocol import EnvelopeType
from quizsync.networking.relay import Relay, main, server_ready_message
from quizsync.networking.serialization import decode_envelope


class FakeTransport:
    def __init__(self, on_abort) -> None:
        self.aborted = False
        self._on_abort = on_abort

    def abort(self) -> None:
        self.aborted = True
        self._on_abort()


class FakeWebSocket:
    """Just enough of a server connection for the relay handler."""

    def __init__(self, answers_pings: bool) -> None:
        self.answers_pings = answers_pings
        self.sent: list[str] = []
        self.remote_address = ("10.0.0.7", 50123)
        self._closed = asyncio.Event()
        self.transport = FakeTransport(self._closed.set)

    async def send(self, message) -> None:
        self.sent.append(message)

    async def ping(self):
        pong = asyncio.get_running_loop().create_future()
        if self.answers_pings:
            pong.set_result(0.001)
        return pong

    def __aiter__(self):
        return self

    async def __anext__(self):
        await self._closed.wait()
        raise StopAsyncIteration


@pytest.fixture
async def relay_server():
    relay = Relay(ping_interval=60)
    server = await websockets.serve(relay.handler, "127.0.0.1", 0, ping_interval=None)
    port = server.sockets[0].getsockname()[1]
    yield relay, f"ws://127.0.0.1:{port}"
    server.close()
    await server.wait_closed()


class TestServerReady:
    def test_message_is_a_valid_envelope(self):
        env = decode_envelope(server_ready_message())
        assert env.envelope_type == EnvelopeType.SERVER_READY
        assert env.device_id == "server"

    async def test_sent_on_connect(self):
        relay = Relay(ping_interval=60)
        ws = FakeWebSocket(answers_pings=True)
        task = asyncio.get_running_loop().create_task(relay.handler(ws))
        await asyncio.sleep(0.01)
        assert len(ws.sent) == 1
        assert json.loads(ws.sent[0])["type"] == "SERVER_READY"
        assert len(relay.sessions) == 1
        ws.transport.abort()
        await task
        assert relay.sessions == []


class TestLiveness:
    async def test_unresponsive_connection_terminated(self):
        relay = Relay(ping_interval=0.01, pong_timeout=0.01, max_missed_pongs=3)
        ws = FakeWebSocket(answers_pings=False)
        task = asyncio.get_running_loop().create_task(relay.handler(ws))
        await asyncio.wait_for(task, 2)
        assert ws.transport.aborted
        assert relay.sessions == []

    async def test_eviction_logs_session_age(self, caplog):
        caplog.set_level(logging.INFO, logger="quizsync.networking.relay")
        relay = Relay(ping_interval=60)
        ws = FakeWebSocket(answers_pings=True)
        task = asyncio.get_running_loop().create_task(relay.handler(ws))
        await asyncio.sleep(0.01)
        relay.sessions[0].connected_at -= 42
        ws.transport.abort()
        await task
        assert "Node 10.0.0.7:50123 disconnected after 42s (0 open)" in caplog.text

    async def test_responsive_connection_kept(self):
        relay = Relay(ping_interval=0.01, pong_timeout=0.05, max_missed_pongs=3)
        ws = FakeWebSocket(answers_pings=True)
        task = asyncio.get_running_loop().create_task(relay.handler(ws))
        await asyncio.sleep(0.1)
        assert not ws.transport.aborted
        assert relay.sessions[0].missed_pongs == 0
        ws.transport.abort()
        await task


class TestRebroadcast:
    async def test_message_reaches_everyone_but_sender(self, relay_server):
        relay, url = relay_server
        async with websockets.connect(url) as a, websockets.connect(url) as b, \
                websockets.connect(url) as c:
            for ws in (a, b, c):
                greeting = json.loads(await asyncio.wait_for(ws.recv(), 2))
                assert greeting["type"] == "SERVER_READY"

            message = '{"anything": "goes"}'
            await a.send(message)
            assert await asyncio.wait_for(b.recv(), 2) == message
            assert await asyncio.wait_for(c.recv(), 2) == message
            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(a.recv(), 0.1)

    async def test_disconnect_evicts_session(self, relay_server):
        relay, url = relay_server
        async with websockets.connect(url) as a:
            await asyncio.wait_for(a.recv(), 2)
            assert len(relay.sessions) == 1
        for _ in range(100):
            if not relay.sessions:
                break
            await asyncio.sleep(0.01)
        assert relay.sessions == []


class TestRelayCommandLine:
    def test_port_argument(self, monkeypatch):
        ports = []

        async def fake_run_relay(port, relay=None):
            ports.append(port)

        monkeypatch.setattr(relay_module, "run_relay", fake_run_relay)
        main(["9123"])
        main([])
        assert ports == [9123, DEFAULT_RELAY_PORT]

    def test_non_numeric_port_rejected(self):
        with pytest.raises(SystemExit) as exc:
            main(["eighty"])
        assert exc.value.code == 2

    def test_busy_port_exits_with_error(self, caplog):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as blocker:
            blocker.bind(("", 0))
            blocker.listen()
            port = blocker.getsockname()[1]
            with pytest.raises(SystemExit) as exc:
                main([str(port)])
        assert exc.value.code == 1
        assert f"Cannot listen on port {port}" in caplog.text
