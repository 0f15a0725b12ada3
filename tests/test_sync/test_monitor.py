"""Tests for heartbeat tracking and emission."""

import asyncio

from quizsync.networking.protocol import EnvelopeType
from quizsync.networking.transport import BroadcastTransport
from quizsync.sync.monitor import ConnectionMonitor, HeartbeatEmitter


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class TestConnectionMonitor:
    def test_recent_player_not_expired(self):
        clock = FakeClock()
        m = ConnectionMonitor(timeout_ms=15000, clock=clock)
        m.record("p1", "dev")
        clock.now += 14
        assert m.expired(["p1"]) == []

    def test_silent_player_expires(self):
        clock = FakeClock()
        m = ConnectionMonitor(timeout_ms=15000, clock=clock)
        m.record("p1")
        m.record("p2")
        clock.now += 10
        m.record("p2")
        clock.now += 6
        assert m.expired(["p1", "p2"]) == ["p1"]

    def test_unknown_player_never_expires(self):
        m = ConnectionMonitor(clock=FakeClock())
        assert m.expired(["ghost"]) == []

    def test_record_updates_device(self):
        m = ConnectionMonitor(clock=FakeClock())
        m.record("p1", "old")
        m.record("p1")
        assert m.session("p1").device_id == "old"
        m.record("p1", "new")
        assert m.session("p1").device_id == "new"

    def test_forget_and_clear(self):
        m = ConnectionMonitor(clock=FakeClock())
        m.record("p1")
        m.record("p2")
        m.forget("p1")
        assert m.session("p1") is None
        m.clear()
        assert m.session("p2") is None

    async def test_sweep_loop_runs_until_stopped(self):
        m = ConnectionMonitor(sweep_interval=0.01)
        sweeps = []
        m.start(lambda: sweeps.append(1))
        await asyncio.sleep(0.05)
        await m.stop()
        count = len(sweeps)
        assert count >= 2
        await asyncio.sleep(0.03)
        assert len(sweeps) == count

    async def test_failing_sweep_keeps_loop_alive(self, caplog):
        m = ConnectionMonitor(sweep_interval=0.01)
        calls = []

        def sweep():
            calls.append(1)
            raise KeyError("boom")

        m.start(sweep)
        await asyncio.sleep(0.05)
        assert not m._task.done()
        await m.stop()
        assert len(calls) >= 2
        assert "Liveness sweep failed" in caplog.text


class TestHeartbeatEmitter:
    async def test_beats_immediately_and_periodically(self, hub):
        sender = BroadcastTransport("a", hub=hub, sync_delay=60)
        listener = BroadcastTransport("b", hub=hub, sync_delay=60)
        beats = []
        listener.on_envelope(beats.append)
        await sender.connect()
        await listener.connect()

        emitter = HeartbeatEmitter(sender, interval=0.02)
        emitter.start("p1")
        assert emitter.running
        await asyncio.sleep(0.07)
        emitter.stop()
        assert not emitter.running

        assert len(beats) >= 2
        assert all(b.envelope_type == EnvelopeType.HEARTBEAT for b in beats)
        assert beats[0].data.player_id == "p1"
        await sender.close()
        await listener.close()

    async def test_failing_send_keeps_beating(self, hub, caplog):
        class ExplodingTransport(BroadcastTransport):
            def send(self, envelope_type, payload):
                self.attempts = getattr(self, "attempts", 0) + 1
                raise RuntimeError("socket gone")

        transport = ExplodingTransport("a", hub=hub)
        emitter = HeartbeatEmitter(transport, interval=0.01)
        emitter.start("p1")
        await asyncio.sleep(0.05)
        assert not emitter._task.done()
        emitter.stop()
        assert transport.attempts >= 2
        assert "Heartbeat for p1 failed" in caplog.text
