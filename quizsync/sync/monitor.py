"""Connection monitoring — heartbeats and liveness.

Peers run a HeartbeatEmitter that announces the local player every few
seconds. The authoritative node keeps one PeerSession per player in a
ConnectionMonitor and periodically sweeps for players whose last heartbeat
is too old; the replicator turns the result into isConnected flags.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterable

from quizsync.config import (
    HEARTBEAT_INTERVAL_MS,
    HEARTBEAT_TIMEOUT_MS,
    LIVENESS_SWEEP_INTERVAL_MS,
)
from quizsync.networking.protocol import EnvelopeType, Heartbeat, now_ms
from quizsync.networking.transport import Transport

logger = logging.getLogger(__name__)


@dataclass
class PeerSession:
    """Liveness bookkeeping for one player."""
    player_id: str
    device_id: str | None
    last_seen: float  # time.monotonic() seconds


class ConnectionMonitor:
    """Authoritative-side liveness tracking."""

    def __init__(
        self,
        timeout_ms: int = HEARTBEAT_TIMEOUT_MS,
        sweep_interval: float = LIVENESS_SWEEP_INTERVAL_MS / 1000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._timeout = timeout_ms / 1000
        self._sweep_interval = sweep_interval
        self._clock = clock
        self._sessions: dict[str, PeerSession] = {}
        self._task: asyncio.Task | None = None

    def record(self, player_id: str, device_id: str | None = None) -> None:
        """Note that `player_id` was just heard from."""
        session = self._sessions.get(player_id)
        if session is None:
            self._sessions[player_id] = PeerSession(player_id, device_id, self._clock())
            return
        session.last_seen = self._clock()
        if device_id is not None:
            session.device_id = device_id

    def session(self, player_id: str) -> PeerSession | None:
        return self._sessions.get(player_id)

    def forget(self, player_id: str) -> None:
        self._sessions.pop(player_id, None)

    def clear(self) -> None:
        self._sessions.clear()

    def expired(self, player_ids: Iterable[str]) -> list[str]:
        """Players among `player_ids` not heard from within the timeout.

        Players without a session have never been seen and are skipped.
        """
        now = self._clock()
        result = []
        for player_id in player_ids:
            session = self._sessions.get(player_id)
            if session is not None and now - session.last_seen > self._timeout:
                result.append(player_id)
        return result

    def start(self, on_sweep: Callable[[], None]) -> None:
        """Call `on_sweep` every sweep interval until stop()."""
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._sweep_loop(on_sweep))

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _sweep_loop(self, on_sweep: Callable[[], None]) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            try:
                on_sweep()
            except Exception:
                logger.exception("Liveness sweep failed")


class HeartbeatEmitter:
    """Peer-side periodic HEARTBEAT sender."""

    def __init__(
        self,
        transport: Transport,
        interval: float = HEARTBEAT_INTERVAL_MS / 1000,
    ) -> None:
        self._transport = transport
        self._interval = interval
        self._player_id: str | None = None
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None

    def start(self, player_id: str) -> None:
        """Begin (or retarget) heartbeats for `player_id`."""
        self._player_id = player_id
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._beat())

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _beat(self) -> None:
        while True:
            if self._player_id is not None:
                try:
                    self._transport.send(
                        EnvelopeType.HEARTBEAT,
                        Heartbeat(player_id=self._player_id, timestamp=now_ms()),
                    )
                except Exception:
                    logger.exception("Heartbeat for %s failed", self._player_id)
            await asyncio.sleep(self._interval)
