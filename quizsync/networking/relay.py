"""Relay — a stateless envelope broadcaster.

Every message received from one connection is re-sent, byte for byte, to
every other open connection. The relay never looks inside envelopes and
holds no game state: the authoritative node owns that, so restarting the
relay loses nothing.

Usage:
    python -m quizsync.networking.relay            # port 8081
    python -m quizsync.networking.relay 9000
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import time
from dataclasses import dataclass, field

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from quizsync.config import (
    DEFAULT_RELAY_PORT,
    RELAY_DEVICE_ID,
    RELAY_MAX_MISSED_PONGS,
    RELAY_PING_INTERVAL_MS,
    RELAY_PONG_TIMEOUT_MS,
)
from quizsync.networking.protocol import EnvelopeType, now_ms

logger = logging.getLogger(__name__)


@dataclass
class RelaySession:
    """Bookkeeping for one accepted connection."""
    websocket: object
    remote: str
    missed_pongs: int = 0
    connected_at: float = field(default_factory=time.monotonic)

    def terminate(self) -> None:
        """Drop the connection without a closing handshake."""
        self.websocket.transport.abort()


def server_ready_message() -> str:
    """The greeting sent to every new connection."""
    return json.dumps({
        "type": EnvelopeType.SERVER_READY.value,
        "data": {"message": "Connected to the quiz relay"},
        "timestamp": now_ms(),
        "deviceId": RELAY_DEVICE_ID,
    })


class Relay:
    """Rebroadcasts messages between all connected nodes."""

    def __init__(
        self,
        ping_interval: float = RELAY_PING_INTERVAL_MS / 1000,
        pong_timeout: float = RELAY_PONG_TIMEOUT_MS / 1000,
        max_missed_pongs: int = RELAY_MAX_MISSED_PONGS,
    ) -> None:
        self._ping_interval = ping_interval
        self._pong_timeout = pong_timeout
        self._max_missed_pongs = max_missed_pongs
        self._sessions: dict[object, RelaySession] = {}

    @property
    def sessions(self) -> list[RelaySession]:
        return list(self._sessions.values())

    async def handler(self, websocket) -> None:
        """Serve one connection until it closes."""
        session = RelaySession(websocket, remote=_remote_name(websocket))
        self._sessions[websocket] = session
        logger.info("Node connected from %s (%d open)", session.remote, len(self._sessions))
        liveness = asyncio.get_running_loop().create_task(self.probe_liveness(session))
        try:
            await websocket.send(server_ready_message())
            async for message in websocket:
                self.broadcast_from(session, message)
        except ConnectionClosed:
            pass
        except (OSError, WebSocketException) as e:
            logger.warning("Connection error from %s: %s", session.remote, e)
        finally:
            liveness.cancel()
            self._evict(session)

    def broadcast_from(self, sender: RelaySession, message: str | bytes) -> int:
        """Send `message` unmodified to every session except `sender`.

        Returns the number of recipients.
        """
        others = [ws for ws in self._sessions if ws is not sender.websocket]
        if others:
            websockets.broadcast(others, message)
        logger.debug("Relayed %d bytes from %s to %d nodes",
                     len(message), sender.remote, len(others))
        return len(others)

    async def probe_liveness(self, session: RelaySession) -> None:
        """Ping a session periodically; terminate it after too many misses."""
        while True:
            await asyncio.sleep(self._ping_interval)
            try:
                pong_waiter = await session.websocket.ping()
                await asyncio.wait_for(pong_waiter, self._pong_timeout)
            except asyncio.TimeoutError:
                session.missed_pongs += 1
                logger.debug("%s missed pong %d/%d", session.remote,
                             session.missed_pongs, self._max_missed_pongs)
                if session.missed_pongs >= self._max_missed_pongs:
                    logger.warning("Terminating unresponsive node %s", session.remote)
                    session.terminate()
                    self._evict(session)
                    return
            except (ConnectionClosed, OSError):
                return
            else:
                session.missed_pongs = 0

    def _evict(self, session: RelaySession) -> None:
        if self._sessions.pop(session.websocket, None) is not None:
            logger.info("Node %s disconnected after %.0fs (%d open)", session.remote,
                        time.monotonic() - session.connected_at, len(self._sessions))


def _remote_name(websocket) -> str:
    address = getattr(websocket, "remote_address", None)
    if not address:
        return "unknown"
    return f"{address[0]}:{address[1]}"


async def run_relay(port: int, relay: Relay | None = None) -> None:
    """Serve on all interfaces until cancelled."""
    relay = relay or Relay()
    # Liveness is handled by Relay.probe_liveness, not the library keepalive.
    async with websockets.serve(relay.handler, None, port, ping_interval=None):
        logger.info("Relay listening on port %d", port)
        await asyncio.Future()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="QuizSync relay — rebroadcasts envelopes between nodes")
    parser.add_argument(
        "port", type=int, nargs="?", default=DEFAULT_RELAY_PORT,
        help=f"Port to listen on (default {DEFAULT_RELAY_PORT})",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
    )

    try:
        asyncio.run(run_relay(args.port))
    except OSError as e:
        logger.error("Cannot listen on port %d: %s", args.port, e)
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Relay stopped")


if __name__ == "__main__":
    main()
