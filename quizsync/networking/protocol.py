"""Network protocol definitions.

Defines the envelope types exchanged between nodes and the payload carried
by each. Every EnvelopeType maps to exactly one payload class, so the set of
messages is closed: adding a type means adding a payload class and an entry
in PAYLOAD_TYPES, and the replicator refuses to start if it has no handler
for it.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Union

from quizsync.quiz.state import QuizSnapshot


class EnvelopeType(str, Enum):
    """Wire message types exchanged between nodes."""
    PLAYER_JOINED = "PLAYER_JOINED"          # Peer → Host: join or rejoin
    PLAYER_BUZZ = "PLAYER_BUZZ"              # Peer → Host: buzz-in intent
    PLAYER_ANSWER = "PLAYER_ANSWER"          # Peer → Host: answer intent
    STATE_SYNC = "STATE_SYNC"                # Host → Peers: full snapshot
    SYNC_REQUEST = "SYNC_REQUEST"            # Any → Host: please send a snapshot
    HEARTBEAT = "HEARTBEAT"                  # Peer → Host: liveness
    PLAYER_DISCONNECT = "PLAYER_DISCONNECT"  # Peer → Host: clean shutdown
    SERVER_READY = "SERVER_READY"            # Relay → Node: relay operational
    GAME_RESET = "GAME_RESET"                # Host → Peers: game was reset


@dataclass(frozen=True, slots=True)
class PlayerJoined:
    player_id: str
    name: str


@dataclass(frozen=True, slots=True)
class PlayerBuzz:
    player_id: str


@dataclass(frozen=True, slots=True)
class PlayerAnswer:
    player_id: str
    answer_index: int


@dataclass(frozen=True, slots=True)
class StateSync:
    snapshot: QuizSnapshot


@dataclass(frozen=True, slots=True)
class SyncRequest:
    pass


@dataclass(frozen=True, slots=True)
class Heartbeat:
    player_id: str
    timestamp: int  # sender's wall clock, ms


@dataclass(frozen=True, slots=True)
class PlayerDisconnect:
    player_id: str


@dataclass(frozen=True, slots=True)
class ServerReady:
    message: str = ""


@dataclass(frozen=True, slots=True)
class GameReset:
    clear_players: bool


Payload = Union[
    PlayerJoined,
    PlayerBuzz,
    PlayerAnswer,
    StateSync,
    SyncRequest,
    Heartbeat,
    PlayerDisconnect,
    ServerReady,
    GameReset,
]

PAYLOAD_TYPES: dict[EnvelopeType, type] = {
    EnvelopeType.PLAYER_JOINED: PlayerJoined,
    EnvelopeType.PLAYER_BUZZ: PlayerBuzz,
    EnvelopeType.PLAYER_ANSWER: PlayerAnswer,
    EnvelopeType.STATE_SYNC: StateSync,
    EnvelopeType.SYNC_REQUEST: SyncRequest,
    EnvelopeType.HEARTBEAT: Heartbeat,
    EnvelopeType.PLAYER_DISCONNECT: PlayerDisconnect,
    EnvelopeType.SERVER_READY: ServerReady,
    EnvelopeType.GAME_RESET: GameReset,
}

# Envelopes worth keeping while no channel is available. Everything else is
# either periodic (heartbeats) or re-requested on reconnect (sync).
CRITICAL_TYPES = frozenset({
    EnvelopeType.PLAYER_BUZZ,
    EnvelopeType.PLAYER_ANSWER,
    EnvelopeType.STATE_SYNC,
})


@dataclass(frozen=True, slots=True)
class Envelope:
    """The wire unit.

    Attributes:
        envelope_type: What the payload is.
        data: Payload instance matching envelope_type.
        timestamp: Sender's wall clock when the envelope was built (ms).
        device_id: Stable id of the sending node; used to drop self-echoes.
    """
    envelope_type: EnvelopeType
    data: Payload
    timestamp: int
    device_id: str


def now_ms() -> int:
    """Wall clock in milliseconds, the unit of every wire timestamp."""
    return int(time.time() * 1000)
