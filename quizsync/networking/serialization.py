"""JSON serialization for envelopes and snapshots.

Wire format (one JSON object per WebSocket text frame or broadcast post):

    {"type": "<EnvelopeType>", "data": {...}, "timestamp": <int ms>,
     "deviceId": "<string>"}

Payload keys are camelCase. Decoding is strict: anything that does not
match the schema raises ValueError so the receiving transport can log and
drop it.
"""

from __future__ import annotations

import json
from typing import Any

from quizsync.networking.protocol import (
    PAYLOAD_TYPES,
    Envelope,
    EnvelopeType,
    GameReset,
    Heartbeat,
    Payload,
    PlayerAnswer,
    PlayerBuzz,
    PlayerDisconnect,
    PlayerJoined,
    ServerReady,
    StateSync,
    SyncRequest,
)
from quizsync.quiz.questions import question_from_dict, question_to_dict
from quizsync.quiz.state import GamePhase, Player, QuizSnapshot


# --- Field helpers ---

def _get_str(raw: dict, key: str) -> str:
    value = raw.get(key)
    if not isinstance(value, str):
        raise ValueError(f"Field {key!r} must be a string")
    return value


def _get_int(raw: dict, key: str) -> int:
    value = raw.get(key)
    # bool is an int subclass; reject it explicitly
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValueError(f"Field {key!r} must be an integer")
    return value


def _get_bool(raw: dict, key: str) -> bool:
    value = raw.get(key)
    if not isinstance(value, bool):
        raise ValueError(f"Field {key!r} must be a boolean")
    return value


def _get_dict(raw: Any, what: str) -> dict:
    if not isinstance(raw, dict):
        raise ValueError(f"{what} must be a JSON object")
    return raw


# --- Snapshot serialization ---

def snapshot_to_dict(snapshot: QuizSnapshot) -> dict:
    """Encode a snapshot into its JSON-ready form."""
    question = snapshot.current_question
    return {
        "players": [
            {
                "id": p.player_id,
                "name": p.name,
                "score": p.score,
                "isConnected": p.is_connected,
            }
            for p in snapshot.players
        ],
        "currentQuestion": question_to_dict(question) if question else None,
        "currentQuestionIndex": snapshot.current_question_index,
        "gameState": snapshot.phase.value,
        "activePlayer": snapshot.active_player,
        "totalQuestions": snapshot.total_questions,
        "roomCode": snapshot.room_code,
        "timestamp": snapshot.timestamp,
    }


def snapshot_from_dict(raw: Any) -> QuizSnapshot:
    """Decode a snapshot. Raises ValueError if malformed."""
    raw = _get_dict(raw, "Snapshot")
    players_raw = raw.get("players")
    if not isinstance(players_raw, list):
        raise ValueError("Field 'players' must be a list")
    players: list[Player] = []
    seen: set[str] = set()
    for item in players_raw:
        item = _get_dict(item, "Player")
        player = Player(
            player_id=_get_str(item, "id"),
            name=_get_str(item, "name"),
            score=_get_int(item, "score"),
            is_connected=_get_bool(item, "isConnected"),
        )
        if player.player_id in seen:
            raise ValueError(f"Duplicate player id {player.player_id!r}")
        seen.add(player.player_id)
        players.append(player)

    question_raw = raw.get("currentQuestion")
    question = None
    if question_raw is not None:
        question = question_from_dict(_get_dict(question_raw, "Question"))

    try:
        phase = GamePhase(raw.get("gameState"))
    except ValueError as e:
        raise ValueError(f"Unknown game state {raw.get('gameState')!r}") from e

    active = raw.get("activePlayer")
    if active is not None and not isinstance(active, str):
        raise ValueError("Field 'activePlayer' must be a string or null")

    return QuizSnapshot(
        players=tuple(players),
        current_question=question,
        current_question_index=_get_int(raw, "currentQuestionIndex"),
        phase=phase,
        active_player=active,
        total_questions=_get_int(raw, "totalQuestions"),
        room_code=_get_str(raw, "roomCode"),
        timestamp=_get_int(raw, "timestamp"),
    )


# --- Payload serialization ---

def encode_payload(payload: Payload) -> dict:
    """Encode a payload dataclass into its camelCase JSON form."""
    if isinstance(payload, PlayerJoined):
        return {"id": payload.player_id, "name": payload.name}
    if isinstance(payload, PlayerBuzz):
        return {"playerId": payload.player_id}
    if isinstance(payload, PlayerAnswer):
        return {"playerId": payload.player_id, "answerIndex": payload.answer_index}
    if isinstance(payload, StateSync):
        return snapshot_to_dict(payload.snapshot)
    if isinstance(payload, SyncRequest):
        return {}
    if isinstance(payload, Heartbeat):
        return {"playerId": payload.player_id, "timestamp": payload.timestamp}
    if isinstance(payload, PlayerDisconnect):
        return {"playerId": payload.player_id}
    if isinstance(payload, ServerReady):
        return {"message": payload.message}
    if isinstance(payload, GameReset):
        return {"clearPlayers": payload.clear_players}
    raise TypeError(f"Unsupported payload {type(payload).__name__}")


def decode_payload(envelope_type: EnvelopeType, raw: Any) -> Payload:
    """Decode the `data` field of an envelope. Raises ValueError if malformed."""
    raw = _get_dict(raw, "Envelope data")
    if envelope_type == EnvelopeType.PLAYER_JOINED:
        return PlayerJoined(player_id=_get_str(raw, "id"), name=_get_str(raw, "name"))
    elif envelope_type == EnvelopeType.PLAYER_BUZZ:
        return PlayerBuzz(player_id=_get_str(raw, "playerId"))
    elif envelope_type == EnvelopeType.PLAYER_ANSWER:
        return PlayerAnswer(
            player_id=_get_str(raw, "playerId"),
            answer_index=_get_int(raw, "answerIndex"),
        )
    elif envelope_type == EnvelopeType.STATE_SYNC:
        return StateSync(snapshot=snapshot_from_dict(raw))
    elif envelope_type == EnvelopeType.SYNC_REQUEST:
        return SyncRequest()
    elif envelope_type == EnvelopeType.HEARTBEAT:
        return Heartbeat(
            player_id=_get_str(raw, "playerId"),
            timestamp=_get_int(raw, "timestamp"),
        )
    elif envelope_type == EnvelopeType.PLAYER_DISCONNECT:
        return PlayerDisconnect(player_id=_get_str(raw, "playerId"))
    elif envelope_type == EnvelopeType.SERVER_READY:
        message = raw.get("message", "")
        return ServerReady(message=message if isinstance(message, str) else "")
    elif envelope_type == EnvelopeType.GAME_RESET:
        return GameReset(clear_players=_get_bool(raw, "clearPlayers"))
    raise ValueError(f"No decoder for {envelope_type}")


# --- Envelope framing ---

def encode_envelope(envelope: Envelope) -> str:
    """Serialize an envelope to JSON text.

    Raises TypeError if the payload class does not match the envelope type.
    """
    expected = PAYLOAD_TYPES[envelope.envelope_type]
    if not isinstance(envelope.data, expected):
        raise TypeError(
            f"{envelope.envelope_type.value} expects {expected.__name__}, "
            f"got {type(envelope.data).__name__}"
        )
    return json.dumps({
        "type": envelope.envelope_type.value,
        "data": encode_payload(envelope.data),
        "timestamp": envelope.timestamp,
        "deviceId": envelope.device_id,
    })


def decode_envelope(text: str | bytes) -> Envelope:
    """Parse JSON text into an Envelope.

    Raises ValueError if the text is not JSON or does not match the schema.
    """
    try:
        raw = json.loads(text)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValueError(f"Envelope is not valid JSON: {e}") from e
    except RecursionError as e:
        raise ValueError("Envelope nests too deeply") from e
    raw = _get_dict(raw, "Envelope")
    try:
        envelope_type = EnvelopeType(raw.get("type"))
    except ValueError as e:
        raise ValueError(f"Unknown envelope type {raw.get('type')!r}") from e
    return Envelope(
        envelope_type=envelope_type,
        data=decode_payload(envelope_type, raw.get("data")),
        timestamp=_get_int(raw, "timestamp"),
        device_id=_get_str(raw, "deviceId"),
    )
