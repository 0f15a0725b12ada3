"""Quiz state definitions.

QuizSnapshot is the single source of truth for a room. The authoritative
node owns the canonical snapshot; every peer holds a copy that it replaces
wholesale whenever a newer one arrives. Snapshots are immutable: a change
always produces a new snapshot.

RULES:
- Players are kept in join order and player ids are unique.
- Only the authoritative node produces new snapshots.
- timestamp is the only ordering signal between nodes.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum

from quizsync.config import DEFAULT_ROOM_CODE


class GamePhase(str, Enum):
    WAITING = "waiting"
    PLAYING = "playing"
    BUZZING = "buzzing"      # someone buzzed in, waiting for their answer
    ANSWERING = "answering"
    RESULTS = "results"      # correct answer shown, auto-advance pending
    FINISHED = "finished"


@dataclass(frozen=True, slots=True)
class Player:
    """A quiz participant. `player_id` survives reconnects."""
    player_id: str
    name: str
    score: int = 0
    is_connected: bool = True


@dataclass(frozen=True, slots=True)
class Question:
    question_id: str
    text: str
    options: tuple[str, ...]
    correct_option_index: int


@dataclass(frozen=True, slots=True)
class QuizSnapshot:
    """Complete replicated state of a room.

    Attributes:
        players: Roster in join order.
        current_question: Question on screen, or None outside a round.
        current_question_index: Position of current_question in the quiz.
        phase: Current game phase.
        active_player: Id of the player who buzzed in, or None.
        total_questions: Length of the question sequence.
        room_code: Display code of the room.
        timestamp: Logical clock (ms) stamped by the authoritative node.
    """
    players: tuple[Player, ...] = ()
    current_question: Question | None = None
    current_question_index: int = 0
    phase: GamePhase = GamePhase.WAITING
    active_player: str | None = None
    total_questions: int = 0
    room_code: str = DEFAULT_ROOM_CODE
    timestamp: int = 0

    def get_player(self, player_id: str) -> Player | None:
        """Look up a player by id. Returns None if not found."""
        for player in self.players:
            if player.player_id == player_id:
                return player
        return None

    def with_player(self, player: Player) -> QuizSnapshot:
        """Return a copy with `player` replacing the entry with the same id."""
        players = tuple(
            player if p.player_id == player.player_id else p
            for p in self.players
        )
        return replace(self, players=players)

    def stamped(self, timestamp: int) -> QuizSnapshot:
        return replace(self, timestamp=timestamp)

    def leaderboard(self) -> list[Player]:
        """Players sorted by score, highest first (ties keep join order)."""
        return sorted(self.players, key=lambda p: -p.score)


def initial_snapshot(
    total_questions: int,
    room_code: str = DEFAULT_ROOM_CODE,
) -> QuizSnapshot:
    """The default `waiting` snapshot a fresh node starts from."""
    return QuizSnapshot(total_questions=total_questions, room_code=room_code)
