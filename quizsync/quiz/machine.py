"""Quiz state machine — the transition function.

transition() is the only code that derives one snapshot from another. It is
pure: it never touches the network, the clock or timers, and returns the
input object unchanged when a command does not apply, so callers can tell
"no change" apart with an identity check.

    waiting  --START_GAME--> playing
    playing  --BUZZ--------> buzzing
    buzzing  --ANSWER------> results
    results  --ADVANCE-----> playing | finished
    any      --RESET-------> waiting
"""

from __future__ import annotations

from dataclasses import replace
from typing import Sequence

from quizsync.config import POINTS_PER_CORRECT_ANSWER
from quizsync.quiz.commands import Command, CommandType
from quizsync.quiz.state import GamePhase, Player, Question, QuizSnapshot

# Phases in which a question is on screen and the host may skip ahead.
_ROUND_PHASES = (
    GamePhase.PLAYING,
    GamePhase.BUZZING,
    GamePhase.ANSWERING,
    GamePhase.RESULTS,
)


def transition(
    snapshot: QuizSnapshot,
    command: Command,
    questions: Sequence[Question],
) -> QuizSnapshot:
    """Apply one command to a snapshot.

    Args:
        snapshot: The current snapshot (not modified).
        command: The state change to apply.
        questions: The ordered question sequence of the room.

    Returns:
        The new snapshot, or `snapshot` itself if nothing changed.
    """
    if command.command_type == CommandType.JOIN:
        return _handle_join(snapshot, command)
    elif command.command_type == CommandType.START_GAME:
        return _handle_start(snapshot, questions)
    elif command.command_type == CommandType.BUZZ:
        return _handle_buzz(snapshot, command)
    elif command.command_type == CommandType.ANSWER:
        return _handle_answer(snapshot, command)
    elif command.command_type == CommandType.ADVANCE:
        return _handle_advance(snapshot, questions)
    elif command.command_type == CommandType.RESET:
        return _handle_reset(snapshot, command)
    elif command.command_type == CommandType.SET_CONNECTED:
        return _handle_set_connected(snapshot, command)
    return snapshot


def _handle_join(snapshot: QuizSnapshot, cmd: Command) -> QuizSnapshot:
    existing = snapshot.get_player(cmd.player_id)
    if existing is not None:
        if existing.is_connected:
            return snapshot
        return snapshot.with_player(replace(existing, is_connected=True))
    player = Player(player_id=cmd.player_id, name=cmd.name, is_connected=True)
    return replace(snapshot, players=snapshot.players + (player,))


def _handle_start(
    snapshot: QuizSnapshot,
    questions: Sequence[Question],
) -> QuizSnapshot:
    if snapshot.phase != GamePhase.WAITING:
        return snapshot
    if not questions:
        return replace(
            snapshot, phase=GamePhase.FINISHED, total_questions=0,
            current_question=None, active_player=None,
        )
    return replace(
        snapshot,
        phase=GamePhase.PLAYING,
        current_question=questions[0],
        current_question_index=0,
        total_questions=len(questions),
        active_player=None,
    )


def _handle_buzz(snapshot: QuizSnapshot, cmd: Command) -> QuizSnapshot:
    if snapshot.phase != GamePhase.PLAYING:
        return snapshot
    if snapshot.get_player(cmd.player_id) is None:
        return snapshot
    return replace(snapshot, phase=GamePhase.BUZZING, active_player=cmd.player_id)


def _handle_answer(snapshot: QuizSnapshot, cmd: Command) -> QuizSnapshot:
    if snapshot.phase not in (GamePhase.BUZZING, GamePhase.ANSWERING):
        return snapshot
    # Only the player who buzzed in may answer.
    if cmd.player_id != snapshot.active_player:
        return snapshot

    result = replace(snapshot, phase=GamePhase.RESULTS)
    question = snapshot.current_question
    player = snapshot.get_player(cmd.player_id)
    if (
        question is not None
        and player is not None
        and cmd.option_index == question.correct_option_index
    ):
        scored = replace(player, score=player.score + POINTS_PER_CORRECT_ANSWER)
        result = result.with_player(scored)
    return result


def _handle_advance(
    snapshot: QuizSnapshot,
    questions: Sequence[Question],
) -> QuizSnapshot:
    if snapshot.phase not in _ROUND_PHASES:
        return snapshot
    next_index = snapshot.current_question_index + 1
    if next_index >= len(questions):
        return replace(
            snapshot,
            phase=GamePhase.FINISHED,
            current_question=None,
            active_player=None,
        )
    return replace(
        snapshot,
        phase=GamePhase.PLAYING,
        current_question=questions[next_index],
        current_question_index=next_index,
        active_player=None,
    )


def _handle_reset(snapshot: QuizSnapshot, cmd: Command) -> QuizSnapshot:
    if cmd.clear_players:
        players: tuple[Player, ...] = ()
    else:
        players = tuple(replace(p, score=0) for p in snapshot.players)
    return replace(
        snapshot,
        players=players,
        phase=GamePhase.WAITING,
        current_question=None,
        current_question_index=0,
        active_player=None,
    )


def _handle_set_connected(snapshot: QuizSnapshot, cmd: Command) -> QuizSnapshot:
    player = snapshot.get_player(cmd.player_id)
    if player is None or player.is_connected == cmd.connected:
        return snapshot
    return snapshot.with_player(replace(player, is_connected=cmd.connected))
