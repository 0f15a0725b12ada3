"""Command types for the quiz state machine.

Commands are the ONLY way anything changes the canonical quiz state. User
intents and network envelopes are converted to commands on the
authoritative node and fed through transition(); peers never build them.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum


class CommandType(IntEnum):
    """All possible state changes."""
    JOIN = 1           # add a player, or mark a returning one connected
    START_GAME = 2
    BUZZ = 3           # claim the right to answer
    ANSWER = 4
    ADVANCE = 5        # next question, or finish
    RESET = 6
    SET_CONNECTED = 7  # liveness flag from heartbeats / disconnects


@dataclass(frozen=True, slots=True)
class Command:
    """A single state change request.

    Commands are immutable and comparable, so the same intent received twice
    is recognisably the same command.

    Attributes:
        command_type: What to do.
        player_id: Player the command is about (JOIN, BUZZ, ANSWER, SET_CONNECTED).
        name: Display name (JOIN).
        option_index: Chosen option (ANSWER).
        connected: New liveness flag (SET_CONNECTED).
        clear_players: Drop the roster instead of zeroing scores (RESET).
    """
    command_type: CommandType
    player_id: str = ""
    name: str = ""
    option_index: int = -1
    connected: bool = True
    clear_players: bool = False


def join(player_id: str, name: str) -> Command:
    return Command(CommandType.JOIN, player_id=player_id, name=name)


def start_game() -> Command:
    return Command(CommandType.START_GAME)


def buzz(player_id: str) -> Command:
    return Command(CommandType.BUZZ, player_id=player_id)


def answer(player_id: str, option_index: int) -> Command:
    return Command(CommandType.ANSWER, player_id=player_id, option_index=option_index)


def advance() -> Command:
    return Command(CommandType.ADVANCE)


def reset(clear_players: bool) -> Command:
    return Command(CommandType.RESET, clear_players=clear_players)


def set_connected(player_id: str, connected: bool) -> Command:
    return Command(CommandType.SET_CONNECTED, player_id=player_id, connected=connected)
