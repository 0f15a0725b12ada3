"""QuizSync node entry point.

Usage:
    Presentation screen:  python -m quizsync.main present
    Player device:        python -m quizsync.main play --name Alice
    Other relay:          python -m quizsync.main play --relay ws://10.0.0.5:8081
    No relay at all:      python -m quizsync.main present --local

Commands are read from stdin, one per line. The presentation node accepts
start, next, reset, status and quit; a player node accepts join NAME, buzz,
answer N (1-4), status and quit.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from quizsync.config import DEFAULT_RELAY_HOST, DEFAULT_RELAY_PORT, DEFAULT_STATE_DIR
from quizsync.networking.transport import BroadcastTransport, Transport
from quizsync.networking.ws_transport import RelayTransport
from quizsync.quiz.questions import DEFAULT_QUESTIONS, load_questions
from quizsync.quiz.state import GamePhase, QuizSnapshot
from quizsync.sync.backup import LocalBackup
from quizsync.sync.replicator import Replicator, Role

logger = logging.getLogger(__name__)


def render_snapshot(snapshot: QuizSnapshot) -> str:
    """Plain-text view of a snapshot for the console."""
    lines = [f"[{snapshot.room_code}] {snapshot.phase.value}"]
    question = snapshot.current_question
    if question is not None:
        lines.append(
            f"Q{snapshot.current_question_index + 1}/{snapshot.total_questions}: {question.text}"
        )
        for i, option in enumerate(question.options):
            marker = "*" if (
                snapshot.phase == GamePhase.RESULTS and i == question.correct_option_index
            ) else " "
            lines.append(f" {marker}{i + 1}. {option}")
    if snapshot.active_player is not None:
        active = snapshot.get_player(snapshot.active_player)
        lines.append(f"Buzzed: {active.name if active else snapshot.active_player}")
    for player in snapshot.leaderboard():
        state = "" if player.is_connected else " (offline)"
        lines.append(f"  {player.score:4d}  {player.name}{state}")
    return "\n".join(lines)


def dispatch(replicator: Replicator, line: str) -> bool:
    """Run one console command. Returns False when the user wants to quit."""
    parts = line.split(maxsplit=1)
    if not parts:
        return True
    word, rest = parts[0].lower(), (parts[1] if len(parts) > 1 else "")

    if word in ("quit", "exit"):
        return False
    elif word == "status":
        print(render_snapshot(replicator.snapshot))
        me = replicator.local_player()
        if me is not None:
            print(f"You are {me.name}: {me.score} points")
        print(replicator.status())
    elif word == "start":
        replicator.start_game()
    elif word == "next":
        replicator.advance()
    elif word == "reset":
        replicator.reset()
    elif word == "join":
        if not rest:
            print("Usage: join NAME")
        else:
            replicator.join(rest.strip())
    elif word == "buzz":
        replicator.buzz()
    elif word == "answer":
        try:
            option = int(rest) - 1
        except ValueError:
            print("Usage: answer N")
        else:
            replicator.answer(option)
    else:
        print(f"Unknown command: {word}")
    return True


async def run_node(replicator: Replicator, name: str | None = None) -> None:
    """Drive a node from stdin until quit or end of input."""
    replicator.on_change(lambda snapshot: print(render_snapshot(snapshot)))
    await replicator.start()
    if name and not replicator.is_authoritative and replicator.player_id is None:
        replicator.join(name)

    loop = asyncio.get_running_loop()
    try:
        while True:
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line or not dispatch(replicator, line):
                break
    finally:
        await replicator.stop()


def build_replicator(args: argparse.Namespace) -> Replicator:
    """Wire a Replicator from parsed command-line arguments."""
    backup = LocalBackup(Path(args.state_dir) / args.role)
    device_id = backup.load_identity().device_id

    transport: Transport
    if args.local:
        transport = BroadcastTransport(device_id)
    else:
        transport = RelayTransport(args.relay, device_id)

    questions = load_questions(args.questions) if args.questions else DEFAULT_QUESTIONS
    role = Role.AUTHORITATIVE if args.role == "present" else Role.PEER
    return Replicator(role, transport, questions=questions, backup=backup)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="QuizSync — buzzer quiz node")
    parser.add_argument(
        "role", choices=("present", "play"),
        help="present: run the authoritative presentation node; play: join as a player",
    )
    group = parser.add_mutually_exclusive_group()
    group.add_argument(
        "--relay", type=str, metavar="URL",
        default=f"ws://{DEFAULT_RELAY_HOST}:{DEFAULT_RELAY_PORT}",
        help="Relay WebSocket URL (default ws://%s:%d)" % (DEFAULT_RELAY_HOST, DEFAULT_RELAY_PORT),
    )
    group.add_argument(
        "--local", action="store_true",
        help="Use only the broadcast channel shared by nodes on this machine",
    )
    parser.add_argument("--name", type=str, help="Player name to join with (play only)")
    parser.add_argument(
        "--state-dir", type=str, default=DEFAULT_STATE_DIR,
        help=f"Directory for the local backup (default {DEFAULT_STATE_DIR})",
    )
    parser.add_argument(
        "--questions", type=str, metavar="FILE",
        help="JSON file with the question list",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Enable debug logging",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
    )

    try:
        replicator = build_replicator(args)
    except (OSError, ValueError) as e:
        logger.error("Cannot start node: %s", e)
        sys.exit(1)

    try:
        asyncio.run(run_node(replicator, args.name))
    except KeyboardInterrupt:
        logger.info("Node stopped")


if __name__ == "__main__":
    main()
