"""Scenario test harness for multi-node quiz flows.

Runs one presentation node and any number of player nodes in a single event
loop, wired together through a private BroadcastHub. Assertions produce
failure messages that show every node's view of the room.

Usage:
    room = Room()
    await room.start()
    alice = await room.add_player("Alice")
    room.host.start_game()
    await room.settle()
    room.assert_phase(GamePhase.PLAYING)
    await room.stop()
"""

from __future__ import annotations

import asyncio

from quizsync.networking.channels import BroadcastHub
from quizsync.networking.transport import BroadcastTransport
from quizsync.quiz.questions import DEFAULT_QUESTIONS
from quizsync.quiz.state import GamePhase, QuizSnapshot
from quizsync.sync.replicator import Replicator, Role


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------

def describe(snapshot: QuizSnapshot) -> str:
    """One-line summary of a snapshot for assertion messages."""
    players = ", ".join(
        f"{p.name}={p.score}{'' if p.is_connected else '(off)'}"
        for p in snapshot.players
    )
    return (
        f"{snapshot.phase.value} q={snapshot.current_question_index} "
        f"active={snapshot.active_player} ts={snapshot.timestamp} [{players}]"
    )


# ---------------------------------------------------------------------------
# Room
# ---------------------------------------------------------------------------

class Room:
    """A presentation node plus player nodes sharing one broadcast hub."""

    def __init__(
        self,
        questions=DEFAULT_QUESTIONS,
        auto_advance_delay: float = 0.05,
        strict_reset: bool = True,
    ) -> None:
        self.hub = BroadcastHub()
        self._questions = questions
        self._auto_advance_delay = auto_advance_delay
        self.host = self._make_node(Role.AUTHORITATIVE, "host", strict_reset)
        self.players: dict[str, Replicator] = {}
        self._player_ids: dict[str, str] = {}

    def _make_node(self, role: Role, device_id: str, strict_reset: bool = True) -> Replicator:
        transport = BroadcastTransport(device_id, hub=self.hub, sync_delay=0)
        return Replicator(
            role, transport,
            questions=self._questions,
            auto_advance_delay=self._auto_advance_delay,
            strict_reset=strict_reset,
        )

    @property
    def nodes(self) -> list[Replicator]:
        return [self.host, *self.players.values()]

    # --- Lifecycle -------------------------------------------------------

    async def start(self) -> None:
        await self.host.start()
        await self.settle()

    async def stop(self) -> None:
        for node in self.nodes:
            await node.stop()

    async def add_player(self, name: str) -> Replicator:
        """Start a player node and join it under `name`."""
        node = self._make_node(Role.PEER, f"device-{name.lower()}")
        await node.start()
        self._player_ids[name] = node.join(name)
        self.players[name] = node
        await self.settle()
        return node

    async def settle(self, rounds: int = 20) -> None:
        """Let queued deliveries and their replies run."""
        for _ in range(rounds):
            await asyncio.sleep(0)

    async def wait_for(self, predicate, timeout: float = 2.0) -> None:
        """Run the loop until `predicate()` holds, or fail with the room state."""
        deadline = asyncio.get_running_loop().time() + timeout
        while not predicate():
            if asyncio.get_running_loop().time() > deadline:
                raise AssertionError(f"Timed out waiting; room is:\n{self.dump()}")
            await asyncio.sleep(0.01)

    def player_id(self, name: str) -> str:
        return self._player_ids[name]

    # --- Assertions ------------------------------------------------------

    def dump(self) -> str:
        lines = [f"  host:  {describe(self.host.snapshot)}"]
        for name, node in self.players.items():
            lines.append(f"  {name}: {describe(node.snapshot)}")
        return "\n".join(lines)

    def assert_phase(self, phase: GamePhase) -> None:
        assert self.host.snapshot.phase == phase, (
            f"Expected host in {phase.value}, room is:\n{self.dump()}"
        )

    def assert_score(self, name: str, score: int) -> None:
        player = self.host.snapshot.get_player(self.player_id(name))
        assert player is not None, f"{name} not in roster:\n{self.dump()}"
        assert player.score == score, (
            f"Expected {name} to have {score} points, got {player.score}:\n{self.dump()}"
        )

    def assert_converged(self) -> None:
        """Every node holds exactly the host's snapshot."""
        expected = self.host.snapshot
        for name, node in self.players.items():
            assert node.snapshot == expected, (
                f"{name} diverged from host:\n{self.dump()}"
            )
