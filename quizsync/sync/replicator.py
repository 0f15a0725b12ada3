"""Role-aware state replication.

The Replicator is the node controller: it owns the local QuizSnapshot, turns
user intents and incoming envelopes into state changes, and keeps the
replicas in line with the authoritative node.

    AUTHORITATIVE  applies commands through transition(), stamps every new
                   snapshot with a strictly increasing timestamp and
                   broadcasts it whole (STATE_SYNC).
    PEER           never changes the game itself. Intents go out as
                   envelopes; snapshots come back and replace the local copy
                   if they are newer than the last one accepted.

The role is fixed at construction. The transport is injected once and the
replicator registers itself as its envelope handler.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from enum import Enum, auto
from typing import Callable, Sequence

from quizsync.config import (
    AUTO_ADVANCE_DELAY_MS,
    DEFAULT_ROOM_CODE,
    STALE_SNAPSHOT_MARGIN_MS,
    STRICT_RESET,
)
from quizsync.networking.protocol import (
    Envelope,
    EnvelopeType,
    GameReset,
    PlayerAnswer,
    PlayerBuzz,
    PlayerDisconnect,
    PlayerJoined,
    StateSync,
    now_ms,
)
from quizsync.networking.transport import ConnectionStatus, Transport
from quizsync.quiz import commands as cmd
from quizsync.quiz.commands import Command
from quizsync.quiz.machine import transition
from quizsync.quiz.questions import DEFAULT_QUESTIONS
from quizsync.quiz.state import (
    GamePhase,
    Player,
    Question,
    QuizSnapshot,
    initial_snapshot,
)
from quizsync.sync.backup import LocalBackup, PlayerIdentity, new_player_id
from quizsync.sync.monitor import ConnectionMonitor, HeartbeatEmitter

logger = logging.getLogger(__name__)

ChangeListener = Callable[[QuizSnapshot], None]


class Role(Enum):
    AUTHORITATIVE = auto()
    PEER = auto()


class Replicator:
    """Keeps one node's snapshot consistent with the room."""

    def __init__(
        self,
        role: Role,
        transport: Transport,
        questions: Sequence[Question] = DEFAULT_QUESTIONS,
        room_code: str = DEFAULT_ROOM_CODE,
        backup: LocalBackup | None = None,
        monitor: ConnectionMonitor | None = None,
        heartbeat: HeartbeatEmitter | None = None,
        clock: Callable[[], int] = now_ms,
        auto_advance_delay: float = AUTO_ADVANCE_DELAY_MS / 1000,
        strict_reset: bool = STRICT_RESET,
        stale_margin_ms: int = STALE_SNAPSHOT_MARGIN_MS,
    ) -> None:
        self._role = role
        self._transport = transport
        self._questions = tuple(questions)
        self._backup = backup
        self._clock = clock
        self._auto_advance_delay = auto_advance_delay
        self._strict_reset = strict_reset
        self._stale_margin_ms = stale_margin_ms

        if role == Role.AUTHORITATIVE:
            self._monitor = monitor or ConnectionMonitor()
            self._heartbeat = None
        else:
            self._monitor = None
            self._heartbeat = heartbeat or HeartbeatEmitter(transport)

        self._snapshot = initial_snapshot(len(self._questions), room_code)
        self._last_accepted: int = 0
        self._identity = self._load_identity()
        self._listeners: list[ChangeListener] = []
        self._started = False

        # Auto-advance: the generation is bumped whenever a pending advance
        # becomes invalid, so a late timer callback can tell it is stale.
        self._advance_timer: asyncio.TimerHandle | None = None
        self._results_generation = 0

        self._handlers: dict[EnvelopeType, Callable[[Envelope], None]] = {
            EnvelopeType.PLAYER_JOINED: self._on_player_joined,
            EnvelopeType.PLAYER_BUZZ: self._on_player_buzz,
            EnvelopeType.PLAYER_ANSWER: self._on_player_answer,
            EnvelopeType.STATE_SYNC: self._on_state_sync,
            EnvelopeType.SYNC_REQUEST: self._on_sync_request,
            EnvelopeType.HEARTBEAT: self._on_heartbeat,
            EnvelopeType.PLAYER_DISCONNECT: self._on_player_disconnect,
            EnvelopeType.SERVER_READY: self._on_server_ready,
            EnvelopeType.GAME_RESET: self._on_game_reset,
        }
        missing = set(EnvelopeType) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler for {sorted(t.value for t in missing)}")

        transport.on_envelope(self.handle_envelope)

    # --- Properties ---

    @property
    def role(self) -> Role:
        return self._role

    @property
    def is_authoritative(self) -> bool:
        return self._role == Role.AUTHORITATIVE

    @property
    def snapshot(self) -> QuizSnapshot:
        return self._snapshot

    @property
    def identity(self) -> PlayerIdentity:
        return self._identity

    @property
    def player_id(self) -> str | None:
        return self._identity.player_id

    @property
    def auto_advance_pending(self) -> bool:
        return self._advance_timer is not None

    def local_player(self) -> Player | None:
        """The snapshot entry of this device's player, if it has joined."""
        if self._identity.player_id is None:
            return None
        return self._snapshot.get_player(self._identity.player_id)

    def status(self) -> ConnectionStatus:
        return self._transport.status()

    def on_change(self, listener: ChangeListener) -> None:
        """Register a callback run with every newly held snapshot."""
        self._listeners.append(listener)

    # --- Lifecycle ---

    async def start(self) -> None:
        """Restore the backup, connect, and start the liveness machinery."""
        if self._started:
            return
        self._started = True
        self._restore_backup()
        await self._transport.connect()

        if self.is_authoritative:
            self._monitor.start(self.sweep_liveness)
            # Restamp so replicas holding an older game accept this one.
            self._publish_current()
        elif self._identity.player_id is not None:
            logger.info("Rejoining as %s (%s)", self._identity.name, self._identity.player_id)
            self._announce_join()

    async def stop(self) -> None:
        """Cancel all timers, say goodbye, and close the transport."""
        self._cancel_auto_advance()
        if self._monitor is not None:
            await self._monitor.stop()
        if self._heartbeat is not None:
            self._heartbeat.stop()
            if self._identity.player_id is not None:
                self._transport.send(
                    EnvelopeType.PLAYER_DISCONNECT,
                    PlayerDisconnect(player_id=self._identity.player_id),
                )
        await self._transport.close()
        self._started = False

    def _restore_backup(self) -> None:
        if self._backup is None:
            return
        saved = self._backup.load_snapshot()
        if saved is None:
            return
        logger.info("Restored %s snapshot from backup (ts=%d)", saved.phase.value, saved.timestamp)
        self._snapshot = saved
        if self.is_authoritative:
            for player in saved.players:
                if player.is_connected:
                    self._monitor.record(player.player_id)
            if saved.phase == GamePhase.RESULTS:
                self._arm_auto_advance()
        else:
            self._last_accepted = saved.timestamp
        self._notify()

    def _load_identity(self) -> PlayerIdentity:
        device_id = self._transport.device_id
        if self._backup is None:
            return PlayerIdentity(device_id=device_id)
        stored = self._backup.load_identity()
        return PlayerIdentity(device_id=device_id, player_id=stored.player_id, name=stored.name)

    # --- Intents ---

    def join(self, name: str, player_id: str | None = None) -> str:
        """Join the room as `name`. Returns the player id used.

        On a peer, a previously persisted player id is reused so a rejoin
        updates the existing roster entry instead of adding a new one.
        """
        if self.is_authoritative:
            player_id = player_id or new_player_id()
            self._apply(cmd.join(player_id, name))
            return player_id

        player_id = player_id or self._identity.player_id or new_player_id()
        self._identity = PlayerIdentity(
            device_id=self._identity.device_id, player_id=player_id, name=name,
        )
        if self._backup is not None:
            self._backup.save_identity(self._identity)
        self._announce_join()
        return player_id

    def buzz(self, player_id: str | None = None) -> bool:
        """Claim the right to answer. Returns False if it went nowhere."""
        player_id = player_id or self._identity.player_id
        if player_id is None:
            logger.warning("Cannot buzz before joining")
            return False
        if self.is_authoritative:
            return self._apply(cmd.buzz(player_id))
        return self._transport.send(EnvelopeType.PLAYER_BUZZ, PlayerBuzz(player_id=player_id))

    def answer(self, option_index: int, player_id: str | None = None) -> bool:
        """Submit an answer for the current question."""
        player_id = player_id or self._identity.player_id
        if player_id is None:
            logger.warning("Cannot answer before joining")
            return False
        if self.is_authoritative:
            return self._apply(cmd.answer(player_id, option_index))
        return self._transport.send(
            EnvelopeType.PLAYER_ANSWER,
            PlayerAnswer(player_id=player_id, answer_index=option_index),
        )

    def start_game(self) -> bool:
        if not self._require_authority("start the game"):
            return False
        return self._apply(cmd.start_game())

    def advance(self) -> bool:
        """Move on to the next question (or finish)."""
        if not self._require_authority("advance"):
            return False
        return self._apply(cmd.advance())

    def reset(self) -> bool:
        if not self._require_authority("reset"):
            return False
        clear = self._strict_reset
        if clear:
            self._monitor.clear()
        self._transport.send(EnvelopeType.GAME_RESET, GameReset(clear_players=clear))
        return self._apply(cmd.reset(clear_players=clear))

    def _require_authority(self, action: str) -> bool:
        if self.is_authoritative:
            return True
        logger.warning("Only the presentation node can %s", action)
        return False

    # --- Authoritative state changes ---

    def _apply(self, command: Command) -> bool:
        """Run a command through the state machine; commit if it changed."""
        new = transition(self._snapshot, command, self._questions)
        if new is self._snapshot:
            logger.debug("%s had no effect in %s", command.command_type.name,
                         self._snapshot.phase.value)
            return False
        self._commit(new)
        return True

    def _commit(self, new: QuizSnapshot) -> None:
        previous = self._snapshot
        self._snapshot = new.stamped(self._next_timestamp())
        if self._snapshot.phase == GamePhase.RESULTS:
            if previous.phase != GamePhase.RESULTS:
                self._arm_auto_advance()
        else:
            self._cancel_auto_advance()
        logger.info(
            "State %s -> %s (question %d/%d, ts=%d)",
            previous.phase.value, self._snapshot.phase.value,
            self._snapshot.current_question_index + 1,
            self._snapshot.total_questions, self._snapshot.timestamp,
        )
        self._notify()
        self._broadcast_snapshot()

    def _publish_current(self) -> None:
        """Restamp the unchanged snapshot and broadcast it."""
        self._snapshot = self._snapshot.stamped(self._next_timestamp())
        self._notify()
        self._broadcast_snapshot()

    def _next_timestamp(self) -> int:
        return max(self._clock(), self._snapshot.timestamp + 1)

    def _broadcast_snapshot(self) -> None:
        self._transport.send(EnvelopeType.STATE_SYNC, StateSync(snapshot=self._snapshot))

    def _notify(self) -> None:
        if self._backup is not None:
            self._backup.save_snapshot(self._snapshot)
        for listener in list(self._listeners):
            listener(self._snapshot)

    # --- Auto-advance ---

    def _arm_auto_advance(self) -> None:
        self._cancel_auto_advance()
        generation = self._results_generation
        self._advance_timer = asyncio.get_running_loop().call_later(
            self._auto_advance_delay, self._auto_advance, generation,
        )

    def _cancel_auto_advance(self) -> None:
        if self._advance_timer is not None:
            self._advance_timer.cancel()
            self._advance_timer = None
        self._results_generation += 1

    def _auto_advance(self, generation: int) -> None:
        if generation != self._results_generation:
            return
        self._advance_timer = None
        if self._snapshot.phase != GamePhase.RESULTS:
            return
        logger.info("Results shown for %.1fs, advancing", self._auto_advance_delay)
        self._apply(cmd.advance())

    # --- Liveness ---

    def sweep_liveness(self) -> bool:
        """Mark players with expired heartbeats disconnected.

        Broadcasts a single snapshot, and only if a flag actually changed.
        """
        if self._monitor is None:
            return False
        connected = [p.player_id for p in self._snapshot.players if p.is_connected]
        snapshot = self._snapshot
        for player_id in self._monitor.expired(connected):
            logger.info("Player %s timed out", player_id)
            snapshot = transition(snapshot, cmd.set_connected(player_id, False), self._questions)
        if snapshot is self._snapshot:
            return False
        self._commit(snapshot)
        return True

    # --- Envelope handling ---

    def handle_envelope(self, envelope: Envelope) -> None:
        """Entry point for every envelope from another node. Never raises."""
        try:
            self._handlers[envelope.envelope_type](envelope)
        except Exception:
            logger.exception("Error handling %s from %s",
                             envelope.envelope_type.value, envelope.device_id)

    def _on_player_joined(self, envelope: Envelope) -> None:
        if not self.is_authoritative:
            return
        data: PlayerJoined = envelope.data
        if not data.player_id:
            logger.warning("PLAYER_JOINED without a player id from %s", envelope.device_id)
            return
        self._monitor.record(data.player_id, envelope.device_id)
        logger.info("Player %s (%s) joined from %s", data.name, data.player_id, envelope.device_id)
        if not self._apply(cmd.join(data.player_id, data.name)):
            # Already present and connected; the joiner still needs the state.
            self._broadcast_snapshot()

    def _on_player_buzz(self, envelope: Envelope) -> None:
        if not self.is_authoritative:
            return
        player_id = envelope.data.player_id
        self._seen(player_id, envelope.device_id)
        if not self._apply(cmd.buzz(player_id)):
            logger.debug("Ignored buzz from %s", player_id)

    def _on_player_answer(self, envelope: Envelope) -> None:
        if not self.is_authoritative:
            return
        data: PlayerAnswer = envelope.data
        self._seen(data.player_id, envelope.device_id)
        if not self._apply(cmd.answer(data.player_id, data.answer_index)):
            logger.debug("Ignored answer from %s", data.player_id)

    def _on_state_sync(self, envelope: Envelope) -> None:
        if self.is_authoritative:
            logger.warning("Ignoring snapshot from %s: this node is authoritative",
                           envelope.device_id)
            return
        incoming: QuizSnapshot = envelope.data.snapshot
        if incoming.timestamp <= self._last_accepted + self._stale_margin_ms:
            logger.debug("Dropped stale snapshot ts=%d (have %d)",
                         incoming.timestamp, self._last_accepted)
            return
        self._last_accepted = incoming.timestamp
        self._snapshot = incoming
        self._notify()

    def _on_sync_request(self, envelope: Envelope) -> None:
        if self.is_authoritative:
            logger.debug("Sync requested by %s", envelope.device_id)
            self._publish_current()

    def _on_heartbeat(self, envelope: Envelope) -> None:
        if not self.is_authoritative:
            return
        player_id = envelope.data.player_id
        self._seen(player_id, envelope.device_id)
        if not self._apply(cmd.set_connected(player_id, True)):
            return
        logger.info("Player %s is back", player_id)

    def _on_player_disconnect(self, envelope: Envelope) -> None:
        if not self.is_authoritative:
            return
        player_id = envelope.data.player_id
        self._monitor.forget(player_id)
        if self._apply(cmd.set_connected(player_id, False)):
            logger.info("Player %s left", player_id)

    def _on_server_ready(self, envelope: Envelope) -> None:
        logger.debug("Relay ready")
        # A restarted relay may have lost us; make sure the host knows we exist.
        if not self.is_authoritative and self._identity.player_id is not None:
            self._announce_join()

    def _on_game_reset(self, envelope: Envelope) -> None:
        if self.is_authoritative:
            return
        data: GameReset = envelope.data
        logger.info("Game reset by host%s", " (roster cleared)" if data.clear_players else "")
        if data.clear_players and self._identity.player_id is not None:
            self._heartbeat.stop()
            self._identity = replace(self._identity, player_id=None)
            if self._backup is not None:
                self._backup.save_identity(self._identity)

    def _seen(self, player_id: str, device_id: str) -> None:
        if self._snapshot.get_player(player_id) is not None:
            self._monitor.record(player_id, device_id)

    def _announce_join(self) -> None:
        identity = self._identity
        self._transport.send(
            EnvelopeType.PLAYER_JOINED,
            PlayerJoined(player_id=identity.player_id, name=identity.name or ""),
        )
        self._heartbeat.start(identity.player_id)
