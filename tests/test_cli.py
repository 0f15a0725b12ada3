"""Tests for the console node driver."""

from quizsync.main import dispatch, render_snapshot
from quizsync.networking.protocol import Envelope, EnvelopeType, StateSync
from quizsync.networking.transport import BroadcastTransport
from quizsync.quiz.questions import DEFAULT_QUESTIONS
from quizsync.quiz.state import GamePhase, Player, QuizSnapshot
from quizsync.sync.replicator import Replicator, Role


class TestRenderSnapshot:
    def test_waiting_room(self):
        text = render_snapshot(QuizSnapshot(players=(Player("p1", "Alice", 10),)))
        assert "[QUIZ123] waiting" in text
        assert "Alice" in text

    def test_results_marks_correct_option(self):
        q = DEFAULT_QUESTIONS[0]
        text = render_snapshot(QuizSnapshot(
            current_question=q, phase=GamePhase.RESULTS, total_questions=5,
        ))
        assert f"Q1/5: {q.text}" in text
        assert f"*{q.correct_option_index + 1}. {q.options[q.correct_option_index]}" in text

    def test_offline_player_flagged(self):
        text = render_snapshot(QuizSnapshot(players=(Player("p1", "Bob", is_connected=False),)))
        assert "Bob (offline)" in text


class TestDispatch:
    def _host(self, hub) -> Replicator:
        return Replicator(Role.AUTHORITATIVE, BroadcastTransport("h", hub=hub))

    def test_quit(self, hub):
        assert dispatch(self._host(hub), "quit") is False
        assert dispatch(self._host(hub), "") is True

    def test_host_commands(self, hub):
        host = self._host(hub)
        assert dispatch(host, "start") is True
        assert host.snapshot.phase == GamePhase.PLAYING
        dispatch(host, "next")
        assert host.snapshot.current_question_index == 1

    def test_bad_answer_argument(self, hub, capsys):
        dispatch(self._host(hub), "answer x")
        assert "Usage: answer N" in capsys.readouterr().out

    def test_unknown_command(self, hub, capsys):
        dispatch(self._host(hub), "dance")
        assert "Unknown command: dance" in capsys.readouterr().out

    async def test_status_shows_own_score(self, hub, capsys):
        peer = Replicator(Role.PEER, BroadcastTransport("p", hub=hub, sync_delay=60))
        player_id = peer.join("Alice")
        dispatch(peer, "status")
        assert "You are" not in capsys.readouterr().out

        peer.handle_envelope(Envelope(
            EnvelopeType.STATE_SYNC,
            StateSync(QuizSnapshot(players=(Player(player_id, "Alice", 20),), timestamp=5)),
            timestamp=5, device_id="host",
        ))
        dispatch(peer, "status")
        assert "You are Alice: 20 points" in capsys.readouterr().out
        await peer.stop()
