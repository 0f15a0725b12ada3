"""Tests for quiz snapshot types."""

import pytest

from quizsync.config import DEFAULT_ROOM_CODE
from quizsync.quiz.state import GamePhase, Player, QuizSnapshot, initial_snapshot


class TestInitialSnapshot:
    def test_defaults(self):
        s = initial_snapshot(5)
        assert s.phase == GamePhase.WAITING
        assert s.players == ()
        assert s.current_question is None
        assert s.current_question_index == 0
        assert s.active_player is None
        assert s.total_questions == 5
        assert s.room_code == DEFAULT_ROOM_CODE
        assert s.timestamp == 0

    def test_custom_room_code(self):
        assert initial_snapshot(1, room_code="ABC").room_code == "ABC"


class TestQuizSnapshot:
    def test_immutable(self):
        s = QuizSnapshot()
        with pytest.raises(AttributeError):
            s.phase = GamePhase.PLAYING  # type: ignore

    def test_get_player(self):
        s = QuizSnapshot(players=(Player("a", "Alice"), Player("b", "Bob")))
        assert s.get_player("b").name == "Bob"
        assert s.get_player("c") is None

    def test_with_player_replaces_in_place(self):
        s = QuizSnapshot(players=(Player("a", "Alice"), Player("b", "Bob")))
        s2 = s.with_player(Player("a", "Alice", score=10))
        assert [p.player_id for p in s2.players] == ["a", "b"]
        assert s2.get_player("a").score == 10
        assert s.get_player("a").score == 0

    def test_stamped(self):
        s = QuizSnapshot()
        assert s.stamped(42).timestamp == 42
        assert s.timestamp == 0

    def test_leaderboard_sorted_by_score(self):
        s = QuizSnapshot(players=(
            Player("a", "Alice", score=10),
            Player("b", "Bob", score=30),
            Player("c", "Carol", score=10),
        ))
        assert [p.player_id for p in s.leaderboard()] == ["b", "a", "c"]

    def test_equal_snapshots_compare_equal(self):
        assert QuizSnapshot(timestamp=5) == QuizSnapshot(timestamp=5)
