"""Shared test fixtures for QuizSync."""

from __future__ import annotations

import pytest

from quizsync.networking.channels import BroadcastHub
from quizsync.quiz.questions import DEFAULT_QUESTIONS
from quizsync.quiz.state import QuizSnapshot, initial_snapshot
from quizsync.sync.backup import LocalBackup


@pytest.fixture
def hub() -> BroadcastHub:
    """A private broadcast hub so tests never share channels."""
    return BroadcastHub()


@pytest.fixture
def questions():
    return DEFAULT_QUESTIONS


@pytest.fixture
def waiting_snapshot() -> QuizSnapshot:
    """A fresh `waiting` snapshot sized for the default questions."""
    return initial_snapshot(len(DEFAULT_QUESTIONS))


@pytest.fixture
def backup(tmp_path) -> LocalBackup:
    return LocalBackup(tmp_path / "state")
