"""Question sets.

A room plays one static, ordered sequence of questions. The built-in set is
used unless the host passes a JSON file:

    [
      {"id": "1", "text": "...", "options": ["a", "b", "c", "d"],
       "correctOptionIndex": 1},
      ...
    ]
"""

from __future__ import annotations

import json
from pathlib import Path

from quizsync.quiz.state import Question

OPTIONS_PER_QUESTION = 4

DEFAULT_QUESTIONS: tuple[Question, ...] = (
    Question(
        question_id="1",
        text="What is FOTOPOP?",
        options=(
            "A social network",
            "A premium photo booth company",
            "A photo editing app",
            "A camera store",
        ),
        correct_option_index=1,
    ),
    Question(
        question_id="2",
        text="What kind of events does FOTOPOP serve?",
        options=(
            "Only weddings",
            "Corporate and luxury events",
            "Children's parties",
            "Only birthdays",
        ),
        correct_option_index=1,
    ),
    Question(
        question_id="3",
        text="What sets FOTOPOP photo booths apart?",
        options=(
            "They are the cheapest",
            "Premium technology and interactive experiences",
            "Black and white only",
            "No printing",
        ),
        correct_option_index=1,
    ),
    Question(
        question_id="4",
        text="Besides classic photo booths, what else does FOTOPOP offer?",
        options=(
            "Only photos",
            "Glambot and custom experiences",
            "Only videos",
            "Only selfies",
        ),
        correct_option_index=1,
    ),
    Question(
        question_id="5",
        text="How many happy clients has FOTOPOP served?",
        options=(
            "Fewer than 100",
            "More than 970",
            "Exactly 500",
            "Not disclosed",
        ),
        correct_option_index=1,
    ),
)


def question_from_dict(raw: dict) -> Question:
    """Build a Question from its wire/JSON form.

    Raises ValueError if a field is missing or out of range.
    """
    try:
        question_id = str(raw["id"])
        text = str(raw["text"])
        options = tuple(str(option) for option in raw["options"])
        correct = raw["correctOptionIndex"]
    except (KeyError, TypeError) as e:
        raise ValueError(f"Invalid question: {e}") from e
    if len(options) != OPTIONS_PER_QUESTION:
        raise ValueError(
            f"Question {question_id} has {len(options)} options, "
            f"expected {OPTIONS_PER_QUESTION}"
        )
    if not isinstance(correct, int) or isinstance(correct, bool) \
            or not 0 <= correct < len(options):
        raise ValueError(f"Question {question_id} has invalid correctOptionIndex")
    return Question(
        question_id=question_id,
        text=text,
        options=options,
        correct_option_index=correct,
    )


def question_to_dict(question: Question) -> dict:
    return {
        "id": question.question_id,
        "text": question.text,
        "options": list(question.options),
        "correctOptionIndex": question.correct_option_index,
    }


def load_questions(path: str | Path) -> tuple[Question, ...]:
    """Load an ordered question sequence from a JSON file.

    Raises ValueError on malformed content and OSError if unreadable.
    """
    text = Path(path).read_text(encoding="utf-8")
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValueError(f"{path}: not valid JSON ({e})") from e
    if not isinstance(raw, list):
        raise ValueError(f"{path}: expected a list of questions")
    return tuple(question_from_dict(item) for item in raw)
