"""Answer scoring.

Pure functions over an exam definition and the raw answers a client sent.
Raw answers are keyed by question position and resolved against the
question's declared type before being judged:

- mcq / true_false: an option index, or a list of indexes for multi-select
- fib / essay: free text

Anything blank (None, "", whitespace, []) is unanswered and never penalised.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Iterable, Mapping, Union

from cbt.models.exam import Exam, Question, QuestionType


@dataclass(frozen=True)
class McqSingle:
    index: int


@dataclass(frozen=True)
class McqMulti:
    indices: tuple[int, ...]


@dataclass(frozen=True)
class Text:
    value: str


@dataclass(frozen=True)
class Empty:
    pass


Answer = Union[McqSingle, McqMulti, Text, Empty]

CORRECT = "correct"
WRONG = "wrong"
UNANSWERED = "unanswered"


@dataclass(frozen=True)
class QuestionOutcome:
    index: int
    result: str
    marks_awarded: float


@dataclass(frozen=True)
class ScoreResult:
    total_score: float
    correct_count: int
    wrong_count: int
    total_possible_marks: float
    percentage: float
    breakdown: tuple[QuestionOutcome, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["breakdown"] = [asdict(outcome) for outcome in self.breakdown]
        return data


def _is_index(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _as_index(value: Any) -> int | None:
    if _is_index(value):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _as_text(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return ",".join(str(v) for v in value)
    return str(value)


def is_blank(raw: Any) -> bool:
    if raw is None:
        return True
    if isinstance(raw, str):
        return not raw.strip()
    if isinstance(raw, (list, tuple)):
        return len(raw) == 0
    return False


def resolve_answer(question: Question, raw: Any) -> Answer:
    """Turn a raw client value into a typed answer for `question`."""
    if is_blank(raw):
        return Empty()

    if question.type in (QuestionType.FIB.value, QuestionType.ESSAY.value):
        return Text(_as_text(raw))

    if isinstance(raw, (list, tuple)):
        indices = [_as_index(v) for v in raw]
        if any(i is None for i in indices):
            return Text(_as_text(raw))
        return McqMulti(tuple(indices))

    index = _as_index(raw)
    if index is None:
        return Text(_as_text(raw))
    return McqSingle(index)


def correct_index_set(question: Question) -> frozenset[int]:
    return frozenset(question.correct_options or [])


def is_correct(question: Question, answer: Answer) -> bool:
    if isinstance(answer, Empty):
        return False

    qtype = question.type
    if qtype == QuestionType.FIB.value:
        expected = (question.correct_answer or "").strip().lower()
        return isinstance(answer, Text) and bool(expected) and answer.value.strip().lower() == expected

    if qtype == QuestionType.ESSAY.value:
        # Provisional credit; the teacher corrects it through manual grading
        return isinstance(answer, Text) and bool(answer.value.strip())

    # mcq, true_false and untyped legacy questions
    correct = correct_index_set(question)
    if isinstance(answer, McqMulti):
        # A repeated index never stands in for a missing one
        if len(set(answer.indices)) != len(answer.indices):
            return False
        return len(answer.indices) == len(correct) and all(i in correct for i in answer.indices)
    if isinstance(answer, McqSingle):
        return answer.index in correct
    return False


def _lookup(answers: Mapping[Any, Any], index: int) -> Any:
    if str(index) in answers:
        return answers[str(index)]
    return answers.get(index)


def score_answers(
    questions: Iterable[Question],
    answers: Mapping[Any, Any] | None,
    negative_marking: float = 0,
) -> ScoreResult:
    answers = answers or {}
    penalty = float(negative_marking or 0)

    total_score = 0.0
    total_possible = 0.0
    correct_count = 0
    wrong_count = 0
    breakdown: list[QuestionOutcome] = []

    for index, question in enumerate(questions):
        q_marks = float(question.marks or 1)
        total_possible += q_marks

        answer = resolve_answer(question, _lookup(answers, index))
        if is_correct(question, answer):
            total_score += q_marks
            correct_count += 1
            breakdown.append(QuestionOutcome(index, CORRECT, q_marks))
        elif not isinstance(answer, Empty):
            total_score -= penalty
            wrong_count += 1
            breakdown.append(QuestionOutcome(index, WRONG, -penalty))
        else:
            breakdown.append(QuestionOutcome(index, UNANSWERED, 0.0))

    total_score = max(0.0, total_score)
    percentage = (total_score / total_possible) * 100 if total_possible > 0 else 0.0

    return ScoreResult(
        total_score=total_score,
        correct_count=correct_count,
        wrong_count=wrong_count,
        total_possible_marks=total_possible,
        percentage=percentage,
        breakdown=tuple(breakdown),
    )


def score_submission(exam: Exam, answers: Mapping[Any, Any] | None) -> ScoreResult:
    """Score `answers` against every question of `exam`, in question order."""
    return score_answers(exam.questions, answers, exam.negative_marking)


def apply_manual_grades(
    current_score: float,
    manual_grades: Mapping[str, float],
    grades: Iterable[tuple[int, float]],
    total_marks: float,
) -> tuple[float, float, dict[str, float]]:
    """Fold teacher-awarded marks into an existing score by delta.

    Re-sending the same marks for a question is a no-op. Returns
    (score, percentage, merged manual grades).
    """
    merged = dict(manual_grades or {})
    adjustment = 0.0
    for question_index, marks_earned in grades:
        key = str(question_index)
        previous = float(merged.get(key) or 0)
        merged[key] = marks_earned
        adjustment += marks_earned - previous

    score = max(0.0, float(current_score or 0) + adjustment)
    percentage = score / (total_marks or 1) * 100
    return score, percentage, merged
