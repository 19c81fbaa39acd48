"""
Data model for exam sessions: exam definitions, questions, answers and results.
All records serialise to plain JSON-shaped dicts for the local and remote stores.
"""
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

# Review sentinel for a question the user never answered
UNANSWERED = -1


def _pick(data: Dict, *keys, default=None):
    """Return the first present key (snake_case first, then the camelCase alias)."""
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def _require(data: Dict, *keys):
    value = _pick(data, *keys)
    if value is None:
        raise KeyError(keys[0])
    return value


@dataclass(frozen=True)
class ExamDefinition:
    id: str
    name: str
    is_practice: bool
    question_count: int
    duration_minutes: int
    pass_score: float
    question_source_url: str = ""

    @classmethod
    def from_dict(cls, data: Dict) -> "ExamDefinition":
        return cls(
            id=str(_require(data, "id")),
            name=str(_pick(data, "name", default="")),
            is_practice=bool(_pick(data, "is_practice", "isPractice", default=False)),
            question_count=int(_pick(data, "question_count", "numberOfQuestions", default=0)),
            duration_minutes=int(_pick(data, "duration_minutes", "durationMinutes", default=0)),
            pass_score=float(_pick(data, "pass_score", "passScore", default=0)),
            question_source_url=str(_pick(data, "question_source_url", "questionSourceUrl", default="")),
        )


@dataclass(frozen=True)
class Question:
    id: int
    prompt: str
    options: Tuple[str, ...]
    correct_answer: int  # 1-based

    @property
    def correct_index(self) -> int:
        return self.correct_answer - 1

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "prompt": self.prompt,
            "options": list(self.options),
            "correct_answer": self.correct_answer,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "Question":
        return cls(
            id=int(data["id"]),
            prompt=str(_pick(data, "prompt", "question", default="")),
            options=tuple(str(o) for o in data.get("options") or []),
            correct_answer=int(_pick(data, "correct_answer", "correctAnswer")),
        )


@dataclass(frozen=True)
class AnswerEntry:
    question_id: int
    answer: int  # 0-based

    def to_dict(self) -> Dict:
        return {"question_id": self.question_id, "answer": self.answer}

    @classmethod
    def from_dict(cls, data: Dict) -> "AnswerEntry":
        return cls(
            question_id=int(_pick(data, "question_id", "questionId")),
            answer=int(data["answer"]),
        )


@dataclass(frozen=True)
class ReviewItem:
    question_id: int
    prompt: str
    options: Tuple[str, ...]
    user_answer: int  # 0-based, UNANSWERED if skipped
    correct_answer: int  # 0-based

    def to_dict(self) -> Dict:
        return {
            "question_id": self.question_id,
            "prompt": self.prompt,
            "options": list(self.options),
            "user_answer": self.user_answer,
            "correct_answer": self.correct_answer,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "ReviewItem":
        return cls(
            question_id=int(_pick(data, "question_id", "questionId")),
            prompt=str(_pick(data, "prompt", "question", default="")),
            options=tuple(data.get("options") or []),
            user_answer=int(_pick(data, "user_answer", "userAnswer", default=UNANSWERED)),
            correct_answer=int(_pick(data, "correct_answer", "correctAnswer")),
        )


@dataclass(frozen=True)
class TestResult:
    test_id: str
    user_id: str
    exam_id: str
    answers: Tuple[AnswerEntry, ...]
    score: float
    correct_count: int
    total_questions: int
    timestamp: int  # epoch milliseconds
    review: Tuple[ReviewItem, ...]
    proctoring_violations: int = 0

    __test__ = False  # not a pytest test class

    def to_dict(self) -> Dict:
        return {
            "test_id": self.test_id,
            "user_id": self.user_id,
            "exam_id": self.exam_id,
            "answers": [a.to_dict() for a in self.answers],
            "score": self.score,
            "correct_count": self.correct_count,
            "total_questions": self.total_questions,
            "timestamp": self.timestamp,
            "review": [r.to_dict() for r in self.review],
            "proctoring_violations": self.proctoring_violations,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "TestResult":
        return cls(
            test_id=str(_require(data, "test_id", "testId")),
            user_id=str(_require(data, "user_id", "userId")),
            exam_id=str(_require(data, "exam_id", "examId")),
            answers=tuple(AnswerEntry.from_dict(a) for a in data.get("answers") or []),
            score=float(data.get("score", 0)),
            correct_count=int(_pick(data, "correct_count", "correctCount", default=0)),
            total_questions=int(_pick(data, "total_questions", "totalQuestions", default=0)),
            timestamp=int(data.get("timestamp", 0)),
            review=tuple(ReviewItem.from_dict(r) for r in data.get("review") or []),
            proctoring_violations=int(_pick(data, "proctoring_violations", "proctoringViolations", default=0)),
        )


@dataclass
class UserContext:
    """Authenticated user as handed over by the auth collaborator."""

    user_id: str
    name: str = ""
    token: Optional[str] = None
    is_subscribed: bool = False
    consume_free_attempt: Callable[[], None] = field(default=lambda: None, repr=False)


@dataclass
class SessionProgress:
    """Resumable snapshot of an in-flight session."""

    questions: List[Question]
    answers: List[AnswerEntry]
    current_index: int = 0
    violations: int = 0
    # Result whose local commit failed; retried as-is after a restart
    pending_result: Optional[TestResult] = None

    def to_dict(self) -> Dict:
        return {
            "questions": [q.to_dict() for q in self.questions],
            "answers": [a.to_dict() for a in self.answers],
            "current_index": self.current_index,
            "violations": self.violations,
            "pending_result": self.pending_result.to_dict() if self.pending_result else None,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "SessionProgress":
        pending = data.get("pending_result")
        return cls(
            questions=[Question.from_dict(q) for q in data.get("questions") or []],
            answers=[AnswerEntry.from_dict(a) for a in data.get("answers") or []],
            current_index=int(_pick(data, "current_index", "currentQuestionIndex", default=0)),
            violations=int(data.get("violations") or 0),
            pending_result=TestResult.from_dict(pending) if pending else None,
        )


def load_catalog(path: Path) -> List[ExamDefinition]:
    """Read a JSON list of exam definitions (e.g. an exported tenant catalog)."""
    with Path(path).open("r", encoding="utf-8") as f:
        raw = json.load(f)
    if isinstance(raw, dict):
        raw = raw.get("exams") or []
    exams = [ExamDefinition.from_dict(item) for item in raw]
    logger.info("Loaded %d exam definitions from %s", len(exams), path)
    return exams
