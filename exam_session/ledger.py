"""Answer Ledger: question id -> selected option (0-based). One entry per question."""
import logging
from typing import Dict, Iterable, List, Optional

from .errors import LedgerLocked
from .models import AnswerEntry, Question

logger = logging.getLogger(__name__)


class AnswerLedger:
    def __init__(self, questions: Iterable[Question]):
        self._questions: Dict[int, Question] = {q.id: q for q in questions}
        self._answers: Dict[int, int] = {}
        self.locked = False

    def select(self, question_id: int, option: int) -> None:
        """Record (or overwrite) the user's choice for one question."""
        if self.locked:
            raise LedgerLocked("Answers can no longer be changed for this exam.")
        question = self._questions.get(question_id)
        if question is None:
            raise KeyError(f"Question {question_id} is not part of this exam")
        if not 0 <= option < len(question.options):
            raise ValueError(f"Option {option} out of range for question {question_id}")
        self._answers[question_id] = option

    def get(self, question_id: int) -> Optional[int]:
        return self._answers.get(question_id)

    def __contains__(self, question_id: int) -> bool:
        return question_id in self._answers

    def __len__(self) -> int:
        return len(self._answers)

    def entries(self) -> List[AnswerEntry]:
        return [AnswerEntry(question_id=qid, answer=ans) for qid, ans in self._answers.items()]

    @property
    def unanswered_count(self) -> int:
        return len(self._questions) - len(self._answers)

    def restore(self, entries: Iterable[AnswerEntry]) -> None:
        """Reload saved answers, dropping any that no longer match the question set."""
        for entry in entries:
            try:
                self.select(entry.question_id, entry.answer)
            except (KeyError, ValueError) as e:
                logger.warning(f"Dropping saved answer: {e}")

    def lock(self) -> None:
        self.locked = True
