"""
Scoring & Submission Pipeline.

Order on submit:
    1. build the TestResult (score + per-question review)
    2. commit it to local storage, synchronously; failure is raised
    3. mirror it to the remote store on a detached thread; failure only notifies
"""
import logging
import threading
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Dict, Iterable, List, Optional
from uuid import uuid4

from . import events
from .clock import wall_clock_ms
from .errors import RemotePersistenceFailure, SubmissionDeclined
from .events import Notifier
from .ledger import AnswerLedger
from .models import UNANSWERED, AnswerEntry, ExamDefinition, Question, ReviewItem, TestResult, UserContext
from .storage import ResultRepository

logger = logging.getLogger(__name__)

TWO_PLACES = Decimal("0.01")


@dataclass(frozen=True)
class Score:
    correct_count: int
    total_questions: int
    score: float


def score_answers(questions: List[Question], answers: Iterable[AnswerEntry]) -> Score:
    """
    Percentage of questions whose selected option is the correct one.

    Rounded half-up to 2 decimals; 0 for an empty question set.
    """
    chosen: Dict[int, int] = {a.question_id: a.answer for a in answers}
    correct = sum(1 for q in questions if chosen.get(q.id) == q.correct_index)
    total = len(questions)
    if total == 0:
        return Score(correct, 0, 0.0)
    pct = (Decimal(100) * correct / total).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)
    return Score(correct, total, float(pct))


def build_review(questions: List[Question], answers: Iterable[AnswerEntry]) -> List[ReviewItem]:
    chosen: Dict[int, int] = {a.question_id: a.answer for a in answers}
    return [
        ReviewItem(
            question_id=q.id,
            prompt=q.prompt,
            options=q.options,
            user_answer=chosen.get(q.id, UNANSWERED),
            correct_answer=q.correct_index,
        )
        for q in questions
    ]


def new_test_id(user_id: str, exam_id: str, now_ms: int) -> str:
    return f"test_{user_id}_{exam_id}_{now_ms}_{uuid4().hex[:8]}"


class SubmissionPipeline:
    """Scores a finished session, commits it locally, then mirrors it remotely."""

    def __init__(
        self,
        results: ResultRepository,
        remote=None,
        notifier: Optional[Notifier] = None,
        confirm: Optional[Callable[[int], bool]] = None,
        now_ms: Optional[Callable[[], int]] = None,
    ):
        self.results = results
        self.remote = remote
        self.notifier = notifier or Notifier()
        self.confirm = confirm
        self.now_ms = now_ms or wall_clock_ms
        self.last_sync: Optional[threading.Thread] = None

    def confirm_submission(self, unanswered: int) -> None:
        """Ask before submitting with unanswered questions. Raises SubmissionDeclined."""
        if unanswered <= 0:
            return
        if self.confirm is None or not self.confirm(unanswered):
            raise SubmissionDeclined(f"Submission cancelled: {unanswered} question(s) still unanswered.")

    def build_result(self, ledger: AnswerLedger, questions: List[Question], exam: ExamDefinition,
                     user: UserContext, violations: int = 0) -> TestResult:
        answers = ledger.entries()
        score = score_answers(questions, answers)
        now = self.now_ms()
        return TestResult(
            test_id=new_test_id(user.user_id, exam.id, now),
            user_id=user.user_id,
            exam_id=exam.id,
            answers=tuple(answers),
            score=score.score,
            correct_count=score.correct_count,
            total_questions=score.total_questions,
            timestamp=now,
            review=tuple(build_review(questions, answers)),
            proctoring_violations=violations,
        )

    def submit(
        self,
        ledger: AnswerLedger,
        questions: List[Question],
        exam: ExamDefinition,
        user: UserContext,
        auto: bool = False,
        violations: int = 0,
        result: Optional[TestResult] = None,
    ) -> TestResult:
        """
        Finalise a session.

        Args:
            auto: expiry/termination submit; skips the unanswered-questions confirmation
            result: previously built result to commit again (retry after a local failure)

        Returns:
            The committed TestResult (local copy confirmed; remote mirror may still be running)

        Raises:
            SubmissionDeclined: manual submit with unanswered questions was not confirmed
            LocalPersistenceFailure: the result could not be stored locally
        """
        if not auto and result is None:
            self.confirm_submission(len(questions) - len(ledger))
        if result is None:
            result = self.build_result(ledger, questions, exam, user, violations)
        self.results.save(result)
        logger.info(
            f"Result {result.test_id}: {result.correct_count}/{result.total_questions} = {result.score}% "
            f"(auto={auto})"
        )
        self.notifier.emit(events.SUBMITTED, result)
        self.last_sync = self._dispatch_remote(result, user.token)
        return result

    def _dispatch_remote(self, result: TestResult, token: Optional[str]) -> Optional[threading.Thread]:
        if self.remote is None:
            return None
        thread = threading.Thread(target=self._mirror, args=(result, token), name=f"sync-{result.test_id}", daemon=True)
        thread.start()
        return thread

    def _mirror(self, result: TestResult, token: Optional[str]) -> None:
        try:
            self.remote.submit_result(result, token)
        except RemotePersistenceFailure as e:
            logger.warning(f"Remote sync of {result.test_id} failed: {e}")
            self.notifier.emit(events.SYNC_FAILED, {"result": result, "error": e})
            return
        except Exception as e:
            logger.exception(f"Remote sync of {result.test_id} failed unexpectedly")
            self.notifier.emit(events.SYNC_FAILED, {"result": result, "error": RemotePersistenceFailure(str(e))})
            return
        self.notifier.emit(events.SYNCED, result)
