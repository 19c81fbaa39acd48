"""
Exam session: the player that ties the governor, loader, clock, ledger, navigation
and submission pipeline together for one user taking one exam.

Lifecycle: ready -> active -> submitting -> submitted
A failed local commit leaves the session in commit_failed; submitting again retries it.
A session closed before submitting keeps its deadline and progress for a later resume.
"""
import json
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional
from uuid import uuid4

from . import events
from .clock import SessionClock, TickHandle
from .errors import (
    ClockPersistenceMissing,
    ExamSessionError,
    LocalPersistenceFailure,
    MissingContext,
    SessionStateError,
    StorageError,
)
from .events import Notifier
from .governor import AttemptGovernor, Decision
from .ledger import AnswerLedger
from .loader import QuestionLoader
from .models import ExamDefinition, Question, SessionProgress, TestResult, UserContext
from .navigation import NavigationController
from .storage import progress_key, timer_key
from .submission import SubmissionPipeline

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    READY = "ready"
    ACTIVE = "active"
    SUBMITTING = "submitting"
    SUBMITTED = "submitted"
    COMMIT_FAILED = "commit_failed"
    CLOSED = "closed"


@dataclass(frozen=True)
class LoadedSession:
    questions: List[Question]
    initial_seconds_remaining: int
    resumed: bool
    source: str


class ExamSession:
    """Manages a single timed exam session for one user."""

    MAX_FOCUS_VIOLATIONS = 3

    def __init__(
        self,
        exam: ExamDefinition,
        user: Optional[UserContext],
        store,
        loader: QuestionLoader,
        pipeline: SubmissionPipeline,
        clock: SessionClock,
        governor: Optional[AttemptGovernor] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.session_id = uuid4()
        self.exam = exam
        self.user = user
        self.store = store
        self.loader = loader
        self.pipeline = pipeline
        self.clock = clock
        self.governor = governor or AttemptGovernor()
        self.notifier = notifier or pipeline.notifier

        self.questions: List[Question] = []
        self.ledger = AnswerLedger([])
        self.nav = NavigationController(0)
        self.status = SessionState.READY
        self.violations = 0
        self.result: Optional[TestResult] = None

        self._pending_result: Optional[TestResult] = None
        self._handle: Optional[TickHandle] = None
        self._lock = threading.RLock()

    # ============= Keys & context =============

    @property
    def timer_key(self) -> str:
        return timer_key(self.exam.id, self.user.user_id)

    @property
    def progress_key(self) -> str:
        return progress_key(self.exam.id, self.user.user_id)

    def _require_context(self, need_questions: bool = True) -> None:
        if self.user is None or not self.user.user_id:
            raise MissingContext("Cannot continue: no signed-in user.")
        if self.exam is None or not self.exam.id:
            raise MissingContext("Cannot continue: exam is missing.")
        if self.pipeline.remote is not None and not self.user.token:
            raise MissingContext("Cannot continue: your sign-in credential is missing.")
        if need_questions and not self.questions:
            raise MissingContext("Cannot continue: this exam has no questions loaded.")

    # ============= Start =============

    def can_start(self, history: Optional[List[TestResult]] = None) -> Decision:
        self._require_context(need_questions=False)
        if history is None:
            history = self.pipeline.results.list_for_user(self.user.user_id)
        return self.governor.can_start(self.exam, history, self.user.is_subscribed)

    def load_session(self, history: Optional[List[TestResult]] = None) -> LoadedSession:
        """
        Start or resume the session and start the clock.

        A saved progress snapshot is resumed as-is (no new attempt is counted);
        otherwise the governor is enforced and a fresh question set is loaded.

        Raises:
            MissingContext: no user/exam, or no questions could be loaded at all
            DeniedByGovernor: the attempt quota forbids a new session
        """
        with self._lock:
            self._require_context(need_questions=False)
            if self.status != SessionState.READY:
                raise SessionStateError(f"Session already {self.status.value}")

            progress = self._read_progress()
            if progress is not None and progress.questions:
                questions, resumed, source = progress.questions, True, "resumed"
                logger.info(f"Resuming session for {self.exam.id} at question {progress.current_index + 1}")
            else:
                if history is None:
                    history = self.pipeline.results.list_for_user(self.user.user_id)
                self.governor.enforce(self.exam, history, self.user)
                self._clear_progress()
                questions, resumed = self.loader.load(self.exam), False
                source = self.loader.last_source or "remote"
                if source == "fallback" and questions:
                    self.notifier.emit(events.WARNING, "The exam's question sheet could not be loaded; using the built-in question pool.")

            if not questions:
                raise MissingContext("No questions available for this exam.")

            self.questions = list(questions)
            self.ledger = AnswerLedger(self.questions)
            self.nav = NavigationController(len(self.questions))
            self.status = SessionState.ACTIVE
            if resumed:
                self.ledger.restore(progress.answers)
                self.nav = NavigationController(len(self.questions), progress.current_index)
                self.violations = progress.violations
                self._resume_deadline()
                if progress.pending_result is not None:
                    self._pending_result = progress.pending_result
                    self.ledger.lock()
                    self.status = SessionState.COMMIT_FAILED
            self._handle = self.clock.start(
                self.timer_key, self.exam.duration_minutes, on_tick=self._on_tick, on_expire=self._on_expire
            )
            self._save_progress()
            logger.info(f"Session {self.session_id}: {len(self.questions)} questions, {self._handle.remaining}s on the clock")
            return LoadedSession(self.questions, self._handle.remaining, resumed, source)

    # ============= Clock =============

    def _resume_deadline(self) -> None:
        # A saved snapshot without a deadline means the deadline was already spent
        try:
            deadline = self.clock.read_deadline(self.timer_key)
        except ClockPersistenceMissing as e:
            logger.warning(f"{e}; the clock will hold its deadline in memory")
            return
        if deadline is None:
            logger.warning(f"Resumed {self.exam.id} has no stored deadline; treating it as expired")
            self.clock.restore_deadline(self.timer_key, self.clock.now_ms())

    def _on_tick(self, remaining: int) -> None:
        self.notifier.emit(events.TICK, remaining)

    def _on_expire(self) -> None:
        # Runs on the ticker thread; reads ledger/questions through self at expiry time
        self.notifier.emit(events.EXPIRED, None)
        try:
            self.submit(auto=True)
        except ExamSessionError as e:
            logger.error(f"Auto-submit after expiry failed: {e}")
            self.notifier.emit(events.WARNING, e.message)

    def tick(self) -> int:
        if self._handle is None:
            raise SessionStateError("Session clock has not been started")
        return self._handle.tick()

    @property
    def seconds_remaining(self) -> Optional[int]:
        return self._handle.remaining if self._handle else None

    # ============= Answering & navigation =============

    @property
    def current_index(self) -> int:
        return self.nav.index

    @property
    def current_question(self) -> Optional[Question]:
        if not self.questions:
            return None
        return self.questions[self.nav.index]

    def select_answer(self, question_id: int, option: int) -> None:
        with self._lock:
            self.ledger.select(question_id, option)
            self._save_progress()

    def select_and_advance(self, question_id: int, option: int) -> int:
        with self._lock:
            index = self.nav.select_and_advance(self.ledger, question_id, option)
            self._save_progress()
            return index

    def next(self) -> int:
        with self._lock:
            index = self.nav.next()
            self._save_progress()
            return index

    def previous(self) -> int:
        with self._lock:
            index = self.nav.previous()
            self._save_progress()
            return index

    def jump_to(self, index: int) -> int:
        with self._lock:
            index = self.nav.jump_to(index)
            self._save_progress()
            return index

    # ============= Proctoring =============

    def report_focus_violation(self, reason: str) -> int:
        """Count a focus loss (tab switch, leaving fullscreen). The last allowed one ends the exam."""
        with self._lock:
            if self.status != SessionState.ACTIVE:
                return self.violations
            self.violations += 1
            count = self.violations
            if count >= self.MAX_FOCUS_VIOLATIONS:
                message = f"Violation {count}/{self.MAX_FOCUS_VIOLATIONS}: exam terminated for {reason}."
                self.notifier.emit(events.VIOLATION, {"count": count, "reason": reason, "terminated": True, "message": message})
                self.submit(auto=True)
            else:
                message = f"Warning {count}/{self.MAX_FOCUS_VIOLATIONS}: {reason} is a violation. Return to the exam immediately."
                self.notifier.emit(events.VIOLATION, {"count": count, "reason": reason, "terminated": False, "message": message})
                self._save_progress()
            return count

    # ============= Submit =============

    def submit(self, auto: bool = False) -> TestResult:
        """
        Score and commit the session exactly once.

        A repeated call after success returns the committed result. After a local
        commit failure the same result (same test_id) is committed again.

        Raises:
            SubmissionDeclined: manual submit with unanswered questions not confirmed
            LocalPersistenceFailure: result could not be stored; session stays submittable
            MissingContext: user/credential/questions missing; the session is closed
        """
        with self._lock:
            if self.status == SessionState.SUBMITTED:
                return self.result
            if self.status not in (SessionState.ACTIVE, SessionState.COMMIT_FAILED):
                raise SessionStateError(f"Cannot submit a session that is {self.status.value}")
            try:
                self._require_context()
            except MissingContext:
                self.close()
                raise
            if self.status == SessionState.ACTIVE and not auto:
                self.pipeline.confirm_submission(self.ledger.unanswered_count)

            self.status = SessionState.SUBMITTING
            if self._handle is not None:
                self._handle.stop()
            self.ledger.lock()
            try:
                if self._pending_result is None:
                    self._pending_result = self.pipeline.build_result(
                        self.ledger, self.questions, self.exam, self.user, self.violations
                    )
                result = self.pipeline.submit(
                    self.ledger, self.questions, self.exam, self.user,
                    auto=auto, violations=self.violations, result=self._pending_result,
                )
            except LocalPersistenceFailure as e:
                self.status = SessionState.COMMIT_FAILED
                if self._handle is not None:
                    # Expiry already dropped the stored deadline; a restart must see it as spent
                    self.clock.restore_deadline(self.timer_key, self._handle.deadline_ms)
                self._save_progress()
                logger.error(f"Session {self.session_id}: local commit failed: {e}")
                self.notifier.emit(events.WARNING, e.message)
                raise

            self.result = result
            self._pending_result = None
            self.status = SessionState.SUBMITTED
            self.clock.stop(self.timer_key)
            self.clock.clear(self.timer_key)
            self._clear_progress()
            return result

    def close(self) -> None:
        """Leave the session: stop ticking, keep the deadline and progress for a resume."""
        with self._lock:
            if self._handle is not None:
                self._handle.stop()
                if self.clock.handle_for(self.timer_key) is self._handle:
                    self.clock.stop(self.timer_key)
            if self.status in (SessionState.READY, SessionState.ACTIVE):
                self.status = SessionState.CLOSED

    # ============= Progress =============

    def _save_progress(self) -> None:
        if self.status not in (SessionState.ACTIVE, SessionState.COMMIT_FAILED):
            return
        progress = SessionProgress(
            self.questions, self.ledger.entries(), self.nav.index, self.violations, self._pending_result
        )
        try:
            self.store.set(self.progress_key, json.dumps(progress.to_dict()))
        except StorageError as e:
            logger.warning(f"Could not save progress: {e}")

    def _read_progress(self) -> Optional[SessionProgress]:
        try:
            raw = self.store.get(self.progress_key)
            if not raw:
                return None
            return SessionProgress.from_dict(json.loads(raw))
        except (StorageError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring unreadable saved progress: {e}")
            return None

    def _clear_progress(self) -> None:
        try:
            self.store.remove(self.progress_key)
        except StorageError as e:
            logger.warning(f"Could not clear saved progress: {e}")

    def get_session_summary(self) -> Dict:
        """Real-time summary for display during the exam."""
        return {
            "session_id": str(self.session_id),
            "exam_id": self.exam.id,
            "status": self.status.value,
            "current_question": self.nav.index + 1,
            "total_questions": len(self.questions),
            "questions_answered": len(self.ledger),
            "questions_unanswered": self.ledger.unanswered_count,
            "time_remaining_sec": self.seconds_remaining,
            "violations": self.violations,
        }
