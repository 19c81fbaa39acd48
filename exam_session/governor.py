"""
Attempt Governor: decides whether a user may start a new session for an exam.

Practice exams: free-tier users get a fixed quota of attempts across all practice exams.
Certification exams: no retake after a pass, and at most 3 attempts.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional

from .errors import DeniedByGovernor
from .models import ExamDefinition, TestResult, UserContext

logger = logging.getLogger(__name__)


class DenialReason(str, Enum):
    ALREADY_PASSED = "AlreadyPassed"
    ATTEMPTS_EXHAUSTED = "AttemptsExhausted"
    PRACTICE_QUOTA_EXHAUSTED = "PracticeQuotaExhausted"


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: Optional[DenialReason] = None
    message: str = ""

    @classmethod
    def allow(cls) -> "Decision":
        return cls(True)

    @classmethod
    def deny(cls, reason: DenialReason, message: str) -> "Decision":
        return cls(False, reason, message)


class AttemptGovernor:
    """Enforces per-category attempt and pass quotas before a session starts."""

    PRACTICE_FREE_ATTEMPTS = 10
    CERTIFICATION_MAX_ATTEMPTS = 3

    def __init__(self, catalog: Iterable[ExamDefinition] = ()):
        self.practice_exam_ids = {e.id for e in catalog if e.is_practice}

    def can_start(self, exam: ExamDefinition, history: List[TestResult], is_subscribed: bool = False) -> Decision:
        """
        Evaluate the quotas for one exam against the user's result history.

        Args:
            exam: Exam the user wants to start
            history: All of the user's previous results (any exam)
            is_subscribed: Subscribed users are exempt from the practice quota

        Returns:
            Decision.allow() or Decision.deny(reason, message)
        """
        if exam.is_practice:
            if is_subscribed:
                return Decision.allow()
            practice_ids = self.practice_exam_ids | {exam.id}
            used = sum(1 for r in history if r.exam_id in practice_ids)
            if used >= self.PRACTICE_FREE_ATTEMPTS:
                return Decision.deny(
                    DenialReason.PRACTICE_QUOTA_EXHAUSTED,
                    f"You have used all {self.PRACTICE_FREE_ATTEMPTS} free practice attempts.",
                )
            return Decision.allow()

        prior = [r for r in history if r.exam_id == exam.id]
        if any(r.score >= exam.pass_score for r in prior):
            return Decision.deny(DenialReason.ALREADY_PASSED, "You have already passed this exam.")
        if len(prior) >= self.CERTIFICATION_MAX_ATTEMPTS:
            return Decision.deny(
                DenialReason.ATTEMPTS_EXHAUSTED,
                f"You have used all {self.CERTIFICATION_MAX_ATTEMPTS} attempts for this exam.",
            )
        return Decision.allow()

    def enforce(self, exam: ExamDefinition, history: List[TestResult], user: UserContext) -> Decision:
        """Raise DeniedByGovernor on denial; consume a free attempt for allowed practice runs."""
        decision = self.can_start(exam, history, user.is_subscribed)
        if not decision.allowed:
            logger.info(f"Start of {exam.id} denied for user {user.user_id}: {decision.reason.value}")
            raise DeniedByGovernor(decision.reason, decision.message)
        if exam.is_practice:
            # Not refunded if the user abandons the session
            user.consume_free_attempt()
        return decision
