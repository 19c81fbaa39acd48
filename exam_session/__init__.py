"""Exam session engine: timed, resumable exam sessions with local-first result persistence."""
from .errors import (
    DeniedByGovernor,
    ExamSessionError,
    LedgerLocked,
    LocalPersistenceFailure,
    MissingContext,
    RemotePersistenceFailure,
    SubmissionDeclined,
)
from .governor import AttemptGovernor, DenialReason
from .models import ExamDefinition, Question, TestResult, UserContext
from .session import ExamSession, SessionState

__version__ = "0.1.0"
