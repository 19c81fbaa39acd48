"""Error taxonomy for the exam session engine.

Errors that block starting or scoring a session propagate to the caller.
Remote mirror errors are turned into notifications by the submission pipeline.
"""

CREDENTIAL_HINT = (
    "Check that the bearer token is current and that SUPABASE_URL / SUPABASE_KEY "
    "point at the right project."
)


class ExamSessionError(Exception):
    """Base class. Every error carries a human-readable message and an optional hint."""

    def __init__(self, message: str, hint: str | None = None):
        super().__init__(message)
        self.message = message
        self.hint = hint

    def __str__(self) -> str:
        if self.hint:
            return f"{self.message} ({self.hint})"
        return self.message


class DeniedByGovernor(ExamSessionError):
    """Session start refused by the attempt governor."""

    def __init__(self, reason, message: str):
        super().__init__(message)
        self.reason = reason


class MalformedSource(ExamSessionError):
    """Question document is missing required header columns."""


class QuestionFetchError(ExamSessionError):
    """Question document could not be fetched (transport error, timeout, non-2xx)."""


class StorageError(ExamSessionError):
    """The durable local store could not be read or written."""


class ClockPersistenceMissing(StorageError):
    """The deadline key could not be read or written."""


class LocalPersistenceFailure(ExamSessionError):
    """A test result could not be committed to local storage."""


class RemotePersistenceFailure(ExamSessionError):
    """The remote result store rejected or could not be reached."""

    def __init__(self, message: str, hint: str | None = None, auth_failure: bool = False, code: str | None = None):
        super().__init__(message, hint)
        self.auth_failure = auth_failure
        self.code = code


class MissingContext(ExamSessionError):
    """No authenticated user, exam, credential or question set when one is required."""


class SubmissionDeclined(ExamSessionError):
    """The user declined to submit with unanswered questions."""


class LedgerLocked(ExamSessionError):
    """Answers can no longer be changed for this session."""


class SessionStateError(ExamSessionError):
    """Operation not valid in the session's current state."""
