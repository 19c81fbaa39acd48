import random

import pytest
import requests

from exam_session.clock import SessionClock
from exam_session.errors import RemotePersistenceFailure, StorageError
from exam_session.events import Notifier
from exam_session.loader import QuestionLoader
from exam_session.models import ExamDefinition, Question, UserContext
from exam_session.storage import MemoryStore, ResultRepository

START_MS = 1_700_000_000_000


class FakeTime:
    """Wall clock in epoch ms that only moves when told to."""

    def __init__(self, now=START_MS):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += int(seconds * 1000)


class FakeResponse:
    def __init__(self, status_code=200, text=""):
        self.status_code = status_code
        self.text = text


class FakeHttp:
    """Stands in for requests.Session; replays queued responses or exceptions."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    def get(self, url, headers=None, timeout=None):
        self.calls.append(url)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FailingStore(MemoryStore):
    """MemoryStore whose writes fail for keys starting with any of fail_prefixes."""

    def __init__(self, fail_prefixes=("exam_results_",), initial=None):
        super().__init__(initial)
        self.fail_prefixes = tuple(fail_prefixes)
        self.failures = 0

    def set(self, key, value):
        if key.startswith(self.fail_prefixes):
            self.failures += 1
            raise StorageError(f"disk full writing {key}")
        super().set(key, value)


class FakeRemote:
    """In-memory remote result store with switchable failure."""

    def __init__(self, results=None, fail=False):
        self.rows = {r.test_id: r for r in results or []}
        self.fail = fail
        self.fetch_calls = 0
        self.submitted = []

    def fetch_all_results(self, user_id, token):
        self.fetch_calls += 1
        if self.fail:
            raise RemotePersistenceFailure("remote unavailable")
        return sorted((r for r in self.rows.values() if r.user_id == user_id), key=lambda r: r.timestamp)

    def submit_result(self, result, token):
        if self.fail:
            raise RemotePersistenceFailure("remote unavailable", auth_failure=not token)
        self.submitted.append(result.test_id)
        self.rows[result.test_id] = result


class Recorder:
    """Collects notifier payloads per event name."""

    def __init__(self, notifier, *names):
        self.seen = {name: [] for name in names}
        for name in names:
            notifier.subscribe(name, self.seen[name].append)

    def __getitem__(self, name):
        return self.seen[name]


def make_questions(n=2):
    return [
        Question(id=i, prompt=f"Question {i}?", options=("a", "b", "c", "d"), correct_answer=(i % 4) + 1)
        for i in range(1, n + 1)
    ]


SHEET_CSV = (
    "Question,Options,Correct Answer\n"
    "What is 2+2?,3|4|5,4\n"
    "Capital of France?,Paris|Rome|Madrid,Paris\n"
    "Largest planet?,Mars|Jupiter|Venus,Jupiter\n"
)


@pytest.fixture
def fake_time():
    return FakeTime()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def notifier():
    return Notifier()


@pytest.fixture
def results(store):
    return ResultRepository(store)


@pytest.fixture
def user():
    return UserContext(user_id="u1", name="Ada", token="tok-123")


@pytest.fixture
def practice_exam():
    return ExamDefinition(id="py-practice", name="Python Practice", is_practice=True,
                          question_count=10, duration_minutes=15, pass_score=60,
                          question_source_url="https://example.com/sheet.csv")


@pytest.fixture
def cert_exam():
    return ExamDefinition(id="py-cert", name="Python Cert", is_practice=False,
                          question_count=2, duration_minutes=25, pass_score=70,
                          question_source_url="https://example.com/cert.csv")


@pytest.fixture
def clock(store, fake_time):
    return SessionClock(store, now_ms=fake_time, threaded=False)


@pytest.fixture
def offline_loader():
    return QuestionLoader(http=FakeHttp(requests.ConnectionError("offline")), max_retries=1,
                          rng=random.Random(7), sleep=lambda s: None)
