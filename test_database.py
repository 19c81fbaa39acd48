import pytest
from postgrest.exceptions import APIError

from exam_session.config import Settings
from exam_session.database import RemoteResultStore, get_supabase
from exam_session.errors import RemotePersistenceFailure
from exam_session.models import TestResult


class DummyResponse:
    def __init__(self, data):
        self.data = data


class DummyQuery:
    def __init__(self, client, table):
        self.client = client
        self.table = table

    def __getattr__(self, name):
        def record(*args, **kwargs):
            self.client.calls.append((name, args, kwargs))
            return self
        return record

    def execute(self):
        if self.client.error is not None:
            raise self.client.error
        return DummyResponse(self.client.rows)


class DummyPostgrest:
    def __init__(self):
        self.tokens = []

    def auth(self, token):
        self.tokens.append(token)


class DummyClient:
    def __init__(self, rows=None, error=None):
        self.rows = rows or []
        self.error = error
        self.calls = []
        self.postgrest = DummyPostgrest()

    def table(self, name):
        self.calls.append(("table", (name,), {}))
        return DummyQuery(self, name)


def sample_result():
    return TestResult(test_id="t1", user_id="u1", exam_id="e1", answers=(), score=50.0,
                      correct_count=1, total_questions=2, timestamp=10, review=())


def test_get_supabase_requires_credentials():
    with pytest.raises(ValueError):
        get_supabase(Settings(supabase_url=None, supabase_key=None))


def test_fetch_applies_token_and_filters_by_user():
    client = DummyClient(rows=[sample_result().to_dict(), {"broken": True}])
    store = RemoteResultStore(client)

    results = store.fetch_all_results("u1", " tok ")

    assert client.postgrest.tokens == ["tok"]
    assert ("eq", ("user_id", "u1"), {}) in client.calls
    assert [r.test_id for r in results] == ["t1"]


def test_submit_upserts_on_test_id():
    client = DummyClient()
    RemoteResultStore(client, table="results").submit_result(sample_result(), "tok")

    assert ("table", ("results",), {}) in client.calls
    upsert = next(c for c in client.calls if c[0] == "upsert")
    assert upsert[1][0]["test_id"] == "t1"
    assert upsert[2] == {"on_conflict": "test_id"}


def test_expired_jwt_is_flagged_as_auth_failure():
    client = DummyClient(error=APIError({"message": "JWT expired", "code": "PGRST301"}))

    with pytest.raises(RemotePersistenceFailure) as exc:
        RemoteResultStore(client).submit_result(sample_result(), "tok")

    assert exc.value.auth_failure
    assert exc.value.code == "PGRST301"
    assert exc.value.hint


def test_other_api_errors_are_not_auth_failures():
    client = DummyClient(error=APIError({"message": "duplicate key", "code": "23505"}))

    with pytest.raises(RemotePersistenceFailure) as exc:
        RemoteResultStore(client).fetch_all_results("u1", "tok")

    assert not exc.value.auth_failure


def test_missing_token_fails_before_any_request():
    client = DummyClient()
    with pytest.raises(RemotePersistenceFailure) as exc:
        RemoteResultStore(client).submit_result(sample_result(), None)
    assert exc.value.auth_failure
    assert client.calls == []


def test_network_error_carries_credential_hint():
    client = DummyClient(error=ConnectionError("connection refused"))
    with pytest.raises(RemotePersistenceFailure) as exc:
        RemoteResultStore(client).fetch_all_results("u1", "tok")
    assert "SUPABASE_URL" in str(exc.value)
