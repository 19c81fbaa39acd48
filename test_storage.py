import json
import threading

import pytest

from conftest import FailingStore, FakeRemote
from exam_session.errors import LocalPersistenceFailure, RemotePersistenceFailure
from exam_session.models import TestResult
from exam_session.storage import JsonFileStore, ResultRepository, results_key


def result(test_id, ts, user_id="u1", score=50.0):
    return TestResult(test_id=test_id, user_id=user_id, exam_id="e1", answers=(), score=score,
                      correct_count=1, total_questions=2, timestamp=ts, review=())


def test_results_are_namespaced_per_user(results):
    results.save(result("a", 1, user_id="u1"))
    results.save(result("b", 2, user_id="u2"))

    assert [r.test_id for r in results.list_for_user("u1")] == ["a"]
    assert [r.test_id for r in results.list_for_user("u2")] == ["b"]


def test_save_merges_by_test_id(results):
    results.save(result("a", 1, score=10))
    results.save(result("a", 1, score=90))
    results.save(result("b", 0))

    listed = results.list_for_user("u1")
    assert [r.test_id for r in listed] == ["b", "a"]
    assert listed[1].score == 90


def test_legacy_list_collection_is_read(store):
    store.set(results_key("u1"), json.dumps([result("old", 5).to_dict()]))
    assert ResultRepository(store).get("u1", "old").timestamp == 5


def test_save_failure_becomes_local_persistence_failure():
    with pytest.raises(LocalPersistenceFailure):
        ResultRepository(FailingStore()).save(result("a", 1))


def test_json_file_store_roundtrip(tmp_path):
    path = tmp_path / "store.json"
    JsonFileStore(path).set("k", "v")

    reopened = JsonFileStore(path)
    assert reopened.get("k") == "v"
    reopened.remove("k")
    assert reopened.keys() == []


def test_corrupt_store_is_backed_up_and_reset(tmp_path):
    path = tmp_path / "store.json"
    path.write_text("{not json", encoding="utf-8")
    store = JsonFileStore(path)

    store.set("k", "1")

    assert store.get("k") == "1"
    assert json.loads(path.read_text(encoding="utf-8")) == {"k": "1"}
    assert len(list(tmp_path.glob("store.corrupt-*.json"))) == 1


def test_sync_remote_wins_and_local_only_is_resent(results, user):
    results.save(result("shared", 1, score=10))
    results.save(result("local-only", 3))
    remote = FakeRemote([result("shared", 1, score=80), result("remote-only", 2)])

    synced = results.sync_results(user, remote)

    assert [r.test_id for r in synced] == ["shared", "remote-only", "local-only"]
    assert results.get(user.user_id, "shared").score == 80
    assert remote.submitted == ["local-only"]


def test_sync_keeps_local_when_resend_fails(results, user):
    results.save(result("local-only", 3))

    class FetchOnlyRemote(FakeRemote):
        def submit_result(self, result, token):
            raise RemotePersistenceFailure("read-only")

    synced = results.sync_results(user, FetchOnlyRemote())

    assert [r.test_id for r in synced] == ["local-only"]
    assert results.get(user.user_id, "local-only") is not None


def test_sync_fetch_failure_propagates_and_keeps_local(results, user):
    results.save(result("a", 1))
    with pytest.raises(RemotePersistenceFailure):
        results.sync_results(user, FakeRemote(fail=True))
    assert [r.test_id for r in results.list_for_user(user.user_id)] == ["a"]


def test_concurrent_syncs_share_one_fetch(results, user):
    release = threading.Event()
    started = threading.Event()

    class SlowRemote(FakeRemote):
        def fetch_all_results(self, user_id, token):
            started.set()
            release.wait(5)
            return super().fetch_all_results(user_id, token)

    remote = SlowRemote([result("r", 1)])
    outcomes = []
    first = threading.Thread(target=lambda: outcomes.append(results.sync_results(user, remote)))
    first.start()
    started.wait(5)

    joined = threading.Event()
    inflight = results._inflight[user.user_id]
    done = inflight.done

    class NotifyingEvent:
        def wait(self, timeout=None):
            joined.set()
            return done.wait(timeout)

        def set(self):
            done.set()

    inflight.done = NotifyingEvent()
    second = threading.Thread(target=lambda: outcomes.append(results.sync_results(user, remote)))
    second.start()
    joined.wait(5)
    release.set()
    first.join(5)
    second.join(5)

    assert remote.fetch_calls == 1
    assert len(outcomes) == 2
    assert [r.test_id for r in outcomes[0]] == [r.test_id for r in outcomes[1]] == ["r"]


def test_corrupt_collection_is_copied_before_save(store, results):
    store.set(results_key("u1"), '{"a": ')

    results.save(result("new", 1))

    backups = [k for k in store.keys() if k.startswith(results_key("u1") + ".corrupt-")]
    assert len(backups) == 1
    assert store.get(backups[0]) == '{"a": '
    assert [r.test_id for r in results.list_for_user("u1")] == ["new"]


def test_corrupt_collection_kept_when_copy_fails():
    store = FailingStore(initial={results_key("u1"): "garbage"})

    with pytest.raises(LocalPersistenceFailure):
        ResultRepository(store).save(result("new", 1))

    assert store.get(results_key("u1")) == "garbage"
    assert [k for k in store.keys() if ".corrupt-" in k] == []


def test_sync_keeps_results_saved_while_it_runs(results, user):
    results.save(result("old", 1))

    class SavingRemote(FakeRemote):
        def submit_result(self, r, token):
            super().submit_result(r, token)
            results.save(result("during", 5))

    synced = results.sync_results(user, SavingRemote())

    assert [r.test_id for r in synced] == ["old", "during"]
    assert [r.test_id for r in results.list_for_user(user.user_id)] == ["old", "during"]
