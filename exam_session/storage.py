"""
Durable local storage: a synchronous string key-value store plus the per-user
result collection that lives inside it.

Keys are namespaced by user (and exam) so sessions of different users never collide:
    exam_timer_{exam_id}_{user_id}     absolute deadline in epoch ms
    exam_progress_{exam_id}_{user_id}  resumable session snapshot (JSON)
    exam_results_{user_id}             {test_id: TestResult} (JSON)
"""
import json
import logging
import os
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from .errors import LocalPersistenceFailure, RemotePersistenceFailure, StorageError
from .models import TestResult, UserContext

logger = logging.getLogger(__name__)


def timer_key(exam_id: str, user_id: str) -> str:
    return f"exam_timer_{exam_id}_{user_id}"


def progress_key(exam_id: str, user_id: str) -> str:
    return f"exam_progress_{exam_id}_{user_id}"


def results_key(user_id: str) -> str:
    return f"exam_results_{user_id}"


class MemoryStore:
    """In-process store. Used for tests and for sessions that need no durability."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = str(value)

    def remove(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._data)


class JsonFileStore:
    """All keys live in one JSON document; every write replaces the file atomically."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            raw_text = self.path.read_text(encoding="utf-8")
        except OSError as e:
            raise StorageError(f"Could not read local store {self.path}: {e}") from e
        try:
            data = json.loads(raw_text) if raw_text.strip() else {}
        except json.JSONDecodeError:
            data = None
        if not isinstance(data, dict):
            # Keep the unreadable file around once, then start over
            backup = self.path.with_name(f"{self.path.stem}.corrupt-{datetime.utcnow().strftime('%Y%m%d-%H%M%S')}{self.path.suffix}")
            try:
                backup.write_text(raw_text, encoding="utf-8")
            except OSError:
                logger.warning("Could not back up corrupt store to %s", backup)
            logger.error("Local store %s was corrupt; backed up to %s", self.path, backup)
            return {}
        return data

    def _write(self, data: Dict[str, str]) -> None:
        tmp = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with tmp.open("w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except OSError as e:
            raise StorageError(f"Could not write local store {self.path}: {e}") from e

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._read().get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            data = self._read()
            data[key] = str(value)
            self._write(data)

    def remove(self, key: str) -> None:
        with self._lock:
            data = self._read()
            if key in data:
                del data[key]
                self._write(data)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._read())


class _InflightSync:
    def __init__(self) -> None:
        self.done = threading.Event()
        self.results: List[TestResult] = []
        self.error: Optional[Exception] = None


class ResultRepository:
    """Per-user TestResult collection inside the local store. Local copy is authoritative."""

    def __init__(self, store):
        self.store = store
        self._lock = threading.Lock()
        self._inflight: Dict[str, _InflightSync] = {}

    def _load_collection(self, user_id: str, for_write: bool = False) -> Dict[str, Dict]:
        """
        Stored results for one user keyed by test_id.

        An unreadable collection reads as empty. Before a write replaces it, the raw
        value is copied to `exam_results_{user}.corrupt-<ts>`; if that copy fails the
        StorageError propagates and the original is left in place.
        """
        key = results_key(user_id)
        raw = self.store.get(key)
        if not raw:
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            data = None
        if isinstance(data, list):
            # Older collections were stored as a plain list
            return {str(item.get("test_id") or item.get("testId")): item for item in data if isinstance(item, dict)}
        if isinstance(data, dict):
            return data
        if for_write:
            backup = f"{key}.corrupt-{datetime.utcnow().strftime('%Y%m%d-%H%M%S')}"
            self.store.set(backup, raw)
            logger.error(f"Result collection for user {user_id} was unreadable; kept a copy under {backup}")
        else:
            logger.error(f"Result collection for user {user_id} is unreadable; ignoring it")
        return {}

    def save(self, result: TestResult) -> None:
        """Merge one result into the user's collection. Raises LocalPersistenceFailure."""
        with self._lock:
            try:
                collection = self._load_collection(result.user_id, for_write=True)
                collection[result.test_id] = result.to_dict()
                self.store.set(results_key(result.user_id), json.dumps(collection))
            except StorageError as e:
                raise LocalPersistenceFailure(
                    "Your result could not be saved on this device. Please try submitting again.",
                    hint=e.message,
                ) from e
        logger.info(f"Saved result {result.test_id} locally ({len(collection)} results for user {result.user_id})")

    def list_for_user(self, user_id: str) -> List[TestResult]:
        try:
            collection = self._load_collection(user_id)
        except StorageError as e:
            logger.error(f"Could not read results for user {user_id}: {e}")
            return []
        results = []
        for item in collection.values():
            try:
                results.append(TestResult.from_dict(item))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping unreadable stored result: {e}")
        return sorted(results, key=lambda r: r.timestamp)

    def get(self, user_id: str, test_id: str) -> Optional[TestResult]:
        return next((r for r in self.list_for_user(user_id) if r.test_id == test_id), None)

    def merge_results(self, user_id: str, results: List[TestResult]) -> List[TestResult]:
        """Overwrite the given results by test_id, keeping everything else stored meanwhile."""
        with self._lock:
            try:
                collection = self._load_collection(user_id, for_write=True)
                for r in results:
                    collection[r.test_id] = r.to_dict()
                self.store.set(results_key(user_id), json.dumps(collection))
            except StorageError as e:
                raise LocalPersistenceFailure("Could not update results on this device.", hint=e.message) from e
        return self.list_for_user(user_id)

    def sync_results(self, user: UserContext, remote) -> List[TestResult]:
        """
        Reconcile the local collection with the remote store.

        Remote results win by test_id; results only present locally (e.g. a mirror
        that failed at submit time) are kept and re-sent. Concurrent calls for the
        same user share one round trip.
        """
        with self._lock:
            inflight = self._inflight.get(user.user_id)
            owner = inflight is None
            if owner:
                inflight = self._inflight[user.user_id] = _InflightSync()
        if not owner:
            inflight.done.wait()
            if inflight.error:
                raise inflight.error
            return list(inflight.results)

        try:
            inflight.results = self._sync(user, remote)
            return list(inflight.results)
        except Exception as e:
            inflight.error = e
            raise
        finally:
            with self._lock:
                self._inflight.pop(user.user_id, None)
            inflight.done.set()

    def _sync(self, user: UserContext, remote) -> List[TestResult]:
        remote_results = remote.fetch_all_results(user.user_id, user.token)
        merged = {r.test_id: r for r in remote_results}
        local_only = [r for r in self.list_for_user(user.user_id) if r.test_id not in merged]
        resent = 0
        for result in local_only:
            try:
                remote.submit_result(result, user.token)
                resent += 1
            except RemotePersistenceFailure as e:
                logger.warning(f"Could not re-send result {result.test_id}: {e}")
            merged[result.test_id] = result
        results = self.merge_results(user.user_id, list(merged.values()))
        logger.info(f"Synced {len(remote_results)} remote results for user {user.user_id}; re-sent {resent}/{len(local_only)} local-only")
        return results
