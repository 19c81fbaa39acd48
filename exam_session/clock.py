"""
Session Clock: an absolute deadline persisted per (exam, user), a once-per-second
remaining-time signal, and exactly one expiry callback.

The deadline is written once when a key is first started and only read afterwards,
so restarting a session (reload, crash) never extends its time.
"""
import logging
import threading
import time
from typing import Callable, Dict, Optional

from .errors import ClockPersistenceMissing, StorageError

logger = logging.getLogger(__name__)


def wall_clock_ms() -> int:
    return int(time.time() * 1000)


class TickHandle:
    """One ticking deadline. Owned by a single session; stop() cancels it for good."""

    def __init__(self, key: str, deadline_ms: int, clock: "SessionClock",
                 on_tick: Optional[Callable[[int], None]] = None,
                 on_expire: Optional[Callable[[], None]] = None):
        self.key = key
        self.deadline_ms = deadline_ms
        self.on_tick = on_tick
        self.on_expire = on_expire
        self._clock = clock
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._expired = False
        self.remaining = self._compute()

    def _compute(self) -> int:
        # Whole seconds, halves rounded up
        return max(0, (self.deadline_ms - self._clock.now_ms() + 500) // 1000)

    @property
    def active(self) -> bool:
        return not self._stop.is_set()

    @property
    def expired(self) -> bool:
        return self._expired

    def tick(self) -> int:
        """Recompute the remaining seconds and push them to on_tick; fire expiry at 0."""
        with self._lock:
            if not self.active:
                return self.remaining
            # Never count back up, even if the wall clock is moved backwards
            self.remaining = min(self.remaining, self._compute())
            remaining = self.remaining
            fire = remaining == 0
            if fire:
                self._expired = True
                self._stop.set()
        if self.on_tick:
            self.on_tick(remaining)
        if fire:
            logger.info(f"Deadline reached for {self.key}")
            self._clock.clear(self.key)
            if self.on_expire:
                self.on_expire()
        return remaining

    def start_ticking(self, interval: float) -> None:
        if self._thread is not None or not self.active:
            return
        self._thread = threading.Thread(target=self._run, args=(interval,), name=f"tick-{self.key}", daemon=True)
        self._thread.start()

    def _run(self, interval: float) -> None:
        while not self._stop.wait(interval):
            try:
                self.tick()
            except Exception:
                logger.exception(f"Tick for {self.key} failed")

    def stop(self) -> None:
        self._stop.set()


class SessionClock:
    """Creates ticking handles; at most one live handle per persistence key."""

    def __init__(self, store, now_ms: Optional[Callable[[], int]] = None, interval: float = 1.0, threaded: bool = True):
        self.store = store
        self.now_ms = now_ms or wall_clock_ms
        self.interval = interval
        self.threaded = threaded
        self._handles: Dict[str, TickHandle] = {}
        self._lock = threading.Lock()

    def read_deadline(self, key: str) -> Optional[int]:
        """Persisted deadline for key, None if absent or unreadable as a timestamp."""
        try:
            raw = self.store.get(key)
        except StorageError as e:
            raise ClockPersistenceMissing(f"Could not read deadline {key}: {e.message}") from e
        if raw is None:
            return None
        try:
            return int(raw)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring unreadable deadline {raw!r} stored under {key}")
            return None

    def _resolve_deadline(self, key: str, duration_minutes: int) -> int:
        try:
            deadline = self.read_deadline(key)
        except ClockPersistenceMissing as e:
            logger.warning(f"{e}; starting a fresh deadline")
            deadline = None
        if deadline is not None:
            return deadline
        deadline = self.now_ms() + int(duration_minutes) * 60_000
        try:
            self.store.set(key, str(deadline))
        except StorageError as e:
            # Keep the in-memory deadline; a reload will start over
            logger.warning(f"Could not persist deadline {key}: {e.message}")
        return deadline

    def start(self, key: str, duration_minutes: int,
              on_tick: Optional[Callable[[int], None]] = None,
              on_expire: Optional[Callable[[], None]] = None) -> TickHandle:
        """Start (or resume) ticking for key. Any previous handle for key is cancelled first."""
        with self._lock:
            previous = self._handles.pop(key, None)
        if previous is not None:
            previous.stop()
        handle = TickHandle(key, self._resolve_deadline(key, duration_minutes), self, on_tick, on_expire)
        with self._lock:
            self._handles[key] = handle
        if self.threaded:
            handle.start_ticking(self.interval)
        logger.debug(f"Clock {key} started, {handle.remaining}s remaining")
        return handle

    def stop(self, key: str) -> None:
        with self._lock:
            handle = self._handles.pop(key, None)
        if handle is not None:
            handle.stop()

    def clear(self, key: str) -> None:
        """Delete the persisted deadline for key."""
        try:
            self.store.remove(key)
        except StorageError as e:
            logger.warning(f"Could not delete deadline {key}: {e.message}")

    def restore_deadline(self, key: str, deadline_ms: int) -> None:
        """Write back a known deadline (e.g. one already passed) so a restart cannot mint a new one."""
        try:
            self.store.set(key, str(int(deadline_ms)))
        except StorageError as e:
            logger.warning(f"Could not restore deadline {key}: {e.message}")

    def handle_for(self, key: str) -> Optional[TickHandle]:
        with self._lock:
            return self._handles.get(key)
