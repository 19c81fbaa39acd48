"""Notification channel: pushes tick, warning and sync outcomes up to the surrounding app."""
import logging
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

# Event names
TICK = "tick"
EXPIRED = "expired"
WARNING = "warning"
VIOLATION = "violation"
SUBMITTED = "submitted"
SYNCED = "synced"
SYNC_FAILED = "sync_failed"


class Notifier:
    def __init__(self) -> None:
        self._subs: Dict[str, List[Callable[[Any], None]]] = {}

    def subscribe(self, event: str, handler: Callable[[Any], None]) -> None:
        self._subs.setdefault(event, []).append(handler)

    def emit(self, event: str, payload: Any = None) -> None:
        for handler in self._subs.get(event, []):
            try:
                handler(payload)
            except Exception:
                # Listener errors are logged, never propagated to the emitter
                logger.exception("Handler for %r failed", event)
