"""Completion signal an external workload driver may trip to end the window early."""

from __future__ import annotations

import logging
import threading
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


class CompletionSignal:
    """
    One-shot "workload finished" notification.

    The measurement window waits on it with a timeout; the timeout elapsing is
    the normal way a run ends, so tripping the signal is optional.
    """

    def __init__(self, on_complete: Optional[Callable[[str], None]] = None) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._on_complete = on_complete
        self._subscribers: List[threading.Event] = []
        self._reason: Optional[str] = None

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def complete(self, reason: str = "workload completed") -> None:
        """Mark the workload as finished and trigger the callback once."""
        with self._lock:
            if self._event.is_set():
                return
            self._reason = reason
            self._event.set()
            subscribers = list(self._subscribers)
        for event in subscribers:
            event.set()
        logger.info("Completion signalled: %s", reason)
        if self._on_complete:
            try:
                self._on_complete(reason)
            except Exception:
                logger.debug("Completion callback failed", exc_info=True)

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until completion or ``timeout``; return True when completed."""
        return self._event.wait(timeout)

    def subscribe(self, event: threading.Event) -> None:
        """Set ``event`` on completion, immediately if already completed."""
        with self._lock:
            self._subscribers.append(event)
            completed = self._event.is_set()
        if completed:
            event.set()
