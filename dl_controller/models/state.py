"""Run state machine primitives."""

from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    """Lifecycle states of a launcher run."""

    IDLE = "idle"
    PROVISIONING = "provisioning"
    WARMING = "warming"
    RUNNING = "running"
    COLLECTING = "collecting"
    CLEANING_UP = "cleaning_up"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


_TERMINAL_STATES = {RunState.SUCCEEDED, RunState.FAILED}


_ALLOWED_TRANSITIONS = {
    RunState.IDLE: {RunState.PROVISIONING},
    RunState.PROVISIONING: {RunState.WARMING},
    RunState.WARMING: {RunState.RUNNING},
    RunState.RUNNING: {RunState.COLLECTING},
    RunState.COLLECTING: {RunState.CLEANING_UP},
    RunState.CLEANING_UP: {RunState.SUCCEEDED},
    RunState.SUCCEEDED: set(),
    RunState.FAILED: set(),
}


StateCallback = Callable[[RunState, Optional[str]], None]


class RunStateMachine:
    """Thread-safe run state tracker.

    Transitions only move forward; FAILED is reachable from every
    non-terminal state and carries the failure reason.
    """

    def __init__(self) -> None:
        self._state = RunState.IDLE
        self._lock = threading.RLock()
        self._reason: Optional[str] = None
        self._callbacks: list[StateCallback] = []
        self._history: list[tuple[RunState, float]] = [(RunState.IDLE, time.monotonic())]

    @property
    def state(self) -> RunState:
        with self._lock:
            return self._state

    @property
    def reason(self) -> Optional[str]:
        with self._lock:
            return self._reason

    @property
    def history(self) -> list[tuple[RunState, float]]:
        """States entered so far with their monotonic entry timestamps."""
        with self._lock:
            return list(self._history)

    def is_terminal(self) -> bool:
        with self._lock:
            return self._state in _TERMINAL_STATES

    def register_callback(self, callback: StateCallback) -> None:
        """Register a callback invoked on every transition."""
        self._callbacks.append(callback)

    def transition(self, new_state: RunState, reason: Optional[str] = None) -> RunState:
        """Attempt a state transition; raise ValueError if invalid."""
        with self._lock:
            allowed = _ALLOWED_TRANSITIONS.get(self._state, set())
            failing = new_state == RunState.FAILED and self._state not in _TERMINAL_STATES
            if not failing and new_state not in allowed:
                raise ValueError(f"Invalid transition {self._state} -> {new_state}")
            logger.info("Run state %s -> %s", self._state.value, new_state.value)
            self._state = new_state
            self._reason = reason
            self._history.append((new_state, time.monotonic()))
            callbacks = list(self._callbacks)
        for cb in callbacks:
            try:
                cb(new_state, reason)
            except Exception:
                logger.debug("State callback failed", exc_info=True)
        return new_state

    def snapshot(self) -> tuple[RunState, Optional[str]]:
        with self._lock:
            return self._state, self._reason
