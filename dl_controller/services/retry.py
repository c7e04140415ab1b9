"""Caller-configured retry helper for remote operations."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional, Tuple, Type, TypeVar

from dl_common.errors import RemoteConnectionError, RemoteTimeoutError
from dl_controller.models.run_config import RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS: Tuple[Type[BaseException], ...] = (RemoteConnectionError, RemoteTimeoutError)


def call_with_retry(
    operation: Callable[[], T],
    policy: RetryPolicy,
    *,
    description: str,
    retry_on: Tuple[Type[BaseException], ...] = TRANSIENT_ERRORS,
    abort: Optional[threading.Event] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Invoke ``operation`` until it succeeds or the retry budget is spent.

    Only exceptions listed in ``retry_on`` are retried; anything else
    propagates immediately. When ``abort`` is set the last error is raised
    instead of waiting for another attempt.
    """
    attempt = 1
    while True:
        try:
            return operation()
        except retry_on as exc:
            if attempt >= policy.max_attempts or (abort is not None and abort.is_set()):
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                description,
                attempt,
                policy.max_attempts,
                exc,
                delay,
            )
            if abort is not None:
                if abort.wait(delay):
                    raise
            else:
                sleep(delay)
            attempt += 1
