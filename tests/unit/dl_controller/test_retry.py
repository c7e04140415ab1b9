import threading

import pytest

from dl_common.errors import CommandError, RemoteConnectionError, RemoteTimeoutError
from dl_controller.models.run_config import RetryPolicy
from dl_controller.services.retry import call_with_retry


pytestmark = pytest.mark.unit_controller


class Flaky:
    def __init__(self, failures: list[Exception]) -> None:
        self.failures = list(failures)
        self.calls = 0

    def __call__(self) -> str:
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return "ok"


def test_transient_errors_are_retried_with_backoff() -> None:
    sleeps: list[float] = []
    op = Flaky([RemoteConnectionError("h", "down"), RemoteTimeoutError("h", "command", 1)])
    policy = RetryPolicy(max_attempts=3, backoff=0.5, backoff_factor=2.0)
    assert call_with_retry(op, policy, description="health check", sleep=sleeps.append) == "ok"
    assert op.calls == 3
    assert sleeps == [0.5, 1.0]


def test_budget_exhaustion_reraises_last_error() -> None:
    op = Flaky([RemoteConnectionError("h", "down")] * 5)
    with pytest.raises(RemoteConnectionError):
        call_with_retry(op, RetryPolicy(max_attempts=2), description="health check", sleep=lambda _: None)
    assert op.calls == 2


def test_non_transient_errors_propagate_immediately() -> None:
    op = Flaky([CommandError("h", "false", 1)])
    with pytest.raises(CommandError):
        call_with_retry(op, RetryPolicy(max_attempts=5), description="health check", sleep=lambda _: None)
    assert op.calls == 1


def test_abort_stops_retrying() -> None:
    abort = threading.Event()
    abort.set()
    op = Flaky([RemoteConnectionError("h", "down")] * 3)
    with pytest.raises(RemoteConnectionError):
        call_with_retry(op, RetryPolicy(max_attempts=3), description="health check", abort=abort)
    assert op.calls == 1
