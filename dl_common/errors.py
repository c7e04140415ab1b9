"""Shared error taxonomy for the distributed launcher."""

from __future__ import annotations

from typing import Any, Mapping, TypeVar


def _normalize_context_value(value: Any) -> Any:
    if isinstance(value, Mapping):
        return normalize_context(value)
    if isinstance(value, (list, tuple)):
        return [_normalize_context_value(item) for item in value]
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


def normalize_context(context: Mapping[str, Any]) -> dict[str, Any]:
    """Return a JSON-friendly copy of an error context mapping."""
    return {key: _normalize_context_value(val) for key, val in context.items()}


class LauncherError(Exception):
    """Base error type for typed failure handling."""

    def __init__(
        self,
        message: str,
        *,
        context: Mapping[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.context = normalize_context(context or {})
        if cause is not None:
            self.__cause__ = cause

    @property
    def error_type(self) -> str:
        return self.__class__.__name__

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.error_type, "message": str(self), "context": self.context}


class ConfigurationError(LauncherError):
    """Invalid or unreadable runtime configuration descriptor."""


class TopologyError(ConfigurationError):
    """Benchmark descriptor violates a topology invariant."""


class RemoteConnectionError(LauncherError):
    """Host unreachable or authentication failure."""

    def __init__(self, host: str, message: str, **kwargs: Any) -> None:
        context = {"host": host, **dict(kwargs.pop("context", None) or {})}
        super().__init__(message, context=context, **kwargs)
        self.host = host


class CommandError(LauncherError):
    """Remote command exited with a non-zero status."""

    def __init__(
        self,
        host: str,
        command: str,
        exit_code: int,
        stderr: str = "",
        **kwargs: Any,
    ) -> None:
        detail = stderr.strip().splitlines()[-1] if stderr.strip() else ""
        message = f"command on {host} exited with {exit_code}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(
            message,
            context={"host": host, "command": command, "exit_code": exit_code},
            **kwargs,
        )
        self.host = host
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr


class RemoteTimeoutError(LauncherError):
    """A single remote operation exceeded its timeout."""

    def __init__(self, host: str, operation: str, timeout: float, **kwargs: Any) -> None:
        super().__init__(
            f"{operation} on {host} timed out after {timeout:g}s",
            context={"host": host, "operation": operation, "timeout": timeout},
            **kwargs,
        )
        self.host = host
        self.timeout = timeout


class ReadinessError(LauncherError):
    """A role never passed its readiness check."""


class DeploymentFailed(LauncherError):
    """A role could not be brought to the ready state."""

    def __init__(self, role: str, cause: BaseException | str) -> None:
        super().__init__(
            f"deployment of role '{role}' failed: {cause}",
            context={"role": role},
            cause=cause if isinstance(cause, BaseException) else None,
        )
        self.role = role
        self.reason = cause


class RoleCrashed(LauncherError):
    """A role stopped responding during the measurement window."""

    def __init__(self, role: str, detail: str = "") -> None:
        message = f"role '{role}' is no longer alive"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, context={"role": role})
        self.role = role


class CollectionError(LauncherError):
    """An artifact could not be retrieved. Recorded, never fatal."""

    def __init__(self, role: str, cause: BaseException | str) -> None:
        super().__init__(
            f"collection for role '{role}' failed: {cause}",
            context={"role": role},
            cause=cause if isinstance(cause, BaseException) else None,
        )
        self.role = role


T = TypeVar("T", bound=LauncherError)


def wrap_error(
    error_cls: type[T],
    message: str,
    *,
    context: Mapping[str, Any] | None = None,
    cause: BaseException | None = None,
) -> T:
    """Create a typed LauncherError with optional context and cause."""
    return error_cls(message, context=context, cause=cause)


def error_to_payload(error: BaseException) -> dict[str, Any]:
    """Convert an error to a report payload."""
    if isinstance(error, LauncherError):
        return {
            "error_type": error.error_type,
            "error": str(error),
            "error_context": error.context,
        }
    return {"error_type": error.__class__.__name__, "error": str(error), "error_context": {}}
