"""Fabric-based remote executor implementation.

Every host gets a small pool of :class:`fabric.Connection` objects owned by an
explicit :class:`SshConnectionPool`; operations hold a per-host slot for their
duration and always give it back.
"""

from __future__ import annotations

import logging
import shlex
import socket
import threading
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, TypeVar

from fabric import Config, Connection
from invoke.exceptions import CommandTimedOut
from paramiko import SSHConfig
from paramiko.ssh_exception import NoValidConnectionsError, SSHException

from dl_common.errors import CommandError, RemoteConnectionError, RemoteTimeoutError
from dl_controller.models.topology import HostSpec
from dl_controller.models.types import CommandResult, RemoteExecutor, TransferDirection

logger = logging.getLogger(__name__)

KILL_TIMEOUT_SECONDS = 5.0
BANNER_TIMEOUT_SECONDS = 30

# Failures of the ssh transport itself. A remote command's own exit status or
# output never classifies as one of these.
TRANSPORT_ERRORS = (
    SSHException,
    NoValidConnectionsError,
    socket.gaierror,
    ConnectionError,
    EOFError,
)
CONNECT_ERRORS = TRANSPORT_ERRORS + (socket.timeout,)

ConnectionFactory = Callable[[HostSpec], Connection]
T = TypeVar("T")


def _host_key(host: HostSpec) -> str:
    return f"{host.destination}:{host.port or 22}"


def _fabric_config(ssh_options: List[str]) -> Optional[Config]:
    """Turn ``Key=Value`` options into an ssh_config applying to the host."""
    if not ssh_options:
        return None
    lines = ["Host *"]
    for option in ssh_options:
        key, _, value = option.partition("=")
        lines.append(f"    {key.strip()} {value.strip()}")
    return Config(ssh_config=SSHConfig.from_text("\n".join(lines)))


def _close_quietly(conn: Connection) -> None:
    try:
        conn.close()
    except Exception as exc:
        logger.debug("Closing connection to %s failed: %s", conn.host, exc)


class SshConnectionPool:
    """Per-host fabric connections with bounded concurrency."""

    def __init__(
        self,
        max_per_host: int = 4,
        connect_timeout: int = 10,
        connection_factory: Optional[ConnectionFactory] = None,
    ) -> None:
        """
        Args:
            max_per_host: Concurrent operations (and open connections) per host.
            connect_timeout: TCP connect timeout in seconds.
            connection_factory: Builds a Connection for a host; tests inject
                fakes here.
        """
        self.max_per_host = max_per_host
        self.connect_timeout = connect_timeout
        self._factory = connection_factory or self.connect
        self._lock = threading.Lock()
        self._slots: Dict[str, threading.BoundedSemaphore] = {}
        self._idle: Dict[str, List[Connection]] = {}
        self._live: Dict[str, List[Connection]] = {}
        self._closed = False

    def connect(self, host: HostSpec) -> Connection:
        """Create an unopened Connection for ``host``."""
        connect_kwargs: Dict[str, Any] = {"banner_timeout": BANNER_TIMEOUT_SECONDS}
        if host.ssh_key:
            connect_kwargs["key_filename"] = str(Path(host.ssh_key).expanduser())
        return Connection(
            host=host.address,
            user=host.user,
            port=host.port,
            config=_fabric_config(host.ssh_options),
            connect_timeout=self.connect_timeout,
            connect_kwargs=connect_kwargs,
        )

    def _slot(self, host: HostSpec) -> threading.BoundedSemaphore:
        key = _host_key(host)
        with self._lock:
            if self._closed:
                raise RemoteConnectionError(host.address, "connection pool is closed")
            slot = self._slots.get(key)
            if slot is None:
                slot = threading.BoundedSemaphore(self.max_per_host)
                self._slots[key] = slot
            return slot

    @contextmanager
    def acquire(self, host: HostSpec) -> Iterator[Connection]:
        """Hold a connection slot for ``host`` and yield a pooled Connection."""
        slot = self._slot(host)
        slot.acquire()
        conn: Optional[Connection] = None
        try:
            conn = self._checkout(host)
            yield conn
        finally:
            if conn is not None:
                self._checkin(host, conn)
            slot.release()

    def _checkout(self, host: HostSpec) -> Connection:
        key = _host_key(host)
        with self._lock:
            if self._closed:
                raise RemoteConnectionError(host.address, "connection pool is closed")
            idle = self._idle.setdefault(key, [])
            if idle:
                return idle.pop()
        conn = self._factory(host)
        with self._lock:
            self._live.setdefault(key, []).append(conn)
        return conn

    def _checkin(self, host: HostSpec, conn: Connection) -> None:
        key = _host_key(host)
        with self._lock:
            if self._closed:
                return
            if any(item is conn for item in self._live.get(key, [])):
                self._idle.setdefault(key, []).append(conn)

    def discard(self, host: HostSpec, conn: Connection) -> None:
        """Close ``conn`` and drop it so the next checkout reconnects."""
        key = _host_key(host)
        with self._lock:
            self._live[key] = [item for item in self._live.get(key, []) if item is not conn]
            self._idle[key] = [item for item in self._idle.get(key, []) if item is not conn]
        _close_quietly(conn)

    def close(self) -> None:
        """Close every pooled connection; later operations are rejected."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            connections = [conn for conns in self._live.values() for conn in conns]
            self._live.clear()
            self._idle.clear()
        for conn in connections:
            _close_quietly(conn)


class SshExecutor(RemoteExecutor):
    """Remote executor running commands and SFTP transfers through fabric."""

    def __init__(self, pool: Optional[SshConnectionPool] = None) -> None:
        self.pool = pool or SshConnectionPool()

    def execute(
        self,
        host: HostSpec,
        command: str,
        timeout: float,
        *,
        check: bool = True,
    ) -> CommandResult:
        """Run ``command`` through ``sh -c`` on ``host``."""
        op_tag = f"dl-op-{uuid.uuid4().hex[:12]}"
        remote_command = f"sh -c {shlex.quote(command)} {op_tag}"
        logger.debug("Executing on %s: %s", host.destination, command)
        result = self._call(
            host,
            lambda conn: conn.run(
                remote_command, hide=True, warn=True, in_stream=False, timeout=timeout
            ),
            timeout,
            operation="command",
            on_timeout=lambda conn: self._kill_remote(conn, host, op_tag),
        )
        outcome = CommandResult(
            stdout=result.stdout or "",
            stderr=result.stderr or "",
            exit_code=result.exited,
        )
        if check and not outcome.success:
            raise CommandError(host.destination, command, outcome.exit_code, outcome.stderr)
        return outcome

    def transfer(
        self,
        host: HostSpec,
        direction: TransferDirection,
        source_path: str | Path,
        dest_path: str | Path,
        timeout: float,
    ) -> int:
        """Copy a file over SFTP; return its size as known at the source."""
        direction = TransferDirection(direction)
        if direction == TransferDirection.PUSH:
            local = Path(source_path)
            if not local.exists():
                raise FileNotFoundError(f"Upload source not found: {local}")
            description = f"{local} -> {host.destination}:{dest_path}"

            def _action(conn: Connection) -> int:
                return self._push(conn, host, local, str(dest_path), timeout)

        else:
            local = Path(dest_path)
            local.parent.mkdir(parents=True, exist_ok=True)
            description = f"{host.destination}:{source_path} -> {local}"

            def _action(conn: Connection) -> int:
                return self._pull(conn, str(source_path), local, timeout)

        def _discard_partial(conn: Optional[Connection] = None) -> None:
            if direction == TransferDirection.PULL:
                local.unlink(missing_ok=True)

        try:
            size = self._call(
                host,
                _action,
                timeout,
                operation=f"{direction.value} transfer",
                on_timeout=_discard_partial,
            )
        except (RemoteConnectionError, RemoteTimeoutError, CommandError):
            _discard_partial()
            raise
        except OSError as exc:
            # SFTP status errors: missing remote file, permission denied.
            _discard_partial()
            raise CommandError(
                host.destination, f"{direction.value} {description}", 1, str(exc), cause=exc
            ) from exc
        logger.debug("Transferred %d bytes (%s) %s", size, direction.value, description)
        return size

    def close(self) -> None:
        self.pool.close()

    def _push(
        self, conn: Connection, host: HostSpec, local: Path, remote: str, timeout: float
    ) -> int:
        conn.sftp().get_channel().settimeout(timeout)
        if not local.is_dir():
            conn.put(str(local), remote)
            return local.stat().st_size
        files = sorted(item for item in local.rglob("*") if item.is_file())
        dirs = {remote}
        dirs.update(
            f"{remote}/{item.parent.relative_to(local).as_posix()}"
            for item in files
            if item.parent != local
        )
        mkdir = "mkdir -p " + " ".join(shlex.quote(path) for path in sorted(dirs))
        result = conn.run(mkdir, hide=True, warn=True, in_stream=False, timeout=timeout)
        if result.exited != 0:
            raise CommandError(host.destination, mkdir, result.exited, result.stderr or "")
        total = 0
        for item in files:
            conn.put(str(item), f"{remote}/{item.relative_to(local).as_posix()}")
            total += item.stat().st_size
        return total

    @staticmethod
    def _pull(conn: Connection, remote: str, local: Path, timeout: float) -> int:
        sftp = conn.sftp()
        sftp.get_channel().settimeout(timeout)
        expected = sftp.stat(remote).st_size
        conn.get(remote, str(local))
        return expected

    def _call(
        self,
        host: HostSpec,
        action: Callable[[Connection], T],
        timeout: float,
        *,
        operation: str,
        on_timeout: Callable[[Connection], None],
    ) -> T:
        """Run ``action`` on a pooled connection, re-establishing it once."""
        error: Optional[BaseException] = None
        for attempt in (1, 2):
            with self.pool.acquire(host) as conn:
                try:
                    conn.open()
                except CONNECT_ERRORS as exc:
                    error = exc
                else:
                    try:
                        return action(conn)
                    except (CommandTimedOut, socket.timeout) as exc:
                        on_timeout(conn)
                        raise RemoteTimeoutError(
                            host.destination, operation, timeout, cause=exc
                        ) from exc
                    except TRANSPORT_ERRORS as exc:
                        error = exc
                self.pool.discard(host, conn)
            if attempt == 1:
                logger.warning(
                    "Connection to %s failed (%s); re-establishing once", host.destination, error
                )
        raise RemoteConnectionError(
            host.destination,
            f"cannot reach {host.destination}: {error}",
            context={"operation": operation},
            cause=error,
        )

    def _kill_remote(self, conn: Connection, host: HostSpec, op_tag: str) -> None:
        """Best-effort kill of a timed-out remote command."""
        pattern = f"[{op_tag[0]}]{op_tag[1:]}"
        try:
            conn.run(
                f"pkill -f '{pattern}'",
                hide=True,
                warn=True,
                in_stream=False,
                timeout=KILL_TIMEOUT_SECONDS,
            )
        except Exception as exc:
            logger.warning("Could not kill timed-out command on %s: %s", host.destination, exc)


def build_executor(max_connections_per_host: int = 4, **kwargs: Any) -> SshExecutor:
    """Create an executor with a fresh connection pool."""
    return SshExecutor(pool=SshConnectionPool(max_per_host=max_connections_per_host, **kwargs))
