"""Remote channel: SSH connect, authenticate, exec, upload and raw sessions."""

import io
import socket
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, BinaryIO, Protocol

import paramiko
from fabric import Connection
from paramiko.ssh_exception import AuthenticationException, SSHException

from .utils import LogStream, log, warn

CONNECT_TIMEOUT = 10


@dataclass
class Session:
    """One SSH endpoint; ``connection`` is set once authentication succeeds."""

    host: str
    port: int
    user: str | None = None
    connection: Any = None


class AgentChannel:
    """Caller-owned handle to a long-lived remote agent session.

    ``stdin``/``stdout`` are the agent's standard streams. ``close()`` runs
    the closers (session, then connection) once, then the close listeners.
    """

    def __init__(
        self,
        instance_id: str,
        stdin: BinaryIO,
        stdout: BinaryIO,
        closers: list[Callable[[], None]],
        exit_status: Callable[[], int] | None = None,
    ):
        self.instance_id = instance_id
        self.stdin = stdin
        self.stdout = stdout
        self._closers = list(closers)
        self._exit_status = exit_status
        self._listeners: list[Callable[["AgentChannel"], None]] = []
        self._closed = threading.Event()
        self._lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def add_close_listener(self, listener: Callable[["AgentChannel"], None]) -> None:
        self._listeners.append(listener)

    def exit_status(self) -> int:
        return self._exit_status() if self._exit_status else -1

    def close(self) -> None:
        with self._lock:
            if self._closed.is_set():
                return
            self._closed.set()
        for closer in self._closers:
            try:
                closer()
            except (OSError, SSHException) as e:
                warn(f"Error closing agent channel for '{self.instance_id}': {e}")
        for listener in self._listeners:
            listener(self)

    def wait_closed(self, timeout: float | None = None) -> bool:
        return self._closed.wait(timeout)

    def __enter__(self) -> "AgentChannel":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class RemoteChannel(Protocol):
    def probe(self, host: str, port: int) -> None: ...

    def connect(self, host: str, port: int) -> Session: ...

    def authenticate(self, session: Session, user: str, key: str) -> bool: ...

    def is_active(self, session: Session) -> bool: ...

    def exec(self, session: Session, command: str, pty: bool = False) -> int: ...

    def upload(self, session: Session, data: bytes, remote_path: str, mode: int) -> None: ...

    def open_interactive_session(
        self, session: Session, command: str, instance_id: str
    ) -> AgentChannel: ...

    def close(self, session: Session) -> None: ...


def load_private_key(material: str) -> paramiko.PKey:
    """Parse PEM/OpenSSH private key text into a paramiko key."""
    for key_class in (paramiko.Ed25519Key, paramiko.RSAKey, paramiko.ECDSAKey):
        try:
            return key_class.from_private_key(io.StringIO(material))
        except SSHException:
            continue
    raise SSHException("Unsupported or invalid private key material")


def ssh_handshake(host: str, port: int, timeout: float = CONNECT_TIMEOUT) -> None:
    """Open TCP to host:port and complete the SSH banner/key exchange.

    :raises OSError: TCP connection failed
    :raises SSHException: SSH negotiation failed
    """
    sock = socket.create_connection((host, port), timeout=timeout)
    try:
        transport = paramiko.Transport(sock)
    except Exception:
        sock.close()
        raise
    try:
        transport.start_client(timeout=timeout)
    finally:
        transport.close()


def wait_completion(chan: paramiko.Channel, attempts: int = 10, delay: float = 0.1) -> int:
    """Exit status delivery is often delayed. Wait up to ~1 sec, -1 if none."""
    for _ in range(attempts):
        if chan.exit_status_ready():
            return chan.recv_exit_status()
        time.sleep(delay)
    return -1


class SSHChannel:
    """RemoteChannel over fabric/paramiko.

    Host keys of fresh instances are accepted blindly (fabric's default
    auto-add policy).
    """

    def __init__(self, connect_timeout: float = CONNECT_TIMEOUT):
        self.connect_timeout = connect_timeout

    def probe(self, host: str, port: int) -> None:
        ssh_handshake(host, port, timeout=self.connect_timeout)

    def connect(self, host: str, port: int) -> Session:
        log(f"Connecting to {host} on port {port}.")
        self.probe(host, port)
        log("Connected via SSH.")
        return Session(host=host, port=port)

    def authenticate(self, session: Session, user: str, key: str) -> bool:
        self.close(session)
        conn = Connection(
            session.host,
            user=user,
            port=session.port,
            connect_timeout=self.connect_timeout,
            connect_kwargs={
                "pkey": load_private_key(key),
                "look_for_keys": False,
                "allow_agent": False,
            },
        )
        try:
            conn.open()
        except AuthenticationException:
            conn.close()
            return False
        except (OSError, SSHException) as e:
            warn(f"SSH connection to '{session.host}' dropped during authentication: {e}")
            conn.close()
            return False
        session.user = user
        session.connection = conn
        return True

    def is_active(self, session: Session) -> bool:
        return session.connection is not None and session.connection.is_connected

    def exec(self, session: Session, command: str, pty: bool = False) -> int:
        stream = LogStream(prefix=f"[{session.host}] ")
        result = session.connection.run(
            command,
            pty=pty,
            warn=True,
            hide=False,
            in_stream=False,
            out_stream=stream,
            err_stream=stream,
        )
        stream.flush()
        return result.exited if result.exited is not None else -1

    def upload(self, session: Session, data: bytes, remote_path: str, mode: int) -> None:
        session.connection.put(io.BytesIO(data), remote=remote_path)
        session.connection.sftp().chmod(remote_path, mode)

    def open_interactive_session(
        self, session: Session, command: str, instance_id: str
    ) -> AgentChannel:
        chan = session.connection.transport.open_session()
        try:
            chan.exec_command(command)
            stdin = chan.makefile_stdin("wb")
            stdout = chan.makefile("rb")
        except (OSError, SSHException):
            chan.close()
            raise
        return AgentChannel(
            instance_id,
            stdin,
            stdout,
            closers=[chan.close, lambda: self.close(session)],
            exit_status=lambda: wait_completion(chan),
        )

    def close(self, session: Session) -> None:
        if session.connection is not None:
            session.connection.close()
            session.connection = None
