"""Pooled SSH and SFTP sessions to managed hosts."""

import io
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable

import paramiko

from common.credentials import CredentialVault
from common.errors import AuthError, ConfigurationError, NetworkError
from common.models import AgentConnection, AuthType, Host, utcnow

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT = float(os.environ.get("FLEETDECK_CONNECT_TIMEOUT", "10"))
DEFAULT_TRANSFER_TIMEOUT = float(os.environ.get("FLEETDECK_TRANSFER_TIMEOUT", "7200"))
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_DELAY = 2.0
DEFAULT_KEEPALIVE_INTERVAL = 10

# Applied to every command channel
REMOTE_ENVIRONMENT = {"TERM": "xterm-256color"}

# Failures of an open session that warrant one reconnect
TRANSPORT_ERRORS = (paramiko.SSHException, OSError, EOFError)


class SessionKind(str, Enum):
    SHELL = "shell"
    SFTP = "sftp"


@dataclass
class CommandResult:
    output: str
    exit_status: int

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


@dataclass
class PooledSession:
    """An authenticated connection held by the pool."""

    host_id: int
    kind: SessionKind
    client: paramiko.SSHClient
    sftp: paramiko.SFTPClient | None = None
    created_at: datetime = field(default_factory=utcnow)
    last_used: datetime = field(default_factory=utcnow)

    def is_alive(self) -> bool:
        """Liveness probe: the underlying transport must still be active."""
        transport = self.client.get_transport()
        if transport is None or not transport.is_active():
            return False
        if self.kind == SessionKind.SFTP:
            channel = self.sftp.get_channel() if self.sftp else None
            if channel is None or channel.closed:
                return False
        return True

    def close(self) -> None:
        """Best-effort close of the SFTP channel and the SSH client."""
        if self.sftp is not None:
            try:
                self.sftp.close()
            except Exception as e:
                logger.warning(f"Error closing SFTP channel for host {self.host_id}: {e}")
        try:
            self.client.close()
        except Exception as e:
            logger.warning(f"Error closing SSH client for host {self.host_id}: {e}")


def load_private_key(key_text: str) -> paramiko.PKey:
    """Parse an OpenSSH/PEM private key held in memory."""
    for key_class in (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey):
        try:
            return key_class.from_private_key(io.StringIO(key_text))
        except paramiko.SSHException:
            continue
    raise ConfigurationError("Stored private key is invalid or of an unsupported type")


class SessionPool:
    """
    Connection pool keyed by (host id, address, port, kind).

    A cached session is handed out again only while its transport is alive.
    Establishing a session makes a bounded number of attempts with a fixed
    delay between them. Insertion is last-writer-wins, and a session obtained
    from ``acquire`` may be closed by a concurrent ``release`` of the same host.
    """

    def __init__(
        self,
        store,
        vault: CredentialVault,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        transfer_timeout: float = DEFAULT_TRANSFER_TIMEOUT,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        keepalive_interval: int = DEFAULT_KEEPALIVE_INTERVAL,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the pool.

        Args:
            store: Record store used to look up agent connections
            vault: Decrypts stored credentials for the duration of a connect
            connect_timeout: Per-attempt connect timeout and default command timeout
            transfer_timeout: Channel timeout for SFTP sessions
            max_attempts: Connection attempts per acquire
            retry_delay: Seconds between attempts
            keepalive_interval: SSH keepalive interval in seconds
            sleep: Delay function (replaced in tests)
        """
        self.store = store
        self.vault = vault
        self.connect_timeout = connect_timeout
        self.transfer_timeout = transfer_timeout
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.keepalive_interval = keepalive_interval
        self._sleep = sleep
        self._sessions: dict[tuple, PooledSession] = {}
        self._lock = threading.Lock()

    def _connection_for(self, host: Host) -> AgentConnection:
        connection = self.store.get_agent_connection(host.id)
        if connection is None:
            raise ConfigurationError(f"No agent connection configured for {host.name}")
        return connection

    @staticmethod
    def _key(host: Host, connection: AgentConnection, kind: SessionKind) -> tuple:
        return (host.id, host.ip_address, connection.port, kind.value)

    def acquire(
        self,
        host: Host,
        kind: SessionKind = SessionKind.SHELL,
        force_new: bool = False,
    ) -> PooledSession:
        """
        Get a live session to a host, connecting if needed.

        Raises:
            ConfigurationError: Host has no agent connection (no network I/O happens)
            AuthError: Every attempt was rejected by authentication
            NetworkError: Every attempt failed to connect
        """
        connection = self._connection_for(host)
        key = self._key(host, connection, kind)

        with self._lock:
            existing = self._sessions.pop(key, None) if force_new else self._sessions.get(key)

        if existing is not None:
            if not force_new and existing.is_alive():
                existing.last_used = utcnow()
                return existing
            if not force_new:
                logger.info(f"Cached {kind.value} session to {host.name} is stale, reconnecting")
                with self._lock:
                    if self._sessions.get(key) is existing:
                        del self._sessions[key]
            existing.close()

        session = self._connect(host, connection, kind)
        with self._lock:
            self._sessions[key] = session
        return session

    def _connect(self, host: Host, connection: AgentConnection, kind: SessionKind) -> PooledSession:
        """Open a new session with bounded retries."""
        last_error: Exception | None = None
        error_class: type = NetworkError

        for attempt in range(1, self.max_attempts + 1):
            try:
                return self._open(host, connection, kind)
            except paramiko.AuthenticationException as e:
                last_error, error_class = e, AuthError
            except TRANSPORT_ERRORS as e:
                last_error, error_class = e, NetworkError

            logger.warning(
                f"Connection attempt {attempt}/{self.max_attempts} to {host.name} "
                f"({host.ip_address}:{connection.port}) failed: {last_error}"
            )
            if attempt < self.max_attempts:
                self._sleep(self.retry_delay)

        logger.error(f"All {self.max_attempts} connection attempts to {host.name} failed")
        if error_class is AuthError:
            raise AuthError(f"SSH login failed for {host.name}: {last_error}") from last_error
        raise NetworkError(f"Unable to connect to {host.name}: {last_error}") from last_error

    def _open(self, host: Host, connection: AgentConnection, kind: SessionKind) -> PooledSession:
        connect_kwargs = {
            "hostname": host.ip_address,
            "port": connection.port,
            "username": connection.username,
            "timeout": self.connect_timeout,
            "banner_timeout": self.connect_timeout,
            "auth_timeout": self.connect_timeout,
            "allow_agent": False,
            "look_for_keys": False,
        }
        # Secrets are decrypted only for the duration of the connect call
        if connection.auth_type == AuthType.KEY:
            key_text = connection.private_key(self.vault)
            if not key_text:
                raise ConfigurationError(f"No private key stored for {host.name}")
            connect_kwargs["pkey"] = load_private_key(key_text)
        else:
            password = connection.password(self.vault)
            if password is None:
                raise ConfigurationError(f"No password stored for {host.name}")
            connect_kwargs["password"] = password

        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(**connect_kwargs)
            transport = client.get_transport()
            if transport:
                transport.set_keepalive(self.keepalive_interval)

            session = PooledSession(host_id=host.id, kind=kind, client=client)
            if kind == SessionKind.SFTP:
                session.sftp = client.open_sftp()
                session.sftp.get_channel().settimeout(self.transfer_timeout)
        except Exception:
            client.close()
            raise

        logger.info(
            f"Opened {kind.value} session to {host.name} "
            f"({connection.username}@{host.ip_address}:{connection.port})"
        )
        self.store.touch_agent_connection(host.id)
        return session

    def run(
        self,
        host: Host,
        command: str,
        stdin_data: str | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        """
        Run a command over the host's shell session.

        On a transport-level failure the session is replaced once and the
        command retried once; a second failure raises NetworkError.

        Args:
            host: Target host
            command: Command line (stdout and stderr are merged)
            stdin_data: Optional data written to stdin, used for secrets
            timeout: Channel timeout (default: connect_timeout)
        """
        session = self.acquire(host, SessionKind.SHELL)
        try:
            return self._run_once(session, command, stdin_data, timeout)
        except TRANSPORT_ERRORS as e:
            logger.warning(f"Command channel to {host.name} failed ({e}), reconnecting once")

        session = self.acquire(host, SessionKind.SHELL, force_new=True)
        try:
            return self._run_once(session, command, stdin_data, timeout)
        except TRANSPORT_ERRORS as e:
            raise NetworkError(f"Command failed on {host.name}: {e}") from e

    def execute(
        self,
        host: Host,
        command: str,
        stdin_data: str | None = None,
        timeout: float | None = None,
    ) -> str:
        """Run a command and return its combined output."""
        return self.run(host, command, stdin_data=stdin_data, timeout=timeout).output

    def _run_once(
        self,
        session: PooledSession,
        command: str,
        stdin_data: str | None,
        timeout: float | None,
    ) -> CommandResult:
        stdin, stdout, stderr = session.client.exec_command(
            command,
            timeout=timeout or self.connect_timeout,
            environment=REMOTE_ENVIRONMENT,
        )
        if stdin_data is not None:
            stdin.write(stdin_data)
            stdin.flush()
        stdin.channel.shutdown_write()

        output = stdout.read().decode("utf-8", errors="replace")
        output += stderr.read().decode("utf-8", errors="replace")
        exit_status = stdout.channel.recv_exit_status()
        session.last_used = utcnow()
        return CommandResult(output=output, exit_status=exit_status)

    def sftp(self, host: Host) -> paramiko.SFTPClient:
        """Get the host's SFTP client, connecting if needed."""
        return self.acquire(host, SessionKind.SFTP).sftp

    def release(self, host: Host) -> None:
        """Close and evict every session held for the host. Never raises."""
        with self._lock:
            keys = [key for key in self._sessions if key[0] == host.id]
            sessions = [self._sessions.pop(key) for key in keys]

        for session in sessions:
            session.close()
        if sessions:
            logger.info(f"Released {len(sessions)} session(s) for {host.name}")

    def close_all(self) -> None:
        """Close every pooled session (called on shutdown)."""
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.close()

    @property
    def session_count(self) -> int:
        with self._lock:
            return len(self._sessions)
