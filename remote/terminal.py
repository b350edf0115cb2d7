"""Interactive terminal commands relayed to hosts over pooled sessions."""

import logging

from common.credentials import CredentialVault
from common.errors import CommandBlocked, ConfigurationError
from common.events import EventType, terminal_channel
from common.models import Host
from remote.commands import redact, stdin_secret, sudo_wrap
from remote.safety import find_rule
from remote.transport import SessionKind, SessionPool

logger = logging.getLogger(__name__)

BLOCKED_MESSAGE = "Command blocked for security reasons"


class TerminalSession:
    """
    Maps logical terminal connections onto the host's pooled shell session.

    Every call publishes exactly one ``terminal.output`` event on the host's
    terminal channel, tagged with the logical connection id. Disconnecting
    releases the host's sessions for every logical terminal on that host;
    the others reconnect on their next command.
    """

    def __init__(
        self,
        pool: SessionPool,
        store,
        vault: CredentialVault,
        broadcaster,
        command_timeout: float | None = None,
    ):
        self.pool = pool
        self.store = store
        self.vault = vault
        self.broadcaster = broadcaster
        self.command_timeout = command_timeout

    def _emit(self, host: Host, connection_id: str, output: str) -> None:
        self.broadcaster.publish(
            EventType.TERMINAL_OUTPUT,
            terminal_channel(host.id),
            {"output": output, "host_id": host.id, "connection_id": connection_id},
        )

    def connect(self, host: Host, connection_id: str) -> str:
        """Open (or reuse) the shell session and greet the terminal."""
        self.pool.acquire(host, SessionKind.SHELL)
        message = f"Connected to {host.name} terminal"
        self._emit(host, connection_id, message)
        logger.info(f"Terminal {connection_id} connected to {host.name}")
        return message

    def execute(
        self,
        host: Host,
        command: str,
        connection_id: str,
        sudo: bool = False,
    ) -> str:
        """
        Run a command for a terminal after the safety check.

        Raises:
            CommandBlocked: The command matched a dangerous pattern; it was not sent
            ConfigurationError: sudo requested but no password is stored
            AuthError, NetworkError: The host could not be reached
        """
        rule = find_rule(command)
        if rule is not None:
            logger.warning(f"Terminal {connection_id} on {host.name}: blocked [{rule}]")
            self._emit(host, connection_id, BLOCKED_MESSAGE)
            raise CommandBlocked(BLOCKED_MESSAGE)

        password = None
        command_line = command
        if sudo:
            password = self._sudo_password(host)
            command_line = sudo_wrap(command)

        logger.info(f"Terminal {connection_id} on {host.name}: {redact(command, [password])}")
        try:
            output = self.pool.execute(
                host,
                command_line,
                stdin_data=stdin_secret(password),
                timeout=self.command_timeout,
            )
        except Exception as e:
            logger.error(f"Terminal command failed on {host.name}: {redact(str(e), [password])}")
            raise

        self._emit(host, connection_id, output)
        return output

    def disconnect(self, host: Host, connection_id: str) -> str:
        self.pool.release(host)
        message = f"Disconnected from {host.name} terminal"
        self._emit(host, connection_id, message)
        logger.info(f"Terminal {connection_id} disconnected from {host.name}")
        return message

    def _sudo_password(self, host: Host) -> str:
        connection = self.store.get_agent_connection(host.id)
        password = connection.password(self.vault) if connection else None
        if not password:
            raise ConfigurationError(f"No sudo password stored for {host.name}")
        return password
