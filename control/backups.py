"""Database dumps on a host, fetched back through a tracked download."""

import logging
import shlex
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from common.errors import ConfigurationError, TransferError
from common.models import TransferProgress, utcnow
from control.context import FleetContext
from control.transfer_service import TransferService
from remote.commands import redact, stdin_secret, with_stdin_env

logger = logging.getLogger(__name__)

DUMP_DIR = "/tmp"
DEFAULT_PORTS = {"mysql": 3306, "postgresql": 5432}
DATABASE_ALIASES = {
    "mysql": "mysql",
    "mariadb": "mysql",
    "postgresql": "postgresql",
    "postgres": "postgresql",
    "pgsql": "postgresql",
}


@dataclass
class DumpRequest:
    """Everything needed to dump one database."""

    database_type: str
    name: str
    user: str
    password: str | None = None
    port: int | None = None


def normalize_database_type(database_type: str) -> str:
    normalized = DATABASE_ALIASES.get((database_type or "").strip().lower())
    if normalized is None:
        raise ConfigurationError(f"Unsupported database type: {database_type}")
    return normalized


def build_dump_command(request: DumpRequest, dump_path: str) -> str:
    """
    Build the dump command for a request.

    With a password, the command reads it from stdin into MYSQL_PWD or
    PGPASSWORD for that one invocation; it is never part of the string.
    """
    database_type = normalize_database_type(request.database_type)
    port = int(request.port or DEFAULT_PORTS[database_type])
    if not 0 < port < 65536:
        raise ConfigurationError(f"Invalid port number: {port}")

    user = shlex.quote(request.user)
    name = shlex.quote(request.name)
    target = shlex.quote(dump_path)
    if database_type == "postgresql":
        command = f"pg_dump -h localhost -p {port} -U {user} -d {name} -f {target}"
        variable = "PGPASSWORD"
    else:
        command = f"mysqldump -u {user} -P {port} {name} > {target}"
        variable = "MYSQL_PWD"

    if request.password:
        return with_stdin_env(variable, command)
    return command


@dataclass
class DumpResult:
    """A finished dump waiting on the host to be downloaded."""

    host_id: int
    remote_path: str
    file_name: str


class DatabaseBackup:
    """Dumps a database to the host's /tmp and queues the download."""

    def __init__(
        self,
        context: FleetContext,
        transfers: TransferService,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.context = context
        self.transfers = transfers
        self._clock = clock

    def dump(
        self,
        host_id: int,
        database_type: str,
        name: str,
        user: str,
        password: str | None = None,
        port: int | None = None,
    ) -> DumpResult:
        """
        Run the dump on the host. Blocks for as long as the dump takes.

        The dump command gets the pool's transfer timeout: it writes to a file
        and stays silent on its channel until it exits.

        Raises:
            ConfigurationError: Unsupported database type or invalid port
            TransferError: The dump produced no file or an empty one
        """
        host = self.context.require_host(host_id)
        request = DumpRequest(database_type, name, user, password, port)
        timestamp = self._clock().strftime("%Y-%m-%d_%H-%M-%S")
        file_name = f"{name}_dump_{timestamp}.sql"
        dump_path = f"{DUMP_DIR}/{file_name}"

        command = build_dump_command(request, dump_path)
        logger.info(f"Dumping {request.database_type} database {name} on {host.name}")
        pool = self.context.pool
        result = pool.run(
            host, command, stdin_data=stdin_secret(password), timeout=pool.transfer_timeout
        )
        output = redact(result.output.strip(), [password])
        if not result.ok:
            logger.warning(
                f"Dump of {name} on {host.name} exited with {result.exit_status}: {output[:200]}"
            )

        check = pool.run(host, f"test -s {shlex.quote(dump_path)}")
        if not check.ok:
            raise TransferError(f"Database dump failed: {output[:200]}")
        return DumpResult(host.id, dump_path, file_name)

    def download(self, dump: DumpResult) -> TransferProgress:
        """Queue the download of a finished dump. Must run on the event loop thread."""
        return self.transfers.start_download(
            dump.host_id, dump.remote_path, local_name=dump.file_name
        )

    def create(
        self,
        host_id: int,
        database_type: str,
        name: str,
        user: str,
        password: str | None = None,
        port: int | None = None,
    ) -> TransferProgress:
        """Dump a database and start downloading the dump."""
        return self.download(self.dump(host_id, database_type, name, user, password, port))
