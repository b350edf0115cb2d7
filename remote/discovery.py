"""systemd unit discovery and reconciliation against stored services."""

import logging
import re
import shlex
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from common.models import Host, Service, ServiceType, utcnow
from remote.commands import INVENTORY_PREFIX, niced
from remote.transport import SessionKind, SessionPool

logger = logging.getLogger(__name__)

LIST_UNITS_COMMAND = "systemctl list-units --type=service --all --no-pager"

HEADER_PATTERN = re.compile(r"^\s*UNIT\s+LOAD\s+ACTIVE\s+SUB\s+DESCRIPTION")
ROW_PATTERN = re.compile(r"^(\S+)\s+(\S+)\s+(\S+)\s+(\S+)\s*(.*)$")
# Status bullets systemctl prints in front of failed or unknown units
BULLETS = "●*× "

WEB_SERVER_UNITS = ("nginx", "apache2", "httpd", "caddy", "lighttpd", "openresty")
DATABASE_UNITS = ("mysql", "mysqld", "mariadb", "postgresql", "mongod", "redis", "redis-server")

COMMON_LOG_PATHS = (
    "/var/log/{name}/error.log",
    "/var/log/{name}/{name}.log",
    "/var/log/{name}.log",
)


@dataclass
class ServiceRecord:
    """One row of ``systemctl list-units`` output."""

    name: str
    load: str
    active: str
    sub: str
    description: str

    @property
    def status(self) -> str:
        return f"{self.active}/{self.sub}"

    @property
    def service_type(self) -> str:
        return classify_unit(self.name).value


def classify_unit(name: str) -> ServiceType:
    """Tell web servers and databases apart from other units by name."""
    base = name.lower().removesuffix(".service").split("@")[0]
    if base in WEB_SERVER_UNITS or base.startswith("php") and base.endswith("fpm"):
        return ServiceType.WEB_SERVER
    if base in DATABASE_UNITS or base.startswith("postgresql"):
        return ServiceType.DATABASE
    return ServiceType.SYSTEMD


def parse_unit_listing(output: str) -> list[ServiceRecord]:
    """
    Parse ``systemctl list-units`` output.

    Blank lines, the header, and the legend/footer block are skipped. Only
    units whose load state is "loaded" are returned.
    """
    records = []
    for raw_line in output.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("Legend:") or "loaded units listed" in line:
            continue
        if HEADER_PATTERN.match(line):
            continue

        line = line.lstrip(BULLETS)
        match = ROW_PATTERN.match(line)
        if not match:
            continue

        name, load, active, sub, description = match.groups()
        if load != "loaded":
            logger.debug(f"Skipping unit {name} with load state {load}")
            continue
        records.append(
            ServiceRecord(
                name=name,
                load=load,
                active=active,
                sub=sub,
                description=description.strip(),
            )
        )
    return records


class ServiceDiscovery:
    """Lists services on a host and mirrors them into the record store."""

    def __init__(
        self,
        pool: SessionPool,
        store,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.pool = pool
        self.store = store
        self._clock = clock

    def discover(self, host: Host) -> list[ServiceRecord]:
        """
        Run the unit-listing probe and parse it.

        Raises:
            ConfigurationError, AuthError, NetworkError: Host cannot be reached
        """
        self.pool.acquire(host, SessionKind.SHELL)
        output = self.pool.execute(host, niced(LIST_UNITS_COMMAND, INVENTORY_PREFIX))
        records = parse_unit_listing(output)
        logger.info(f"Discovered {len(records)} loaded services on {host.name}")
        return records

    def reconcile(self, host: Host, records: list[ServiceRecord]) -> list[Service]:
        """Upsert every record by (host, name). Repeated runs never add rows."""
        now = self._clock()
        services = []
        created_count = 0
        for record in records:
            service, created = self.store.upsert_service(
                host.id,
                record.name,
                description=record.description,
                type=record.service_type,
                status=record.status,
                last_checked_at=now,
            )
            created_count += int(created)
            services.append(service)

        logger.info(
            f"Reconciled {len(services)} services on {host.name} ({created_count} new)"
        )
        return services

    def discover_and_reconcile(self, host: Host) -> list[Service]:
        return self.reconcile(host, self.discover(host))

    def get_service_details(self, host: Host, name: str) -> str:
        """Raw ``systemctl status`` dump for one unit."""
        return self.pool.execute(host, f"systemctl status {shlex.quote(name)} --no-pager")

    def get_service_logs(self, host: Host, name: str, lines: int = 100) -> str:
        """Recent log lines from the journal, falling back to common log files."""
        quoted = shlex.quote(name)
        try:
            output = self.pool.execute(
                host, f"journalctl -u {quoted} -n {int(lines)} --no-pager 2>/dev/null"
            )
            if output.strip() and "No entries" not in output:
                return output
        except Exception as e:
            logger.debug(f"journalctl unavailable for {name} on {host.name}: {e}")

        base = name.removesuffix(".service")
        for template in COMMON_LOG_PATHS:
            path = shlex.quote(template.format(name=base))
            try:
                output = self.pool.execute(
                    host, f"test -r {path} && tail -n {int(lines)} {path}"
                )
            except Exception as e:
                logger.debug(f"Reading {path} on {host.name} failed: {e}")
                continue
            if output.strip():
                return output
        return ""

    def get_service_resource_usage(self, host: Host, name: str) -> dict:
        """CPU and memory of the unit's main process; empty when not running."""
        try:
            pid_output = self.pool.execute(
                host, f"systemctl show -p MainPID --value {shlex.quote(name)}"
            )
            pid = int(pid_output.strip() or 0)
            if pid <= 0:
                return {}
            usage = self.pool.execute(host, f"ps -o %cpu=,%mem=,rss= -p {pid}")
            cpu, mem, rss = usage.split()[:3]
            return {
                "pid": pid,
                "cpu_percent": float(cpu),
                "memory_percent": float(mem),
                "rss_kb": int(rss),
            }
        except Exception as e:
            logger.warning(f"Resource usage lookup for {name} on {host.name} failed: {e}")
            return {}

    def get_service_config_paths(self, host: Host, name: str) -> list[str]:
        """Unit file, drop-ins and an /etc directory named after the unit."""
        paths: list[str] = []
        quoted = shlex.quote(name)
        try:
            output = self.pool.execute(
                host, f"systemctl show -p FragmentPath -p DropInPaths --value {quoted}"
            )
            for token in output.split():
                if token.startswith("/") and token not in paths:
                    paths.append(token)
        except Exception as e:
            logger.warning(f"Config path lookup for {name} on {host.name} failed: {e}")

        etc_dir = f"/etc/{name.removesuffix('.service')}"
        try:
            if self.pool.run(host, f"test -d {shlex.quote(etc_dir)}").ok:
                paths.append(etc_dir)
        except Exception as e:
            logger.debug(f"Checking {etc_dir} on {host.name} failed: {e}")
        return paths
