"""Host and application metrics collected through shell probes."""

import logging
import re
import shlex
from datetime import datetime, timezone
from typing import Any, Callable

from common.errors import ProbeError
from common.models import (
    Application,
    ApplicationMetricsSnapshot,
    Host,
    HostMetricsSnapshot,
    OsType,
    Service,
    ServiceType,
    utcnow,
)
from remote.commands import INVENTORY_PREFIX, METRICS_PREFIX, niced, stdin_secret, sudo_wrap
from remote.transport import SessionKind, SessionPool

logger = logging.getLogger(__name__)

DEFAULT_INTERFACE = "eth0"

UPTIME_UNITS = {
    "week": 7 * 86400,
    "day": 86400,
    "hour": 3600,
    "minute": 60,
}


def parse_uptime_phrase(text: str) -> int:
    """
    Convert ``uptime -p`` output into seconds.

    Every unit is optional; "up 45 minutes" is 2700.
    """
    total = 0
    for unit, seconds in UPTIME_UNITS.items():
        match = re.search(rf"(\d+)\s+{unit}s?\b", text)
        if match:
            total += int(match.group(1)) * seconds
    return total


def parse_unix_timestamp(text: str) -> datetime | None:
    """
    Parse ``systemctl show --timestamp=unix`` output such as ``@1713176521``.

    The remote side reports epoch seconds, so the host's local zone never
    enters the calculation. Units that never started report ``n/a`` or nothing.
    """
    match = re.fullmatch(r"@?(\d+)", text.strip())
    if not match:
        return None
    seconds = int(match.group(1))
    if seconds == 0:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def parse_cpu_usage(output: str) -> float:
    """Busy percentage from the Cpu(s) line of ``top -bn1``."""
    line = next((l for l in output.splitlines() if "Cpu(s)" in l), None)
    if line is None:
        raise ProbeError("No Cpu(s) line in top output")
    idle = re.search(r"([\d.]+)\s*%?\s*id", line)
    if idle:
        return round(100.0 - float(idle.group(1)), 2)
    user = re.search(r"([\d.]+)\s*%?\s*us", line)
    system = re.search(r"([\d.]+)\s*%?\s*sy", line)
    if user and system:
        return round(float(user.group(1)) + float(system.group(1)), 2)
    raise ProbeError(f"Unrecognized Cpu(s) line: {line!r}")


def parse_free(output: str) -> dict[str, tuple[int, int]]:
    """Map 'mem' and 'swap' to (total, used) from ``free`` output."""
    result = {}
    for line in output.splitlines():
        parts = line.split()
        if len(parts) >= 3 and parts[0].rstrip(":").lower() in ("mem", "swap"):
            result[parts[0].rstrip(":").lower()] = (int(parts[1]), int(parts[2]))
    if "mem" not in result:
        raise ProbeError("No Mem line in free output")
    return result


def parse_df(output: str) -> tuple[int, int]:
    """(total, used) from the data row of ``df -P``; unit suffixes are stripped."""
    lines = [l for l in output.splitlines() if l.strip()]
    if len(lines) < 2:
        raise ProbeError("Unexpected df output")
    fields = lines[1].split()
    return int(fields[1].rstrip("GMK")), int(fields[2].rstrip("GMK"))


def parse_loadavg(output: str) -> tuple[float, float, float]:
    fields = output.split()
    if len(fields) < 3:
        raise ProbeError("Unexpected /proc/loadavg content")
    return float(fields[0]), float(fields[1]), float(fields[2])


def parse_default_route(output: str) -> tuple[str | None, str | None]:
    """(gateway, interface) from ``ip route show default``."""
    gateway = re.search(r"\bvia\s+(\S+)", output)
    interface = re.search(r"\bdev\s+(\S+)", output)
    return (
        gateway.group(1) if gateway else None,
        interface.group(1) if interface else None,
    )


def parse_net_dev(output: str, interface: str) -> tuple[int, int]:
    """(received, transmitted) bytes for one interface from /proc/net/dev."""
    for line in output.splitlines():
        name, sep, counters = line.partition(":")
        if sep and name.strip() == interface:
            fields = counters.split()
            return int(fields[0]), int(fields[8])
    raise ProbeError(f"Interface {interface} not found in /proc/net/dev")


def parse_os_release(output: str) -> dict[str, str]:
    values = {}
    for line in output.splitlines():
        key, sep, value = line.partition("=")
        if sep:
            values[key.strip()] = value.strip().strip("\"'")
    return values


def parse_first_int(output: str) -> int:
    match = re.search(r"-?\d+", output)
    if not match:
        raise ProbeError(f"No integer in probe output: {output.strip()[:80]!r}")
    return int(match.group(0))


class MetricsCollector:
    """
    Runs a fixed battery of probes against a host.

    Each probe fails independently: a failure is logged as a warning and the
    field it feeds keeps its default. Connection problems are raised before
    any probe runs.
    """

    def __init__(
        self,
        pool: SessionPool,
        store,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.pool = pool
        self.store = store
        self._clock = clock

    def _probe(
        self,
        host: Host,
        name: str,
        command: str,
        parser: Callable[[str], Any],
        default: Any,
        prefix: str = METRICS_PREFIX,
        stdin_data: str | None = None,
    ) -> Any:
        try:
            output = self.pool.execute(host, niced(command, prefix), stdin_data=stdin_data)
            return parser(output)
        except Exception as e:
            logger.warning(f"Probe {name} failed on {host.name}: {e}")
            return default

    def collect(self, host: Host) -> HostMetricsSnapshot:
        """
        Collect one host metrics snapshot (not persisted).

        Raises:
            ConfigurationError, AuthError, NetworkError: Host cannot be reached
        """
        self.pool.acquire(host, SessionKind.SHELL)

        snapshot = HostMetricsSnapshot(host_id=host.id, recorded_at=self._clock())
        snapshot.cpu_usage = self._probe(
            host, "cpu", "top -bn1 | grep 'Cpu(s)'", parse_cpu_usage, 0.0
        )

        memory = self._probe(host, "memory", "free -m", parse_free, {})
        snapshot.memory_total, snapshot.memory_used = memory.get("mem", (0, 0))
        snapshot.swap_total, snapshot.swap_used = memory.get("swap", (0, 0))

        snapshot.disk_total, snapshot.disk_used = self._probe(
            host, "disk", "df -Pm /", parse_df, (0, 0)
        )
        snapshot.process_count = self._probe(
            host, "processes", "ps -e --no-headers | wc -l", parse_first_int, 0
        )
        (
            snapshot.load_average_1,
            snapshot.load_average_5,
            snapshot.load_average_15,
        ) = self._probe(host, "load", "cat /proc/loadavg", parse_loadavg, (0.0, 0.0, 0.0))
        snapshot.uptime_date = self._probe(
            host, "uptime", "uptime -s", lambda out: out.strip() or None, None
        )

        _, interface = self._probe(
            host, "route", "ip route show default", parse_default_route, (None, None)
        )
        interface = interface or DEFAULT_INTERFACE
        snapshot.network_in, snapshot.network_out = self._probe(
            host,
            "network",
            "cat /proc/net/dev",
            lambda out: parse_net_dev(out, interface),
            (0, 0),
        )

        logger.info(
            f"Collected metrics for {host.name}: cpu={snapshot.cpu_usage}% "
            f"mem={snapshot.memory_used}/{snapshot.memory_total}MB"
        )
        return snapshot

    def fetch_host_details(self, host: Host) -> dict:
        """
        Probe static inventory facts (hostname, OS, hardware, addresses).

        Returns:
            dict of Host field names to values; failed probes are left out
        """
        self.pool.acquire(host, SessionKind.SHELL)

        def probe(name, command, parser):
            return self._probe(host, name, command, parser, None, prefix=INVENTORY_PREFIX)

        details: dict[str, Any] = {}
        details["hostname"] = probe("hostname", "hostname", lambda out: out.strip() or None)

        os_release = probe("os-release", "cat /etc/os-release", parse_os_release) or {}
        details["os_type"] = OsType.normalize(os_release.get("ID"))
        details["os_version"] = os_release.get("PRETTY_NAME")

        details["cpu_model"] = probe(
            "cpu-model",
            "lscpu",
            lambda out: re.search(r"Model name:\s*(.+)", out).group(1).strip(),
        )
        details["cpu_cores"] = probe("cpu-cores", "nproc", parse_first_int)
        details["ram_gb"] = probe("ram", "free -g", lambda out: parse_free(out)["mem"][0])
        details["disk_gb"] = probe("disk", "df -PBG /", lambda out: parse_df(out)[0])
        details["public_ip"] = probe(
            "public-ip",
            "curl -s --max-time 5 ifconfig.me || curl -s --max-time 5 icanhazip.com",
            lambda out: out.strip() or None,
        )
        details["gateway"] = probe(
            "gateway", "ip route show default", lambda out: parse_default_route(out)[0]
        )

        return {key: value for key, value in details.items() if value is not None}

    def collect_application(
        self,
        host: Host,
        application: Application,
        sudo_password: str | None = None,
    ) -> ApplicationMetricsSnapshot:
        """
        Collect request/error counters and uptime for one application.

        Log files are read through sudo; the password goes over stdin.
        """
        self.pool.acquire(host, SessionKind.SHELL)

        snapshot = ApplicationMetricsSnapshot(
            application_id=application.id, recorded_at=self._clock()
        )
        snapshot.request_count = self._count_log_lines(
            host, application.access_log_path, sudo_password
        )
        snapshot.error_count = self._count_log_lines(
            host, application.error_log_path, sudo_password
        )
        snapshot.uptime = self.application_uptime(host, application)
        return snapshot

    def _count_log_lines(self, host: Host, path: str | None, sudo_password: str | None) -> int:
        if not path:
            return 0
        command = sudo_wrap(f"wc -l < {shlex.quote(path)}")
        return self._probe(
            host,
            f"log-lines {path}",
            command,
            parse_first_int,
            0,
            stdin_data=stdin_secret(sudo_password),
        )

    def application_uptime(self, host: Host, application: Application) -> int:
        """
        Uptime of the application's web server unit, else its database unit,
        else the host itself.
        """
        services = self.store.list_services(host.id)
        web = _pick_service(services, ServiceType.WEB_SERVER, application.web_server)
        database = _pick_service(services, ServiceType.DATABASE, application.database_type)

        for unit in (web, database):
            if unit is None:
                continue
            seconds = self.service_uptime(host, unit.name)
            if seconds > 0:
                return seconds
        return self.host_uptime(host)

    def service_uptime(self, host: Host, unit: str) -> int:
        """Seconds since the unit last entered the active state, floored at zero."""
        started = self._probe(
            host,
            f"uptime {unit}",
            f"systemctl show -p ActiveEnterTimestamp --value --timestamp=unix {shlex.quote(unit)}",
            parse_unix_timestamp,
            None,
        )
        if started is None:
            return 0
        return max(0, int((self._clock() - started).total_seconds()))

    def host_uptime(self, host: Host) -> int:
        return self._probe(host, "uptime-p", "uptime -p", parse_uptime_phrase, 0)


def _pick_service(
    services: list[Service], service_type: ServiceType, hint: str | None
) -> Service | None:
    candidates = [s for s in services if s.type == service_type.value]
    if hint:
        hinted = [s for s in candidates if hint.lower() in s.name.lower()]
        if hinted:
            return hinted[0]
    return candidates[0] if candidates else None
