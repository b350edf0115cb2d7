"""Tests for remote/metrics.py - probe parsing and collection."""

from datetime import datetime, timedelta, timezone

import pytest

from common.errors import ConfigurationError, ProbeError
from common.models import Application, OsType, ServiceType
from remote.metrics import (
    MetricsCollector,
    parse_cpu_usage,
    parse_default_route,
    parse_df,
    parse_free,
    parse_loadavg,
    parse_net_dev,
    parse_unix_timestamp,
    parse_uptime_phrase,
)

NOW = datetime(2024, 4, 20, 12, 0, 0, tzinfo=timezone.utc)


def epoch(moment: datetime) -> str:
    return f"@{int(moment.timestamp())}"


FREE_M = """\
               total        used        free      shared  buff/cache   available
Mem:            7963        2101        3120         112        2741        5460
Swap:           2047          12        2035
"""

DF_M = """\
Filesystem     1048576-blocks  Used Available Capacity Mounted on
/dev/vda1              81003 23456     57531      29% /
"""

NET_DEV = """\
Inter-|   Receive                                                |  Transmit
 face |bytes    packets errs drop fifo frame compressed multicast|bytes    packets errs drop fifo colls carrier compressed
    lo:  123456     100    0    0    0     0          0         0   123456     100    0    0    0     0       0          0
  ens3: 9876543   20000    0    0    0     0          0         0  1234567   15000    0    0    0     0       0          0
"""

OS_RELEASE = """\
NAME="Ubuntu"
VERSION="22.04.4 LTS (Jammy Jellyfish)"
ID=ubuntu
PRETTY_NAME="Ubuntu 22.04.4 LTS"
"""


class TestParseUptimePhrase:
    """Tests for uptime phrase parsing."""

    def test_all_units(self):
        assert parse_uptime_phrase("up 4 weeks, 4 days, 20 hours, 43 minutes") == (
            4 * 7 * 86400 + 4 * 86400 + 20 * 3600 + 43 * 60
        )

    def test_days_hours_minutes(self):
        assert parse_uptime_phrase("up 2 days, 3 hours, 45 minutes") == (
            2 * 86400 + 3 * 3600 + 45 * 60
        )

    def test_minutes_only(self):
        assert parse_uptime_phrase("up 45 minutes") == 2700

    def test_singular_units(self):
        assert parse_uptime_phrase("up 1 week, 1 day, 1 hour, 1 minute") == (
            7 * 86400 + 86400 + 3600 + 60
        )

    def test_garbage(self):
        assert parse_uptime_phrase("") == 0


class TestParseUnixTimestamp:
    """Tests for ActiveEnterTimestamp parsing."""

    def test_epoch_with_marker(self):
        parsed = parse_unix_timestamp("@1713176521\n")
        assert parsed == datetime(2024, 4, 15, 10, 22, 1, tzinfo=timezone.utc)

    def test_bare_epoch(self):
        assert parse_unix_timestamp("1713176521") == parse_unix_timestamp("@1713176521")

    def test_not_available(self):
        assert parse_unix_timestamp("n/a") is None
        assert parse_unix_timestamp("") is None
        assert parse_unix_timestamp("@0") is None

    def test_formatted_local_time_is_rejected(self):
        assert parse_unix_timestamp("Mon 2024-04-15 18:22:01 PST") is None


class TestProbeParsers:
    """Tests for the individual probe parsers."""

    def test_cpu_from_idle(self):
        line = "%Cpu(s):  3.1 us,  1.0 sy,  0.0 ni, 95.5 id,  0.2 wa,  0.0 hi,  0.1 si"
        assert parse_cpu_usage(line) == 4.5

    def test_cpu_missing_line(self):
        with pytest.raises(ProbeError):
            parse_cpu_usage("nothing here")

    def test_free(self):
        assert parse_free(FREE_M) == {"mem": (7963, 2101), "swap": (2047, 12)}

    def test_df(self):
        assert parse_df(DF_M) == (81003, 23456)

    def test_df_with_unit_suffix(self):
        output = (
            "Filesystem 1G-blocks Used Available Capacity Mounted on\n"
            "/dev/vda1 80G 23G 57G 29% /\n"
        )
        assert parse_df(output) == (80, 23)

    def test_loadavg(self):
        assert parse_loadavg("0.52 0.48 0.41 1/234 5678") == (0.52, 0.48, 0.41)

    def test_default_route(self):
        output = "default via 10.0.0.1 dev ens3 proto dhcp src 10.0.0.5 metric 100"
        assert parse_default_route(output) == ("10.0.0.1", "ens3")

    def test_default_route_empty(self):
        assert parse_default_route("") == (None, None)

    def test_net_dev(self):
        assert parse_net_dev(NET_DEV, "ens3") == (9876543, 1234567)

    def test_net_dev_missing_interface(self):
        with pytest.raises(ProbeError):
            parse_net_dev(NET_DEV, "eth0")


@pytest.fixture
def healthy_pool(pool_factory):
    return pool_factory(
        {
            "top -bn1": "%Cpu(s): 10.0 us,  5.0 sy,  0.0 ni, 85.0 id,  0.0 wa",
            "free -m": FREE_M,
            "df -Pm /": DF_M,
            "ps -e --no-headers": "142\n",
            "cat /proc/loadavg": "0.52 0.48 0.41 1/234 5678\n",
            "uptime -s": "2024-04-01 08:00:00\n",
            "ip route show default": "default via 10.0.0.1 dev ens3 proto dhcp\n",
            "cat /proc/net/dev": NET_DEV,
        }
    )


class TestCollect:
    """Tests for MetricsCollector.collect()."""

    def test_full_snapshot(self, store, host, healthy_pool):
        collector = MetricsCollector(healthy_pool, store, clock=lambda: NOW)
        snapshot = collector.collect(host)

        assert snapshot.host_id == host.id
        assert snapshot.recorded_at == NOW
        assert snapshot.cpu_usage == 15.0
        assert (snapshot.memory_total, snapshot.memory_used) == (7963, 2101)
        assert (snapshot.swap_total, snapshot.swap_used) == (2047, 12)
        assert (snapshot.disk_total, snapshot.disk_used) == (81003, 23456)
        assert snapshot.process_count == 142
        assert snapshot.load_average_15 == 0.41
        assert snapshot.uptime_date == "2024-04-01 08:00:00"
        assert (snapshot.network_in, snapshot.network_out) == (9876543, 1234567)

    def test_probes_are_niced(self, store, host, healthy_pool):
        MetricsCollector(healthy_pool, store).collect(host)
        assert all(
            command.startswith("ionice -c2 -n7 nice -n 19 ")
            for command, _ in healthy_pool.commands
        )

    def test_failed_probe_defaults_field(self, store, host, healthy_pool):
        """One broken probe degrades one field and nothing else."""
        healthy_pool.responses["free -m"] = RuntimeError("channel hiccup")
        snapshot = MetricsCollector(healthy_pool, store).collect(host)

        assert snapshot.memory_total == 0
        assert snapshot.swap_total == 0
        assert snapshot.cpu_usage == 15.0
        assert snapshot.process_count == 142

    def test_falls_back_to_eth0(self, store, host, healthy_pool):
        healthy_pool.responses["ip route show default"] = ""
        healthy_pool.responses["cat /proc/net/dev"] = NET_DEV.replace("ens3", "eth0")
        snapshot = MetricsCollector(healthy_pool, store).collect(host)
        assert snapshot.network_in == 9876543

    def test_unreachable_host_raises(self, store, host, pool_factory):
        pool = pool_factory()
        pool.acquire.side_effect = ConfigurationError("No agent connection configured")

        with pytest.raises(ConfigurationError):
            MetricsCollector(pool, store).collect(host)
        assert pool.commands == []


class TestFetchHostDetails:
    """Tests for inventory probes."""

    def test_details(self, store, host, pool_factory):
        pool = pool_factory(
            {
                "hostname": "web-01.example.com\n",
                "cat /etc/os-release": OS_RELEASE,
                "lscpu": "Architecture: x86_64\nModel name:  Intel(R) Xeon(R) CPU\n",
                "nproc": "4\n",
                "free -g": "       total used\nMem:       7    2\n",
                "df -PBG /": "Filesystem 1G-blocks Used\n/dev/vda1 80G 23G\n",
                "ifconfig.me": "203.0.113.7\n",
                "ip route show default": "default via 10.0.0.1 dev ens3\n",
            }
        )
        details = MetricsCollector(pool, store).fetch_host_details(host)

        assert details == {
            "hostname": "web-01.example.com",
            "os_type": OsType.UBUNTU,
            "os_version": "Ubuntu 22.04.4 LTS",
            "cpu_model": "Intel(R) Xeon(R) CPU",
            "cpu_cores": 4,
            "ram_gb": 7,
            "disk_gb": 80,
            "public_ip": "203.0.113.7",
            "gateway": "10.0.0.1",
        }
        assert all(c.startswith("nice -n 10 ionice -c2 -n7 ") for c, _ in pool.commands)

    def test_unknown_os_and_failed_probes(self, store, host, pool_factory):
        pool = pool_factory({"cat /etc/os-release": "ID=gentoo\n"})
        details = MetricsCollector(pool, store).fetch_host_details(host)

        assert details["os_type"] == OsType.OTHER
        assert "cpu_cores" not in details
        assert "hostname" not in details


class TestApplicationMetrics:
    """Tests for application snapshots and the uptime policy."""

    @pytest.fixture
    def application(self, store, host):
        return store.add_application(
            Application(
                host_id=host.id,
                name="shop",
                path="/var/www/shop",
                web_server="nginx",
                database_type="mysql",
                access_log_path="/var/log/nginx/access.log",
                status="up",
            )
        )

    def test_log_counts_use_sudo_over_stdin(self, store, host, application, pool_factory):
        pool = pool_factory({"access.log": "1500\n", "uptime -p": "up 45 minutes"})
        snapshot = MetricsCollector(pool, store).collect_application(host, application, "s3cret")

        assert snapshot.request_count == 1500
        assert snapshot.error_count == 0
        assert snapshot.response_time_avg == 0.0
        command, stdin_data = next(c for c in pool.commands if "access.log" in c[0])
        assert "sudo -S" in command
        assert "s3cret" not in command
        assert stdin_data == "s3cret\n"

    def test_missing_log_counts_zero(self, store, host, application, pool_factory):
        pool = pool_factory({"access.log": PermissionError("denied")})
        snapshot = MetricsCollector(pool, store).collect_application(host, application)
        assert snapshot.request_count == 0

    def test_uptime_prefers_web_server(self, store, host, application, pool_factory):
        store.upsert_service(host.id, "nginx.service", type=ServiceType.WEB_SERVER.value)
        store.upsert_service(host.id, "mysql.service", type=ServiceType.DATABASE.value)
        started = NOW - timedelta(hours=2)
        pool = pool_factory(
            {
                "nginx.service": epoch(started),
                "mysql.service": epoch(NOW - timedelta(days=19)),
            }
        )
        collector = MetricsCollector(pool, store, clock=lambda: NOW)
        assert collector.application_uptime(host, application) == 7200

    def test_uptime_falls_back_to_database(self, store, host, application, pool_factory):
        store.upsert_service(host.id, "nginx.service", type=ServiceType.WEB_SERVER.value)
        store.upsert_service(host.id, "mysql.service", type=ServiceType.DATABASE.value)
        started = NOW - timedelta(minutes=30)
        pool = pool_factory(
            {
                "nginx.service": "n/a",
                "mysql.service": epoch(started),
            }
        )
        collector = MetricsCollector(pool, store, clock=lambda: NOW)
        assert collector.application_uptime(host, application) == 1800

    def test_uptime_falls_back_to_host(self, store, host, application, pool_factory):
        pool = pool_factory({"uptime -p": "up 2 days, 3 hours, 45 minutes"})
        collector = MetricsCollector(pool, store, clock=lambda: NOW)
        assert collector.application_uptime(host, application) == 2 * 86400 + 3 * 3600 + 45 * 60

    def test_service_uptime_floors_at_zero(self, store, host, pool_factory):
        pool = pool_factory({"ActiveEnterTimestamp": epoch(NOW + timedelta(minutes=5))})
        collector = MetricsCollector(pool, store, clock=lambda: NOW)
        assert collector.service_uptime(host, "nginx.service") == 0

    def test_service_uptime_ignores_host_zone(self, store, host, pool_factory):
        manila = timezone(timedelta(hours=8))
        local_now = NOW.astimezone(manila)
        pool = pool_factory({"ActiveEnterTimestamp": epoch(local_now - timedelta(hours=1))})
        collector = MetricsCollector(pool, store, clock=lambda: local_now)

        assert collector.service_uptime(host, "nginx.service") == 3600
        command = pool.commands[0][0]
        assert "--timestamp=unix" in command
