"""Tests for common/models.py - record types and the transfer state machine."""

from datetime import datetime, timedelta, timezone

import pytest

from common.models import (
    AgentConnection,
    FrameworkKind,
    Host,
    HostStatus,
    OsType,
    TransferKind,
    TransferProgress,
    TransferStatus,
    bytes_to_mb,
    from_iso,
    to_iso,
)

T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def make_transfer(**kwargs):
    defaults = dict(
        progress_key="download_1_abcd1234",
        kind=TransferKind.DOWNLOAD,
        host_id=1,
        remote_path="/var/log/syslog",
        local_name="downloads/download_1_abcd1234/syslog",
    )
    defaults.update(kwargs)
    return TransferProgress(**defaults)


class TestHelpers:
    """Tests for the conversion helpers."""

    def test_bytes_to_mb(self):
        assert bytes_to_mb(1572864) == 1.5
        assert bytes_to_mb(0) == 0.0

    def test_iso_uses_z_suffix(self):
        assert to_iso(T0) == "2024-05-01T12:00:00Z"
        assert from_iso("2024-05-01T12:00:00Z") == T0

    def test_naive_iso_assumed_utc(self):
        assert from_iso("2024-05-01T12:00:00").tzinfo == timezone.utc

    def test_empty_iso(self):
        assert from_iso(None) is None
        assert from_iso("") is None


class TestEnums:
    """Tests for enum normalization."""

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("ubuntu", OsType.UBUNTU),
            ('"Ubuntu"', OsType.UBUNTU),
            ("'rocky'", OsType.ROCKY),
            ("AlmaLinux", OsType.ALMALINUX),
            ("arch", OsType.OTHER),
            (None, OsType.OTHER),
        ],
    )
    def test_os_type_normalize(self, raw, expected):
        assert OsType.normalize(raw) == expected

    def test_framework_aliases(self):
        assert FrameworkKind.parse("Express") == FrameworkKind.NODE
        assert FrameworkKind.parse("laravel") == FrameworkKind.LARAVEL
        assert FrameworkKind.parse("cobol") == FrameworkKind.UNKNOWN
        assert FrameworkKind.parse(None) == FrameworkKind.UNKNOWN


class TestRecordConversion:
    """Tests for to_dict() / from_dict()."""

    def test_host_dict(self):
        host = Host(
            name="db-01",
            ip_address="10.0.0.7",
            id=3,
            status=HostStatus.ONLINE,
            os_type=OsType.DEBIAN,
            last_ping_at=T0,
        )
        data = host.to_dict()

        assert data["status"] == "online"
        assert data["os_type"] == "debian"
        assert data["last_ping_at"] == "2024-05-01T12:00:00Z"
        assert Host.from_dict(data) == host

    def test_from_dict_ignores_unknown_keys(self):
        host = Host.from_dict({"name": "a", "ip_address": "10.0.0.1", "legacy": True})
        assert host.name == "a"

    def test_agent_connection_encrypts_secrets(self, vault):
        connection = AgentConnection.create(vault, 1, "deploy", password="s3cret")

        assert connection.password_encrypted != "s3cret"
        assert connection.password(vault) == "s3cret"
        assert connection.private_key(vault) is None
        assert "s3cret" not in str(connection.to_dict())


class TestTransferStateMachine:
    """Tests for TransferProgress transitions."""

    def test_begin_sets_start_once(self):
        transfer = make_transfer()

        assert transfer.begin(T0) is True
        assert transfer.status == TransferStatus.IN_FLIGHT
        assert transfer.started_at == T0

        assert transfer.begin(T0 + timedelta(seconds=5)) is False
        assert transfer.started_at == T0

    def test_progress_requires_in_flight(self):
        transfer = make_transfer()
        assert transfer.update_progress(1.0) is False
        assert transfer.transferred_mb == 0.0

    def test_progress_is_monotonic(self):
        transfer = make_transfer()
        transfer.begin(T0)

        assert transfer.update_progress(2.0) is True
        assert transfer.update_progress(1.5) is False
        assert transfer.update_progress(2.0) is False
        assert transfer.transferred_mb == 2.0

    def test_complete_pins_totals(self):
        transfer = make_transfer(total_size_mb=10.0)
        transfer.begin(T0)
        transfer.update_progress(4.0)

        assert transfer.complete(9.876, T0 + timedelta(seconds=3)) is True
        assert transfer.transferred_mb == transfer.total_size_mb == 9.88
        assert transfer.completed_at == T0 + timedelta(seconds=3)

    def test_no_writes_after_terminal(self):
        transfer = make_transfer()
        transfer.begin(T0)
        transfer.complete(5.0, T0)

        assert transfer.fail("late failure") is False
        assert transfer.update_progress(6.0) is False
        assert transfer.set_total(20.0) is False
        assert transfer.begin() is False
        assert transfer.status == TransferStatus.COMPLETE
        assert transfer.error_message is None

    def test_failed_never_becomes_complete(self):
        transfer = make_transfer()
        transfer.begin(T0)
        transfer.fail("boom", T0)

        assert transfer.complete(5.0) is False
        assert transfer.status == TransferStatus.FAILED

    def test_cancel_flag(self):
        transfer = make_transfer()
        transfer.fail("Cancelled by user", cancelled=True)
        assert transfer.was_cancelled is True
        assert transfer.is_terminal

    def test_reset_for_retry(self):
        transfer = make_transfer()
        transfer.begin(T0)
        transfer.update_progress(3.0)
        transfer.fail("network down", T0)

        assert transfer.reset_for_retry() is True
        assert transfer.status == TransferStatus.PENDING
        assert transfer.transferred_mb == 0.0
        assert transfer.error_message is None
        assert transfer.started_at is None

    def test_reset_refused_unless_failed(self):
        transfer = make_transfer()
        assert transfer.reset_for_retry() is False
        transfer.begin(T0)
        assert transfer.reset_for_retry() is False

    def test_cancelled_reset_needs_force(self):
        transfer = make_transfer()
        transfer.fail("Cancelled by user", cancelled=True)

        assert transfer.reset_for_retry() is False
        assert transfer.reset_for_retry(force=True) is True
        assert transfer.cancel_requested is False


class TestTransferDerivedFields:
    """Tests for percentage, speed and ETA."""

    def test_percentage(self):
        transfer = make_transfer(total_size_mb=8.0)
        transfer.begin(T0)
        transfer.update_progress(2.0)
        assert transfer.percentage() == 25.0

    @pytest.mark.parametrize("total", [None, 0.0])
    def test_percentage_unknown_total(self, total):
        transfer = make_transfer(total_size_mb=total)
        assert transfer.percentage() is None

    def test_eta_and_speed(self):
        transfer = make_transfer(total_size_mb=10.0)
        transfer.begin(T0)
        transfer.update_progress(2.0)
        now = T0 + timedelta(seconds=10)

        assert transfer.speed_mb_s(now) == 0.2
        assert transfer.eta_seconds(now) == 40

    def test_eta_none_before_progress(self):
        transfer = make_transfer(total_size_mb=10.0)
        transfer.begin(T0)
        assert transfer.eta_seconds(T0 + timedelta(seconds=10)) is None

    def test_eta_none_when_not_in_flight(self):
        transfer = make_transfer(total_size_mb=10.0)
        transfer.begin(T0)
        transfer.update_progress(5.0)
        transfer.complete(10.0, T0 + timedelta(seconds=20))
        assert transfer.eta_seconds(T0 + timedelta(seconds=30)) is None

    def test_speed_frozen_after_completion(self):
        transfer = make_transfer()
        transfer.begin(T0)
        transfer.complete(10.0, T0 + timedelta(seconds=5))
        assert transfer.speed_mb_s(T0 + timedelta(hours=1)) == 2.0

    def test_progress_view(self):
        transfer = make_transfer(total_size_mb=4.0)
        transfer.begin(T0)
        transfer.update_progress(1.0)

        view = transfer.progress_view(T0 + timedelta(seconds=2))

        assert view["status"] == "in_flight"
        assert view["kind"] == "download"
        assert view["percentage"] == 25.0
        assert view["speed_mb_s"] == 0.5
        assert view["eta_seconds"] == 6
