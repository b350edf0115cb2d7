"""Tests for control/store.py - JSON-backed record store."""

import json
import threading
from datetime import timedelta

import pytest

from common.errors import ConfigurationError
from common.models import (
    AgentConnection,
    Application,
    ApplicationMetricsSnapshot,
    Host,
    HostMetricsSnapshot,
    TransferKind,
    TransferProgress,
    TransferStatus,
    utcnow,
)
from control.store import RecordStore


def make_transfer(host_id, suffix, kind=TransferKind.DOWNLOAD):
    return TransferProgress(
        progress_key=f"{kind.value}_{host_id}_{suffix}",
        kind=kind,
        host_id=host_id,
        remote_path="/var/log/syslog",
        local_name=f"downloads/{suffix}/syslog",
    )


class TestHosts:
    """Tests for host records."""

    def test_ids_are_sequential(self, store):
        first = store.add_host(Host(name="a", ip_address="10.0.0.1"))
        second = store.add_host(Host(name="b", ip_address="10.0.0.2"))
        assert (first.id, second.id) == (1, 2)

    def test_soft_delete_hides_host(self, store):
        host = store.add_host(Host(name="a", ip_address="10.0.0.1"))

        assert store.soft_delete_host(host.id) is True
        assert store.soft_delete_host(host.id) is False
        assert store.get_host(host.id) is None
        assert store.get_host(host.id, include_deleted=True).is_active is False
        assert store.list_hosts() == []

    def test_list_active_only(self, store):
        store.add_host(Host(name="a", ip_address="10.0.0.1"))
        store.add_host(Host(name="b", ip_address="10.0.0.2", is_active=False))
        assert [h.name for h in store.list_hosts(active_only=True)] == ["a"]

    def test_update_unknown_host(self, store):
        with pytest.raises(KeyError):
            store.update_host(99, remarks="x")

    def test_agent_connection_requires_host(self, store, vault):
        with pytest.raises(ConfigurationError):
            store.set_agent_connection(AgentConnection.create(vault, 42, "root", password="x"))


class TestServices:
    """Tests for service upserts."""

    def test_upsert_by_natural_key(self, store, host):
        service, created = store.upsert_service(host.id, "nginx.service", status="active/running")
        again, created_again = store.upsert_service(
            host.id, "nginx.service", status="failed/failed"
        )

        assert created is True and created_again is False
        assert again.id == service.id
        assert store.get_service(host.id, "nginx.service").status == "failed/failed"
        assert len(store.list_services(host.id)) == 1

    def test_filter_by_type(self, store, host):
        store.upsert_service(host.id, "nginx.service", type="web server")
        store.upsert_service(host.id, "cron.service", type="systemd")
        assert [s.name for s in store.list_services(host.id, "web server")] == ["nginx.service"]


class TestSnapshots:
    """Tests for append-only snapshots."""

    def test_purge_old_snapshots(self, store, host):
        now = utcnow()
        app = store.add_application(Application(host_id=host.id, name="shop", path="/srv/shop"))
        store.add_host_snapshot(HostMetricsSnapshot(host_id=host.id, recorded_at=now))
        store.add_host_snapshot(
            HostMetricsSnapshot(host_id=host.id, recorded_at=now - timedelta(days=45))
        )
        store.add_application_snapshot(
            ApplicationMetricsSnapshot(application_id=app.id, recorded_at=now - timedelta(days=45))
        )

        assert store.purge_snapshots(timedelta(days=30)) == 2
        assert len(store.list_host_snapshots(host.id)) == 1
        assert store.list_application_snapshots(app.id) == []
        assert store.purge_snapshots(timedelta(days=30)) == 0

    def test_since_filter(self, store, host):
        now = utcnow()
        store.add_host_snapshot(HostMetricsSnapshot(host_id=host.id, recorded_at=now))
        store.add_host_snapshot(
            HostMetricsSnapshot(host_id=host.id, recorded_at=now - timedelta(days=2))
        )

        assert len(store.list_host_snapshots(host.id)) == 2
        assert len(store.list_host_snapshots(host.id, since=now - timedelta(days=1))) == 1


class TestApplications:
    """Tests for application records."""

    def test_list_by_status(self, store, host):
        store.add_application(
            Application(host_id=host.id, name="shop", path="/srv/shop", status="up")
        )
        store.add_application(Application(host_id=host.id, name="blog", path="/srv/blog"))

        assert [a.name for a in store.list_applications(status="up")] == ["shop"]
        assert len(store.list_applications(host_id=host.id)) == 2

    def test_update(self, store, host):
        app = store.add_application(Application(host_id=host.id, name="shop", path="/srv/shop"))
        store.update_application(app.id, web_server="nginx")
        assert store.get_application(app.id).web_server == "nginx"


class TestTransfers:
    """Tests for transfer records."""

    def test_unique_progress_key(self, store, host):
        store.create_transfer(make_transfer(host.id, "aaaa1111"))
        with pytest.raises(ValueError, match="Duplicate"):
            store.create_transfer(make_transfer(host.id, "aaaa1111"))

    def test_lookup_by_id(self, store, host):
        transfer = store.create_transfer(make_transfer(host.id, "aaaa1111"))
        assert store.get_transfer_by_id(transfer.id) is transfer
        assert store.get_transfer_by_id(999) is None

    def test_mutate_reports_change(self, store, host):
        transfer = store.create_transfer(make_transfer(host.id, "aaaa1111"))

        _, changed = store.mutate_transfer(transfer.progress_key, lambda t: t.begin())
        _, changed_again = store.mutate_transfer(transfer.progress_key, lambda t: t.begin())

        assert changed is True
        assert changed_again is False

    def test_mutate_unknown(self, store):
        with pytest.raises(KeyError):
            store.mutate_transfer("download_1_missing0", lambda t: t.begin())

    def test_filters(self, store, host):
        store.create_transfer(make_transfer(host.id, "aaaa1111"))
        upload = store.create_transfer(make_transfer(host.id, "bbbb2222", TransferKind.UPLOAD))
        store.mutate_transfer(upload.progress_key, lambda t: t.fail("boom"))

        assert len(store.list_transfers(host_id=host.id)) == 2
        assert store.list_transfers(kind=TransferKind.UPLOAD) == [upload]
        assert store.list_transfers(status=TransferStatus.FAILED) == [upload]

    def test_purge_only_old_terminal_records(self, store, host):
        old = store.create_transfer(make_transfer(host.id, "aaaa1111"))
        recent = store.create_transfer(make_transfer(host.id, "bbbb2222"))
        running = store.create_transfer(make_transfer(host.id, "cccc3333"))
        ten_days_ago = utcnow() - timedelta(days=10)
        store.mutate_transfer(old.progress_key, lambda t: t.fail("x", ten_days_ago))
        store.mutate_transfer(recent.progress_key, lambda t: t.complete(1.0))
        store.mutate_transfer(running.progress_key, lambda t: t.begin())

        assert store.purge_transfers(timedelta(days=7)) == 1
        assert store.get_transfer(old.progress_key) is None
        assert store.get_transfer(recent.progress_key) is not None
        assert store.get_transfer(running.progress_key) is not None

    def test_delete(self, store, host):
        transfer = store.create_transfer(make_transfer(host.id, "aaaa1111"))
        assert store.delete_transfer(transfer.progress_key) is True
        assert store.delete_transfer(transfer.progress_key) is False


class TestPersistence:
    """Tests for the JSON file backend."""

    def test_reload(self, tmp_path, vault):
        path = tmp_path / "store.json"
        store = RecordStore(path)
        host = store.add_host(Host(name="web-01", ip_address="10.0.0.5"))
        store.set_agent_connection(AgentConnection.create(vault, host.id, "deploy", password="pw"))
        store.upsert_service(host.id, "nginx.service", status="active/running")
        transfer = store.create_transfer(make_transfer(host.id, "aaaa1111"))
        store.mutate_transfer(transfer.progress_key, lambda t: t.begin())

        reloaded = RecordStore(path)

        assert reloaded.get_host(host.id).name == "web-01"
        assert reloaded.get_agent_connection(host.id).password(vault) == "pw"
        assert reloaded.get_service(host.id, "nginx.service").status == "active/running"
        restored = reloaded.get_transfer(transfer.progress_key)
        assert restored.status == TransferStatus.IN_FLIGHT
        assert restored.started_at == transfer.started_at
        # Sequences survive so ids are never reused
        assert reloaded.add_host(Host(name="web-02", ip_address="10.0.0.6")).id == 2

    def test_atomic_write_leaves_no_tmp(self, tmp_path):
        path = tmp_path / "store.json"
        RecordStore(path).add_host(Host(name="a", ip_address="10.0.0.1"))

        assert path.exists()
        assert not path.with_suffix(".tmp").exists()
        assert json.loads(path.read_text())["version"] == 1

    def test_corrupt_file_starts_empty(self, tmp_path):
        path = tmp_path / "store.json"
        path.write_text("{not json")
        assert RecordStore(path).list_hosts() == []

    def test_refused_mutation_not_persisted(self, tmp_path):
        path = tmp_path / "store.json"
        store = RecordStore(path)
        host = store.add_host(Host(name="a", ip_address="10.0.0.1"))
        transfer = store.create_transfer(make_transfer(host.id, "aaaa1111"))
        before = path.stat().st_mtime_ns

        store.mutate_transfer(transfer.progress_key, lambda t: t.update_progress(1.0))

        assert path.stat().st_mtime_ns == before

    def test_transfer_writes_skip_main_document(self, tmp_path):
        path = tmp_path / "store.json"
        store = RecordStore(path)
        host = store.add_host(Host(name="a", ip_address="10.0.0.1"))
        store.add_host_snapshot(HostMetricsSnapshot(host_id=host.id))
        before = path.stat().st_mtime_ns
        transfer = store.create_transfer(make_transfer(host.id, "aaaa1111"))

        store.mutate_transfer(transfer.progress_key, lambda t: t.begin())
        store.mutate_transfer(transfer.progress_key, lambda t: t.update_progress(1.0))

        assert path.stat().st_mtime_ns == before
        assert "transfers" not in json.loads(path.read_text())
        saved = json.loads((tmp_path / "store.transfers.json").read_text())
        assert saved["sequence"] == 1
        assert saved["transfers"][0]["progress_key"] == transfer.progress_key

    def test_transfer_ids_survive_reload(self, tmp_path):
        path = tmp_path / "store.json"
        store = RecordStore(path)
        host = store.add_host(Host(name="a", ip_address="10.0.0.1"))
        store.create_transfer(make_transfer(host.id, "aaaa1111"))

        second = RecordStore(path).create_transfer(make_transfer(host.id, "bbbb2222"))

        assert second.id == 2


class TestConcurrency:
    """Readers and writers on different threads."""

    def test_readers_during_upserts(self, store, host):
        errors = []
        done = threading.Event()

        def writer():
            try:
                for i in range(2000):
                    store.upsert_service(host.id, f"unit-{i}.service", status="active/running")
            finally:
                done.set()

        thread = threading.Thread(target=writer)
        thread.start()
        try:
            while not done.is_set():
                store.get_service(host.id, "missing.service")
                store.list_services(host.id)
                store.list_transfers(host_id=host.id)
        except RuntimeError as e:
            errors.append(str(e))
        finally:
            thread.join()

        assert errors == []
        assert len(store.list_services(host.id)) == 2000

    @pytest.mark.parametrize(
        "read",
        [
            lambda store, host_id: store.get_host(host_id),
            lambda store, host_id: store.list_services(host_id),
            lambda store, host_id: store.list_host_snapshots(host_id),
            lambda store, host_id: store.list_transfers(host_id=host_id),
        ],
    )
    def test_reads_wait_for_lock(self, store, host, read):
        results = []
        reader = threading.Thread(target=lambda: results.append(read(store, host.id)))

        with store._lock:
            reader.start()
            reader.join(timeout=0.2)
            assert reader.is_alive()

        reader.join(timeout=5)
        assert len(results) == 1
