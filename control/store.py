"""JSON-backed record store for hosts, metrics, services and transfers."""

import json
import logging
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable

from common.errors import ConfigurationError
from common.models import (
    AgentConnection,
    Application,
    ApplicationMetricsSnapshot,
    Host,
    HostMetricsSnapshot,
    Service,
    TransferKind,
    TransferProgress,
    TransferStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_STORE_PATH = Path.home() / ".fleetdeck" / "store.json"
STORE_VERSION = 1
TRANSFER_SEQUENCE = "transfers"


class RecordStore:
    """
    Keyed record store persisted as JSON documents.

    Services are upserted by (host_id, name), snapshots are append-only and
    transfers are read and updated by their unique progress key. Pass
    ``store_path=None`` to keep everything in memory.

    Transfers live in a sibling ``<name>.transfers.json`` file so per-chunk
    progress writes never rewrite the host and metrics history.
    """

    def __init__(self, store_path: Path | None = DEFAULT_STORE_PATH):
        self.store_path = store_path
        self.transfers_path = (
            store_path.with_name(f"{store_path.stem}.transfers.json") if store_path else None
        )
        self._lock = threading.RLock()
        self._hosts: dict[int, Host] = {}
        self._agent_connections: dict[int, AgentConnection] = {}
        self._services: dict[int, Service] = {}
        self._host_metrics: list[HostMetricsSnapshot] = []
        self._applications: dict[int, Application] = {}
        self._application_metrics: list[ApplicationMetricsSnapshot] = []
        self._transfers: dict[str, TransferProgress] = {}
        self._sequences: dict[str, int] = {}
        self._load()
        self._load_transfers()

    def _load(self) -> None:
        """Load records from the JSON file."""
        if self.store_path is None:
            return
        if not self.store_path.exists():
            logger.info(f"No existing store at {self.store_path}")
            return

        try:
            with open(self.store_path) as f:
                data = json.load(f)
        except Exception as e:
            logger.error(f"Failed to load record store: {e}")
            return

        version = data.get("version", 1)
        if version > STORE_VERSION:
            logger.warning(f"Store version {version} is newer than supported {STORE_VERSION}")

        self._sequences = data.get("sequences", {})
        for item in data.get("hosts", []):
            host = Host.from_dict(item)
            self._hosts[host.id] = host
        for item in data.get("agent_connections", []):
            connection = AgentConnection.from_dict(item)
            self._agent_connections[connection.host_id] = connection
        for item in data.get("services", []):
            service = Service.from_dict(item)
            self._services[service.id] = service
        self._host_metrics = [
            HostMetricsSnapshot.from_dict(i) for i in data.get("host_metrics", [])
        ]
        for item in data.get("applications", []):
            application = Application.from_dict(item)
            self._applications[application.id] = application
        self._application_metrics = [
            ApplicationMetricsSnapshot.from_dict(i) for i in data.get("application_metrics", [])
        ]
        logger.info(f"Loaded {len(self._hosts)} hosts from {self.store_path}")

    def _load_transfers(self) -> None:
        if self.transfers_path is None or not self.transfers_path.exists():
            return

        try:
            with open(self.transfers_path) as f:
                data = json.load(f)
        except Exception as e:
            logger.error(f"Failed to load transfer records: {e}")
            return

        self._sequences[TRANSFER_SEQUENCE] = data.get("sequence", 0)
        for item in data.get("transfers", []):
            transfer = TransferProgress.from_dict(item)
            self._transfers[transfer.progress_key] = transfer

    @staticmethod
    def _write_atomic(path: Path, data: dict) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2)
        tmp_path.rename(path)

    def _save(self) -> None:
        """Persist everything except transfers atomically."""
        if self.store_path is None:
            return

        sequences = {k: v for k, v in self._sequences.items() if k != TRANSFER_SEQUENCE}
        data = {
            "version": STORE_VERSION,
            "sequences": sequences,
            "hosts": [h.to_dict() for h in self._hosts.values()],
            "agent_connections": [c.to_dict() for c in self._agent_connections.values()],
            "services": [s.to_dict() for s in self._services.values()],
            "host_metrics": [m.to_dict() for m in self._host_metrics],
            "applications": [a.to_dict() for a in self._applications.values()],
            "application_metrics": [m.to_dict() for m in self._application_metrics],
        }
        self._write_atomic(self.store_path, data)

    def _save_transfers(self) -> None:
        if self.transfers_path is None:
            return
        data = {
            "version": STORE_VERSION,
            "sequence": self._sequences.get(TRANSFER_SEQUENCE, 0),
            "transfers": [t.to_dict() for t in self._transfers.values()],
        }
        self._write_atomic(self.transfers_path, data)

    def _next_id(self, collection: str) -> int:
        value = self._sequences.get(collection, 0) + 1
        self._sequences[collection] = value
        return value

    # Hosts

    def add_host(self, host: Host) -> Host:
        with self._lock:
            host.id = self._next_id("hosts")
            self._hosts[host.id] = host
            self._save()
        logger.info(f"Added host {host.name} (id={host.id})")
        return host

    def get_host(self, host_id: int, include_deleted: bool = False) -> Host | None:
        with self._lock:
            host = self._hosts.get(host_id)
        if host is None or (host.deleted_at is not None and not include_deleted):
            return None
        return host

    def list_hosts(self, active_only: bool = False) -> list[Host]:
        with self._lock:
            hosts = [h for h in self._hosts.values() if h.deleted_at is None]
        if active_only:
            hosts = [h for h in hosts if h.is_active]
        return sorted(hosts, key=lambda h: h.id)

    def update_host(self, host_id: int, **fields) -> Host:
        with self._lock:
            host = self._hosts.get(host_id)
            if host is None:
                raise KeyError(f"Host not found: {host_id}")
            for name, value in fields.items():
                setattr(host, name, value)
            self._save()
            return host

    def soft_delete_host(self, host_id: int) -> bool:
        with self._lock:
            host = self._hosts.get(host_id)
            if host is None or host.deleted_at is not None:
                return False
            host.deleted_at = utcnow()
            host.is_active = False
            self._save()
        logger.info(f"Soft-deleted host {host.name} (id={host_id})")
        return True

    # Agent connections

    def set_agent_connection(self, connection: AgentConnection) -> AgentConnection:
        """Create or replace the single agent connection of a host."""
        with self._lock:
            if connection.host_id not in self._hosts:
                raise ConfigurationError(f"Unknown host id {connection.host_id}")
            self._agent_connections[connection.host_id] = connection
            self._save()
        return connection

    def get_agent_connection(self, host_id: int) -> AgentConnection | None:
        with self._lock:
            return self._agent_connections.get(host_id)

    def touch_agent_connection(self, host_id: int, when: datetime | None = None) -> None:
        """Record a successful connect."""
        with self._lock:
            connection = self._agent_connections.get(host_id)
            if connection is None:
                return
            connection.last_connection_at = when or utcnow()
            self._save()

    # Services

    def upsert_service(self, host_id: int, name: str, **fields) -> tuple[Service, bool]:
        """
        Insert or update a service by its natural key (host_id, name).

        Returns:
            Tuple of (service, created)
        """
        with self._lock:
            existing = self.get_service(host_id, name)
            created = existing is None
            if created:
                existing = Service(host_id=host_id, name=name, id=self._next_id("services"))
                self._services[existing.id] = existing
            for field_name, value in fields.items():
                setattr(existing, field_name, value)
            self._save()
            return existing, created

    def get_service(self, host_id: int, name: str) -> Service | None:
        with self._lock:
            for service in self._services.values():
                if service.host_id == host_id and service.name == name:
                    return service
        return None

    def list_services(self, host_id: int, service_type: str | None = None) -> list[Service]:
        with self._lock:
            services = [s for s in self._services.values() if s.host_id == host_id]
        if service_type is not None:
            services = [s for s in services if s.type == service_type]
        return sorted(services, key=lambda s: s.name)

    # Snapshots (append-only)

    def add_host_snapshot(self, snapshot: HostMetricsSnapshot) -> HostMetricsSnapshot:
        with self._lock:
            self._host_metrics.append(snapshot)
            self._save()
        return snapshot

    def list_host_snapshots(
        self, host_id: int, since: datetime | None = None
    ) -> list[HostMetricsSnapshot]:
        with self._lock:
            snapshots = [m for m in self._host_metrics if m.host_id == host_id]
        if since is not None:
            snapshots = [m for m in snapshots if m.recorded_at >= since]
        return sorted(snapshots, key=lambda m: m.recorded_at)

    def add_application_snapshot(
        self, snapshot: ApplicationMetricsSnapshot
    ) -> ApplicationMetricsSnapshot:
        with self._lock:
            self._application_metrics.append(snapshot)
            self._save()
        return snapshot

    def list_application_snapshots(self, application_id: int) -> list[ApplicationMetricsSnapshot]:
        with self._lock:
            snapshots = [
                m for m in self._application_metrics if m.application_id == application_id
            ]
        return sorted(snapshots, key=lambda m: m.recorded_at)

    def purge_snapshots(self, older_than: timedelta = timedelta(days=30)) -> int:
        """Drop host and application snapshots recorded before the cutoff."""
        cutoff = utcnow() - older_than
        with self._lock:
            before = len(self._host_metrics) + len(self._application_metrics)
            self._host_metrics = [m for m in self._host_metrics if m.recorded_at >= cutoff]
            self._application_metrics = [
                m for m in self._application_metrics if m.recorded_at >= cutoff
            ]
            removed = before - len(self._host_metrics) - len(self._application_metrics)
            if removed:
                self._save()
        if removed:
            logger.info(f"Purged {removed} metrics snapshot(s) older than {older_than}")
        return removed

    # Applications

    def add_application(self, application: Application) -> Application:
        with self._lock:
            application.id = self._next_id("applications")
            self._applications[application.id] = application
            self._save()
        return application

    def get_application(self, application_id: int) -> Application | None:
        with self._lock:
            return self._applications.get(application_id)

    def list_applications(
        self, host_id: int | None = None, status: str | None = None
    ) -> list[Application]:
        with self._lock:
            applications = list(self._applications.values())
        if host_id is not None:
            applications = [a for a in applications if a.host_id == host_id]
        if status is not None:
            applications = [a for a in applications if a.status == status]
        return sorted(applications, key=lambda a: a.id)

    def update_application(self, application_id: int, **fields) -> Application:
        with self._lock:
            application = self._applications.get(application_id)
            if application is None:
                raise KeyError(f"Application not found: {application_id}")
            for name, value in fields.items():
                setattr(application, name, value)
            self._save()
            return application

    # Transfers

    def create_transfer(self, transfer: TransferProgress) -> TransferProgress:
        with self._lock:
            if transfer.progress_key in self._transfers:
                raise ValueError(f"Duplicate progress key: {transfer.progress_key}")
            transfer.id = self._next_id(TRANSFER_SEQUENCE)
            self._transfers[transfer.progress_key] = transfer
            self._save_transfers()
        return transfer

    def get_transfer(self, progress_key: str) -> TransferProgress | None:
        with self._lock:
            return self._transfers.get(progress_key)

    def get_transfer_by_id(self, transfer_id: int) -> TransferProgress | None:
        with self._lock:
            for transfer in self._transfers.values():
                if transfer.id == transfer_id:
                    return transfer
        return None

    def list_transfers(
        self,
        host_id: int | None = None,
        kind: TransferKind | None = None,
        status: TransferStatus | None = None,
    ) -> list[TransferProgress]:
        with self._lock:
            transfers = list(self._transfers.values())
        if host_id is not None:
            transfers = [t for t in transfers if t.host_id == host_id]
        if kind is not None:
            transfers = [t for t in transfers if t.kind == kind]
        if status is not None:
            transfers = [t for t in transfers if t.status == status]
        return sorted(transfers, key=lambda t: t.created_at, reverse=True)

    def mutate_transfer(
        self, progress_key: str, mutator: Callable[[TransferProgress], bool]
    ) -> tuple[TransferProgress, bool]:
        """
        Apply a state change to a transfer under the store lock.

        The record is persisted only when the mutator reports a change.

        Returns:
            Tuple of (transfer, changed)
        """
        with self._lock:
            transfer = self._transfers.get(progress_key)
            if transfer is None:
                raise KeyError(f"Transfer not found: {progress_key}")
            changed = mutator(transfer)
            if changed:
                self._save_transfers()
            return transfer, changed

    def delete_transfer(self, progress_key: str) -> bool:
        with self._lock:
            if self._transfers.pop(progress_key, None) is None:
                return False
            self._save_transfers()
            return True

    def purge_transfers(self, older_than: timedelta = timedelta(days=7)) -> int:
        """Remove terminal transfers completed before the cutoff."""
        cutoff = utcnow() - older_than
        with self._lock:
            stale = [
                key
                for key, t in self._transfers.items()
                if t.is_terminal and t.completed_at is not None and t.completed_at < cutoff
            ]
            for key in stale:
                del self._transfers[key]
            if stale:
                self._save_transfers()
        if stale:
            logger.info(f"Purged {len(stale)} transfer record(s) older than {older_than}")
        return len(stale)
