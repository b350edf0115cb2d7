"""Record types exchanged between the remote layer and the record store."""

import math
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from common.credentials import CredentialVault

BYTES_PER_MB = 1024 * 1024


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat().replace("+00:00", "Z")


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def bytes_to_mb(size: int | float) -> float:
    """Convert a byte count to MB rounded to 2 places."""
    return round(size / BYTES_PER_MB, 2)


class HostStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    UNKNOWN = "unknown"


class OsType(str, Enum):
    """Closed set of operating system families."""

    UBUNTU = "ubuntu"
    CENTOS = "centos"
    ALMALINUX = "almalinux"
    DEBIAN = "debian"
    ROCKY = "rocky"
    OTHER = "other"

    @classmethod
    def normalize(cls, value: str | None) -> "OsType":
        """Map a raw os-release ID (any case, optional quotes) onto the enum."""
        if not value:
            return cls.OTHER
        cleaned = value.strip().strip("\"'").lower()
        for member in cls:
            if member.value == cleaned:
                return member
        return cls.OTHER


class AuthType(str, Enum):
    PASSWORD = "password"
    KEY = "key"


class ServiceType(str, Enum):
    SYSTEMD = "systemd"
    WEB_SERVER = "web server"
    DATABASE = "database"


class FrameworkKind(str, Enum):
    """Application framework families the inspector knows how to read."""

    LARAVEL = "laravel"
    CODEIGNITER = "codeigniter"
    DJANGO = "django"
    NODE = "node"
    RAILS = "rails"
    PHP = "php"
    PYTHON = "python"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: str | None) -> "FrameworkKind":
        if not value:
            return cls.UNKNOWN
        cleaned = value.strip().lower()
        aliases = {"express": "node", "nodejs": "node", "ruby": "rails"}
        cleaned = aliases.get(cleaned, cleaned)
        for member in cls:
            if member.value == cleaned:
                return member
        return cls.UNKNOWN


class TransferKind(str, Enum):
    DOWNLOAD = "download"
    UPLOAD = "upload"


class TransferStatus(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    COMPLETE = "complete"
    FAILED = "failed"


TERMINAL_STATUSES = (TransferStatus.COMPLETE, TransferStatus.FAILED)
CANCELLED_MESSAGE = "Cancelled by user"


class Record:
    """Dict conversion shared by the stored record types."""

    # Field names holding datetimes, serialized as ISO-8601
    DATETIME_FIELDS: tuple[str, ...] = ()
    # Field name -> Enum class
    ENUM_FIELDS: dict[str, type] = {}

    def to_dict(self) -> dict:
        data = asdict(self)
        for name in self.DATETIME_FIELDS:
            data[name] = to_iso(data.get(name))
        for name in self.ENUM_FIELDS:
            value = data.get(name)
            if isinstance(value, Enum):
                data[name] = value.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> Any:
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        for name in cls.DATETIME_FIELDS:
            if name in values:
                values[name] = from_iso(values[name])
        for name, enum_cls in cls.ENUM_FIELDS.items():
            if values.get(name) is not None:
                values[name] = enum_cls(values[name])
        return cls(**values)


@dataclass
class Host(Record):
    """A managed remote machine."""

    name: str
    ip_address: str
    port: int = 22
    id: int | None = None
    is_active: bool = True
    status: HostStatus = HostStatus.UNKNOWN
    remarks: str | None = None
    hostname: str | None = None
    os_type: OsType | None = None
    os_version: str | None = None
    cpu_model: str | None = None
    cpu_cores: int | None = None
    ram_gb: int | None = None
    disk_gb: int | None = None
    public_ip: str | None = None
    gateway: str | None = None
    last_ping_at: datetime | None = None
    deleted_at: datetime | None = None

    DATETIME_FIELDS = ("last_ping_at", "deleted_at")
    ENUM_FIELDS = {"status": HostStatus, "os_type": OsType}


@dataclass
class AgentConnection(Record):
    """Credentials for reaching a host. Secrets are stored as Fernet tokens."""

    host_id: int
    username: str
    auth_type: AuthType = AuthType.PASSWORD
    port: int = 22
    password_encrypted: str | None = None
    ssh_key_encrypted: str | None = None
    last_connection_at: datetime | None = None

    DATETIME_FIELDS = ("last_connection_at",)
    ENUM_FIELDS = {"auth_type": AuthType}

    @classmethod
    def create(
        cls,
        vault: CredentialVault,
        host_id: int,
        username: str,
        auth_type: AuthType = AuthType.PASSWORD,
        password: str | None = None,
        ssh_key: str | None = None,
        port: int = 22,
    ) -> "AgentConnection":
        """Build a connection record, encrypting the secrets on the way in."""
        return cls(
            host_id=host_id,
            username=username,
            auth_type=AuthType(auth_type),
            port=port,
            password_encrypted=vault.encrypt(password),
            ssh_key_encrypted=vault.encrypt(ssh_key),
        )

    def password(self, vault: CredentialVault) -> str | None:
        """Decrypt the account password (also used for sudo)."""
        return vault.decrypt(self.password_encrypted)

    def private_key(self, vault: CredentialVault) -> str | None:
        return vault.decrypt(self.ssh_key_encrypted)


@dataclass
class Service(Record):
    host_id: int
    name: str
    id: int | None = None
    description: str = ""
    type: str = ServiceType.SYSTEMD.value
    status: str = ""
    last_checked_at: datetime | None = None

    DATETIME_FIELDS = ("last_checked_at",)


@dataclass
class HostMetricsSnapshot(Record):
    """One collection cycle of host metrics. Never mutated after insert."""

    host_id: int
    cpu_usage: float = 0.0
    memory_total: int = 0  # MB
    memory_used: int = 0  # MB
    disk_total: int = 0  # MB
    disk_used: int = 0  # MB
    process_count: int = 0
    load_average_1: float = 0.0
    load_average_5: float = 0.0
    load_average_15: float = 0.0
    uptime_date: str | None = None
    network_in: int = 0  # bytes since boot
    network_out: int = 0  # bytes since boot
    swap_total: int = 0  # MB
    swap_used: int = 0  # MB
    recorded_at: datetime = field(default_factory=utcnow)

    DATETIME_FIELDS = ("recorded_at",)


@dataclass
class Application(Record):
    """A deployed software unit living under a path on a host."""

    host_id: int
    name: str
    path: str
    id: int | None = None
    type: FrameworkKind = FrameworkKind.UNKNOWN
    framework_version: str | None = None
    language: str | None = None
    language_version: str | None = None
    app_url: str | None = None
    web_server: str | None = None
    database_type: str | None = None
    access_log_path: str | None = None
    error_log_path: str | None = None
    status: str = "unknown"
    environment_variables: dict = field(default_factory=dict)
    additional_settings: dict = field(default_factory=dict)
    last_deployed_at: datetime | None = None

    DATETIME_FIELDS = ("last_deployed_at",)
    ENUM_FIELDS = {"type": FrameworkKind}


@dataclass
class ApplicationMetricsSnapshot(Record):
    application_id: int
    request_count: int = 0
    error_count: int = 0
    uptime: int = 0  # seconds
    response_time_avg: float = 0.0
    cache_hit_ratio: float = 0.0
    recorded_at: datetime = field(default_factory=utcnow)

    DATETIME_FIELDS = ("recorded_at",)


@dataclass
class TransferProgress(Record):
    """
    Progress of a single upload or download.

    Status only moves forward: pending -> in_flight -> complete | failed.
    Every mutator returns True when it changed the record and False when the
    write was refused, so callers can tell a stale writer from a real update.
    """

    progress_key: str
    kind: TransferKind
    host_id: int
    remote_path: str
    local_name: str
    id: int | None = None
    transferred_mb: float = 0.0
    total_size_mb: float | None = None
    status: TransferStatus = TransferStatus.PENDING
    error_message: str | None = None
    cancel_requested: bool = False
    overwrite: bool = False
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    DATETIME_FIELDS = ("started_at", "completed_at", "created_at", "updated_at")
    ENUM_FIELDS = {"kind": TransferKind, "status": TransferStatus}

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_in_progress(self) -> bool:
        return self.status in (TransferStatus.PENDING, TransferStatus.IN_FLIGHT)

    @property
    def was_cancelled(self) -> bool:
        return self.cancel_requested

    def _touch(self, now: datetime | None = None) -> None:
        self.updated_at = now or utcnow()

    def begin(self, now: datetime | None = None) -> bool:
        """Enter in_flight. The start timestamp is only ever set once."""
        if self.is_terminal:
            return False
        now = now or utcnow()
        changed = False
        if self.status == TransferStatus.PENDING:
            self.status = TransferStatus.IN_FLIGHT
            changed = True
        if self.started_at is None:
            self.started_at = now
            changed = True
        if changed:
            self._touch(now)
        return changed

    def set_total(self, total_mb: float) -> bool:
        if self.is_terminal:
            return False
        self.total_size_mb = round(total_mb, 2)
        self._touch()
        return True

    def update_progress(self, transferred_mb: float) -> bool:
        """Record cumulative progress; ignores regressions and post-terminal writes."""
        if self.status != TransferStatus.IN_FLIGHT:
            return False
        value = round(transferred_mb, 2)
        if value <= self.transferred_mb:
            return False
        self.transferred_mb = value
        self._touch()
        return True

    def complete(self, final_mb: float, now: datetime | None = None) -> bool:
        if self.is_terminal:
            return False
        now = now or utcnow()
        final = round(final_mb, 2)
        self.status = TransferStatus.COMPLETE
        self.transferred_mb = final
        self.total_size_mb = final
        self.completed_at = now
        self._touch(now)
        return True

    def fail(self, error: str, now: datetime | None = None, cancelled: bool = False) -> bool:
        if self.is_terminal:
            return False
        now = now or utcnow()
        self.status = TransferStatus.FAILED
        self.error_message = error
        self.completed_at = now
        if cancelled:
            self.cancel_requested = True
        self._touch(now)
        return True

    def reset_for_retry(self, force: bool = False) -> bool:
        """
        Rewind a failed record to pending with zeroed counters.

        A cancelled record is only rewound when ``force`` is set, which is how
        an explicit operator retry differs from an automatic one.
        """
        if self.status != TransferStatus.FAILED:
            return False
        if self.cancel_requested and not force:
            return False
        self.status = TransferStatus.PENDING
        self.transferred_mb = 0.0
        self.error_message = None
        self.cancel_requested = False
        self.started_at = None
        self.completed_at = None
        self._touch()
        return True

    def percentage(self) -> float | None:
        if self.total_size_mb is None or self.total_size_mb <= 0:
            return None
        return round(self.transferred_mb / self.total_size_mb * 100, 2)

    def _elapsed(self, now: datetime | None) -> float | None:
        if self.started_at is None:
            return None
        end = self.completed_at if self.is_terminal and self.completed_at else (now or utcnow())
        return (end - self.started_at).total_seconds()

    def speed_mb_s(self, now: datetime | None = None) -> float | None:
        """Average throughput in MB/s since the transfer started."""
        elapsed = self._elapsed(now)
        if not elapsed or elapsed <= 0:
            return None
        return round(self.transferred_mb / elapsed, 2)

    def eta_seconds(self, now: datetime | None = None) -> int | None:
        """Seconds remaining at the average rate; None unless measurable and in flight."""
        if self.status != TransferStatus.IN_FLIGHT:
            return None
        if self.total_size_mb is None or self.transferred_mb <= 0:
            return None
        elapsed = self._elapsed(now)
        if not elapsed or elapsed <= 0:
            return None
        rate = self.transferred_mb / elapsed
        if rate <= 0:
            return None
        remaining = max(self.total_size_mb - self.transferred_mb, 0.0)
        return math.ceil(remaining / rate)

    def progress_view(self, now: datetime | None = None) -> dict:
        """Full record plus the derived fields, as served to polling clients."""
        data = self.to_dict()
        data["percentage"] = self.percentage()
        data["eta_seconds"] = self.eta_seconds(now)
        data["speed_mb_s"] = self.speed_mb_s(now)
        return data
