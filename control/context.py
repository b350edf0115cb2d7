"""Wiring of the store, pool and remote components from a Config."""

import logging
from dataclasses import dataclass
from pathlib import Path

from common.credentials import CredentialVault
from common.errors import RecordNotFound
from common.models import Application, Host
from control.broadcaster import EventBroadcaster
from control.config import Config
from control.store import RecordStore
from remote.applications import ApplicationInspector
from remote.browser import RemoteBrowser
from remote.discovery import ServiceDiscovery
from remote.metrics import MetricsCollector
from remote.terminal import TerminalSession
from remote.transfers import TransferTracker
from remote.transport import SessionPool

logger = logging.getLogger(__name__)


@dataclass
class FleetContext:
    """Everything a job or request handler needs, built once per process."""

    config: Config
    store: RecordStore
    vault: CredentialVault
    pool: SessionPool
    broadcaster: EventBroadcaster
    metrics: MetricsCollector
    discovery: ServiceDiscovery
    tracker: TransferTracker
    terminal: TerminalSession
    inspector: ApplicationInspector
    browser: RemoteBrowser

    @classmethod
    def from_config(
        cls,
        config: Config,
        store: RecordStore | None = None,
        broadcaster: EventBroadcaster | None = None,
    ) -> "FleetContext":
        store = store or RecordStore(Path(config.store_path).expanduser())
        vault = CredentialVault(config.secret_key)
        broadcaster = broadcaster or EventBroadcaster(webhook_url=config.webhook_url or None)
        pool = SessionPool(
            store,
            vault,
            connect_timeout=config.connect_timeout,
            transfer_timeout=config.transfer_timeout,
            max_attempts=config.max_attempts,
            retry_delay=config.retry_delay,
            keepalive_interval=config.keepalive_interval,
        )
        return cls(
            config=config,
            store=store,
            vault=vault,
            pool=pool,
            broadcaster=broadcaster,
            metrics=MetricsCollector(pool, store),
            discovery=ServiceDiscovery(pool, store),
            tracker=TransferTracker(pool, store, broadcaster),
            terminal=TerminalSession(pool, store, vault, broadcaster),
            inspector=ApplicationInspector(pool),
            browser=RemoteBrowser(pool),
        )

    @property
    def storage_dir(self) -> Path:
        return Path(self.config.storage_dir).expanduser()

    def require_host(self, host_id: int) -> Host:
        host = self.store.get_host(host_id)
        if host is None:
            raise RecordNotFound(f"Host not found: {host_id}")
        return host

    def require_application(self, application_id: int) -> Application:
        application = self.store.get_application(application_id)
        if application is None:
            raise RecordNotFound(f"Application not found: {application_id}")
        return application

    def sudo_password(self, host: Host) -> str | None:
        connection = self.store.get_agent_connection(host.id)
        return connection.password(self.vault) if connection else None

    def close(self) -> None:
        self.pool.close_all()
        self.broadcaster.stop()
