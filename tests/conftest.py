"""Shared fixtures for fleetdeck tests."""

from unittest.mock import MagicMock

import pytest
from cryptography.fernet import Fernet

from common.credentials import CredentialVault
from common.models import AgentConnection, Host
from control.config import Config
from control.context import FleetContext
from control.store import RecordStore
from remote.applications import ApplicationInspector
from remote.browser import RemoteBrowser
from remote.discovery import ServiceDiscovery
from remote.metrics import MetricsCollector
from remote.terminal import TerminalSession
from remote.transfers import TransferTracker
from remote.transport import CommandResult


class ScriptedPool:
    """
    Stand-in for SessionPool that answers commands from a table.

    Keys are substrings of the command line; values are output strings,
    CommandResult instances or exceptions to raise. The first matching key
    wins. Unmatched commands return empty output with exit status 1.
    """

    def __init__(self, responses=None):
        self.responses = dict(responses or {})
        self.commands = []
        self.timeouts = []
        self.transfer_timeout = 7200
        self.acquire = MagicMock()
        self.release = MagicMock()
        self.close_all = MagicMock()
        self.sftp_client = MagicMock()
        self.session_count = 0

    def run(self, host, command, stdin_data=None, timeout=None):
        self.commands.append((command, stdin_data))
        self.timeouts.append(timeout)
        for pattern, response in self.responses.items():
            if pattern in command:
                if isinstance(response, Exception):
                    raise response
                if isinstance(response, CommandResult):
                    return response
                return CommandResult(output=response, exit_status=0)
        return CommandResult(output="", exit_status=1)

    def execute(self, host, command, stdin_data=None, timeout=None):
        return self.run(host, command, stdin_data=stdin_data, timeout=timeout).output

    def sftp(self, host):
        return self.sftp_client


@pytest.fixture
def vault():
    """Vault with a throwaway key."""
    return CredentialVault(Fernet.generate_key())


@pytest.fixture
def store():
    """In-memory record store."""
    return RecordStore(None)


@pytest.fixture
def host(store, vault):
    """A stored host with a password agent connection."""
    host = store.add_host(Host(name="web-01", ip_address="10.0.0.5"))
    store.set_agent_connection(
        AgentConnection.create(vault, host.id, "deploy", password="s3cret")
    )
    return host


@pytest.fixture
def bare_host(store):
    """A stored host without any agent connection."""
    return store.add_host(Host(name="orphan", ip_address="10.0.0.9"))


@pytest.fixture
def scripted_pool():
    return ScriptedPool()


@pytest.fixture
def pool_factory():
    """Build a ScriptedPool from a response table."""
    return ScriptedPool


@pytest.fixture
def make_context(store, vault, tmp_path):
    """Build a FleetContext around a given pool, with a mock broadcaster."""

    def factory(pool, broadcaster=None, **config_overrides):
        config = Config(
            store_path=str(tmp_path / "store.json"),
            storage_dir=str(tmp_path / "storage"),
            **config_overrides,
        )
        broadcaster = broadcaster or MagicMock()
        return FleetContext(
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

    return factory
