"""Units of background work submitted to the task runner."""

import logging

from common.errors import AuthError, ConfigurationError, NetworkError
from common.events import HOST_DETAILS_CHANNEL, EventType
from common.models import HostStatus, utcnow
from control.context import FleetContext
from remote.transfers import TransferTask

logger = logging.getLogger(__name__)

# Errors meaning the host itself could not be reached
UNREACHABLE_ERRORS = (ConfigurationError, AuthError, NetworkError)


class RefreshMetricsJob:
    """
    Refresh a host's inventory details and/or append a metrics snapshot.

    An unreachable host is marked offline with the error as remarks.
    """

    def __init__(
        self,
        context: FleetContext,
        host_id: int,
        collect_details: bool = True,
        collect_snapshot: bool = True,
    ):
        self.context = context
        self.host_id = host_id
        self.collect_details = collect_details
        self.collect_snapshot = collect_snapshot
        self.name = f"refresh-metrics:{host_id}"

    def run(self) -> None:
        store = self.context.store
        host = self.context.require_host(self.host_id)

        try:
            details = self.context.metrics.fetch_host_details(host) if self.collect_details else {}
            snapshot = self.context.metrics.collect(host) if self.collect_snapshot else None
        except UNREACHABLE_ERRORS as e:
            logger.error(f"Failed to update metrics for {host.name}: {e}")
            store.update_host(host.id, status=HostStatus.OFFLINE, remarks=str(e))
            raise

        if snapshot is not None:
            store.add_host_snapshot(snapshot)
        host = store.update_host(
            host.id,
            status=HostStatus.ONLINE,
            remarks=None,
            last_ping_at=utcnow(),
            **details,
        )
        self.context.broadcaster.publish(
            EventType.HOST_UPDATED, HOST_DETAILS_CHANNEL, {"host": host.to_dict()}
        )
        logger.info(f"Updated metrics for {host.name}")

    def failed(self, error: Exception) -> None:
        logger.error(f"Giving up on metrics for host {self.host_id}: {error}")


class DiscoverServicesJob:
    def __init__(self, context: FleetContext, host_id: int):
        self.context = context
        self.host_id = host_id
        self.name = f"discover-services:{host_id}"
        self.services = []

    def run(self) -> None:
        host = self.context.require_host(self.host_id)
        self.services = self.context.discovery.discover_and_reconcile(host)

    def failed(self, error: Exception) -> None:
        logger.error(f"Service discovery failed for host {self.host_id}: {error}")


class CollectApplicationMetricsJob:
    """Append a metrics snapshot for every running application on a host."""

    def __init__(self, context: FleetContext, host_id: int):
        self.context = context
        self.host_id = host_id
        self.name = f"application-metrics:{host_id}"
        self.collected = 0

    def run(self) -> None:
        store = self.context.store
        host = self.context.require_host(self.host_id)
        applications = [
            app for app in store.list_applications(host.id, status="up") if app.access_log_path
        ]
        if not applications:
            logger.info(f"No running applications with access logs on {host.name}")
            return

        sudo_password = self.context.sudo_password(host)
        for application in applications:
            try:
                snapshot = self.context.metrics.collect_application(
                    host, application, sudo_password
                )
            except UNREACHABLE_ERRORS:
                raise
            except Exception as e:
                logger.error(f"Error collecting metrics for {application.name}: {e}")
                continue
            store.add_application_snapshot(snapshot)
            self.collected += 1
        logger.info(f"Collected metrics for {self.collected} application(s) on {host.name}")

    def failed(self, error: Exception) -> None:
        logger.error(f"Application metrics failed for host {self.host_id}: {error}")


class InspectApplicationJob:
    def __init__(self, context: FleetContext, application_id: int):
        self.context = context
        self.application_id = application_id
        self.name = f"inspect-application:{application_id}"

    def run(self) -> None:
        application = self.context.require_application(self.application_id)
        host = self.context.require_host(application.host_id)
        details = self.context.inspector.inspect(host, application)
        self.context.store.update_application(application.id, **details)
        logger.info(f"Updated application data for {application.name}")

    def failed(self, error: Exception) -> None:
        logger.error(f"Application inspection failed for {self.application_id}: {error}")


class TransferJob:
    """Runs one transfer; the failure hook leaves a terminal record behind."""

    prefix = "transfer"

    def __init__(self, context: FleetContext, task: TransferTask):
        self.context = context
        self.task = task
        self.name = f"{self.prefix}:{task.progress_key}"

    def run(self) -> None:
        self.context.tracker.run(self.task)

    def failed(self, error: Exception) -> None:
        transfer, changed = self.context.store.mutate_transfer(
            self.task.progress_key, lambda r: r.fail(str(error))
        )
        if changed:
            logger.error(f"Transfer {transfer.progress_key} marked failed: {error}")


class DownloadFileJob(TransferJob):
    prefix = "download"


class UploadFileJob(TransferJob):
    prefix = "upload"
