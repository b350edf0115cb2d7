#!/usr/bin/env python3
"""
fleetdeck - command line entry point

Maintenance commands that run jobs against the stored hosts, plus ``serve``
for the HTTP surface. Each command exits 0 on success and 1 when there is
nothing to act on or a job failed.
"""

import argparse
import asyncio
import logging
import sys
from datetime import timedelta
from pathlib import Path

from common.events import TEST_CHANNEL, EventType
from common.logging_config import get_default_log_file, setup_service_logging
from common.version import __version__
from control.config import Config
from control.context import FleetContext
from control.http_server import run_http_server
from control.jobs import (
    CollectApplicationMetricsJob,
    DiscoverServicesJob,
    InspectApplicationJob,
    RefreshMetricsJob,
)
from control.task_runner import TaskRunner, TaskRunnerConfig

logger = logging.getLogger(__name__)


async def _run_jobs(context: FleetContext, jobs: list) -> bool:
    """Run jobs through a task runner and report whether all of them succeeded."""
    config = context.config
    runner = TaskRunner(
        TaskRunnerConfig(
            max_tries=config.task_max_tries,
            retry_delay=config.task_retry_delay,
            max_concurrent=config.task_concurrency,
        )
    )
    await runner.start()
    try:
        results = await asyncio.gather(*(runner.submit(job) for job in jobs))
    finally:
        await runner.stop()
    return all(results)


def run_jobs(context: FleetContext, jobs: list) -> int:
    if not jobs:
        return 1
    try:
        succeeded = asyncio.run(_run_jobs(context, jobs))
    finally:
        context.pool.close_all()
    return 0 if succeeded else 1


def prune_snapshots(context: FleetContext) -> int:
    days = context.config.snapshot_retention_days
    return context.store.purge_snapshots(older_than=timedelta(days=days))


def _target_hosts(context: FleetContext, host_id: int | None) -> list:
    if host_id is None:
        return context.store.list_hosts(active_only=True)
    host = context.store.get_host(host_id)
    return [host] if host else []


def cmd_update_metrics(context: FleetContext, args) -> int:
    hosts = _target_hosts(context, args.host_id)
    if not hosts:
        print("No hosts found.")
        return 1
    print(f"Updating metrics for {len(hosts)} host(s)...")
    status = run_jobs(context, [RefreshMetricsJob(context, h.id) for h in hosts])
    prune_snapshots(context)
    return status


def cmd_collect_metrics(context: FleetContext, args) -> int:
    hosts = context.store.list_hosts(active_only=True)
    if not hosts:
        print("No active hosts found.")
        return 1
    print(f"Collecting metrics snapshots for {len(hosts)} host(s)...")
    jobs = [RefreshMetricsJob(context, h.id, collect_details=False) for h in hosts]
    status = run_jobs(context, jobs)
    prune_snapshots(context)
    return status


def cmd_discover_services(context: FleetContext, args) -> int:
    hosts = _target_hosts(context, args.host)
    if not hosts:
        print("No hosts found.")
        return 1
    jobs = [DiscoverServicesJob(context, h.id) for h in hosts]
    status = run_jobs(context, jobs)
    for host, job in zip(hosts, jobs):
        print(f"{host.name}: {len(job.services)} service(s)")
    return status


def cmd_service_details(context: FleetContext, args) -> int:
    host = context.store.get_host(args.host_id)
    if host is None:
        print(f"Host {args.host_id} not found.")
        return 1
    try:
        print(context.discovery.get_service_details(host, args.name))
    finally:
        context.pool.close_all()
    return 0


def cmd_collect_app_metrics(context: FleetContext, args) -> int:
    host_ids = sorted(
        {
            app.host_id
            for app in context.store.list_applications(status="up")
            if app.access_log_path
        }
    )
    if not host_ids:
        print("No running applications with access logs found.")
        return 1
    print(f"Collecting application metrics on {len(host_ids)} host(s)...")
    return run_jobs(context, [CollectApplicationMetricsJob(context, i) for i in host_ids])


def cmd_update_apps(context: FleetContext, args) -> int:
    if args.app_id is not None:
        app = context.store.get_application(args.app_id)
        applications = [app] if app else []
    else:
        applications = context.store.list_applications()
    if not applications:
        print("No applications found.")
        return 1
    print(f"Updating {len(applications)} application(s)...")
    return run_jobs(context, [InspectApplicationJob(context, a.id) for a in applications])


def cmd_prune(context: FleetContext, args) -> int:
    config = context.config
    snapshot_days = args.snapshot_days or config.snapshot_retention_days
    transfer_days = args.transfer_days or config.transfer_retention_days
    snapshots = context.store.purge_snapshots(older_than=timedelta(days=snapshot_days))
    transfers = context.store.purge_transfers(older_than=timedelta(days=transfer_days))
    print(f"Removed {snapshots} snapshot(s) and {transfers} transfer record(s).")
    return 0


def cmd_broadcast_test(context: FleetContext, args) -> int:
    broadcaster = context.broadcaster
    broadcaster.start()
    try:
        broadcaster.publish(EventType.TEST_MESSAGE, TEST_CHANNEL, {"message": args.message})
    finally:
        broadcaster.stop()
    print(f"Broadcast test message on channel '{TEST_CHANNEL}': {args.message}")
    return 0


def cmd_serve(context: FleetContext, args) -> int:
    host = args.host or context.config.http_host
    port = args.port or context.config.http_port
    asyncio.run(run_http_server(context, host, port))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fleetdeck", description="fleetdeck - remote host orchestration"
    )
    parser.add_argument("-c", "--config", type=Path, help="Path to config file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("--log-file", type=Path, help="Log file path (overrides config)")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    subparsers = parser.add_subparsers(dest="command", required=True)

    p = subparsers.add_parser("update-metrics", help="Refresh host details and metrics")
    p.add_argument("host_id", type=int, nargs="?", help="Host id (default: all active hosts)")
    p.set_defaults(func=cmd_update_metrics)

    p = subparsers.add_parser("collect-metrics", help="Record metrics snapshots for all hosts")
    p.set_defaults(func=cmd_collect_metrics)

    p = subparsers.add_parser("discover-services", help="Discover systemd services")
    p.add_argument("--host", type=int, help="Host id (default: all active hosts)")
    p.set_defaults(func=cmd_discover_services)

    p = subparsers.add_parser("service-details", help="Print the status of one service")
    p.add_argument("host_id", type=int)
    p.add_argument("name")
    p.set_defaults(func=cmd_service_details)

    p = subparsers.add_parser("collect-app-metrics", help="Record application metrics")
    p.set_defaults(func=cmd_collect_app_metrics)

    p = subparsers.add_parser("update-apps", help="Refresh application metadata")
    p.add_argument("app_id", type=int, nargs="?", help="Application id (default: all)")
    p.set_defaults(func=cmd_update_apps)

    p = subparsers.add_parser("prune", help="Drop old metrics snapshots and transfer records")
    p.add_argument("--snapshot-days", type=int, help="Snapshot retention (overrides config)")
    p.add_argument("--transfer-days", type=int, help="Transfer retention (overrides config)")
    p.set_defaults(func=cmd_prune)

    p = subparsers.add_parser("broadcast-test", help="Publish a test event")
    p.add_argument("message", nargs="?", default="Hello from fleetdeck!")
    p.set_defaults(func=cmd_broadcast_test)

    p = subparsers.add_parser("serve", help="Run the HTTP server")
    p.add_argument("--host", help="Bind address (overrides config)")
    p.add_argument("--port", "-p", type=int, help="Port (overrides config)")
    p.set_defaults(func=cmd_serve)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    config = Config.load(args.config)
    level = "DEBUG" if args.verbose else config.log_level
    log_file = args.log_file or config.log_file
    if not log_file and args.command == "serve":
        log_file = get_default_log_file()
    setup_service_logging(level=level, log_file=log_file)

    context = FleetContext.from_config(config)
    logger.debug(f"Running {args.command} with store {config.store_path}")
    return args.func(context, args)


if __name__ == "__main__":
    sys.exit(main())
