"""
fleetdeck - HTTP surface

Progress queries, transfer and refresh actions, service and application logs,
and terminal commands over a small JSON API. Blocking remote work runs in the
task runner or a worker thread, never on the event loop.
"""

import asyncio
import contextlib
import logging
import os
from typing import Optional

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from common.errors import (
    AuthError,
    CommandBlocked,
    ConfigurationError,
    FleetError,
    RecordNotFound,
)
from common.models import TransferKind, TransferStatus
from common.version import SERVICE_NAME, __version__
from control.backups import DatabaseBackup
from control.context import FleetContext
from control.jobs import RefreshMetricsJob
from control.task_runner import TaskRunner, TaskRunnerConfig
from control.transfer_service import TransferService

logger = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8780
PUBLIC_PATHS = ("/health",)
DEFAULT_LOG_LINES = 100

ERROR_STATUS = (
    (CommandBlocked, 403),
    (AuthError, 401),
    (RecordNotFound, 404),
    (ConfigurationError, 400),
)


class AuthMiddleware:
    """Simple bearer token authentication middleware."""

    def __init__(self, app, api_key: Optional[str] = None):
        self.app = app
        self.api_key = api_key or os.environ.get("FLEETDECK_API_KEY")

    def _is_public_path(self, path: str) -> bool:
        return path in PUBLIC_PATHS

    def _check_auth(self, scope) -> bool:
        headers = dict(scope.get("headers", []))
        auth = headers.get(b"authorization", b"").decode()
        return auth.startswith("Bearer ") and auth[7:] == self.api_key

    async def __call__(self, scope, receive, send):
        if scope["type"] == "http" and self.api_key:
            if not self._is_public_path(scope.get("path", "")) and not self._check_auth(scope):
                response = JSONResponse({"error": "Unauthorized"}, status_code=401)
                await response(scope, receive, send)
                return
        await self.app(scope, receive, send)


def status_for_error(error: Exception) -> int:
    for error_class, status in ERROR_STATUS:
        if isinstance(error, error_class):
            return status
    return 500


async def fleet_error_handler(request: Request, exc: Exception) -> JSONResponse:
    status = status_for_error(exc)
    if status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse({"error": str(exc), "type": type(exc).__name__}, status_code=status)


async def _json_body(request: Request, *required: str) -> dict:
    try:
        body = await request.json()
    except ValueError:
        raise ConfigurationError("Request body must be JSON")
    if not isinstance(body, dict):
        raise ConfigurationError("Request body must be a JSON object")
    missing = [name for name in required if not body.get(name)]
    if missing:
        raise ConfigurationError(f"Missing field(s): {', '.join(missing)}")
    return body


def _enum_param(request: Request, name: str, enum_class):
    value = request.query_params.get(name)
    if not value:
        return None
    try:
        return enum_class(value)
    except ValueError:
        raise ConfigurationError(f"Invalid {name}: {value}")


def _int_param(request: Request, name: str, default: int | None = None) -> int | None:
    value = request.query_params.get(name)
    if not value:
        return default
    try:
        number = int(value)
    except ValueError:
        raise ConfigurationError(f"Invalid {name}: {value}")
    if number < 0:
        raise ConfigurationError(f"Invalid {name}: {value}")
    return number


def create_http_app(
    context: FleetContext,
    runner: Optional[TaskRunner] = None,
    api_key: Optional[str] = None,
):
    """Create the Starlette ASGI application."""
    config = context.config
    runner = runner or TaskRunner(
        TaskRunnerConfig(
            max_tries=config.task_max_tries,
            retry_delay=config.task_retry_delay,
            max_concurrent=config.task_concurrency,
        )
    )
    transfers = TransferService(context, runner)
    backups = DatabaseBackup(context, transfers)

    @contextlib.asynccontextmanager
    async def lifespan(app):
        context.broadcaster.start()
        await runner.start()
        try:
            yield
        finally:
            await runner.stop()
            context.close()

    def _accepted(record) -> JSONResponse:
        return JSONResponse(
            {
                "message": f"{record.kind.value.capitalize()} started",
                "progress_id": record.id,
                "progress_key": record.progress_key,
                "progress_endpoint": f"/transfers/{record.progress_key}",
            },
            status_code=202,
        )

    async def health_check(request: Request) -> JSONResponse:
        """Health check endpoint for monitoring."""
        return JSONResponse(
            {
                "status": "healthy",
                "service": SERVICE_NAME,
                "version": __version__,
                "hosts": len(context.store.list_hosts()),
                "pending_jobs": runner.pending_count,
                "open_sessions": context.pool.session_count,
            }
        )

    async def transfer_by_key(request: Request) -> JSONResponse:
        return JSONResponse(transfers.get_progress(request.path_params["key"]))

    async def transfer_by_id(request: Request) -> JSONResponse:
        return JSONResponse(transfers.get_progress(request.path_params["transfer_id"]))

    async def transfer_stats(request: Request) -> JSONResponse:
        return JSONResponse(transfers.stats(_int_param(request, "host_id")))

    async def host_transfers(request: Request) -> JSONResponse:
        host = context.require_host(request.path_params["host_id"])
        items = transfers.list_for_host(
            host.id,
            kind=_enum_param(request, "kind", TransferKind),
            status=_enum_param(request, "status", TransferStatus),
        )
        return JSONResponse({"transfers": items, "count": len(items)})

    async def start_download(request: Request) -> JSONResponse:
        body = await _json_body(request, "remote_path")
        record = transfers.start_download(
            request.path_params["host_id"], body["remote_path"], body.get("local_name")
        )
        return _accepted(record)

    async def start_upload(request: Request) -> JSONResponse:
        body = await _json_body(request, "local_path", "remote_path")
        record = transfers.start_upload(
            request.path_params["host_id"],
            body["local_path"],
            body["remote_path"],
            overwrite=bool(body.get("overwrite", False)),
        )
        return _accepted(record)

    async def start_backup(request: Request) -> JSONResponse:
        body = await _json_body(request, "database_type", "name", "user")
        dump = await asyncio.to_thread(
            backups.dump,
            request.path_params["host_id"],
            body["database_type"],
            body["name"],
            body["user"],
            body.get("password"),
            body.get("port"),
        )
        return _accepted(backups.download(dump))

    async def cancel_transfer(request: Request) -> JSONResponse:
        key = request.path_params["key"]
        if not transfers.cancel(key):
            return JSONResponse({"error": "Transfer is not in progress"}, status_code=409)
        return JSONResponse({"message": "Transfer cancelled", "progress_key": key})

    async def retry_transfer(request: Request) -> JSONResponse:
        key = request.path_params["key"]
        if not transfers.retry(key):
            return JSONResponse({"error": "Only failed transfers can be retried"}, status_code=409)
        return JSONResponse({"message": "Transfer restarted", "progress_key": key}, status_code=202)

    async def delete_transfer(request: Request) -> JSONResponse:
        key = request.path_params["key"]
        if not transfers.delete(key):
            return JSONResponse({"error": "Transfer is still in progress"}, status_code=409)
        return JSONResponse({"deleted": key})

    async def refresh_host(request: Request) -> JSONResponse:
        host = context.require_host(request.path_params["host_id"])
        runner.submit(RefreshMetricsJob(context, host.id))
        return JSONResponse({"message": "Refresh queued", "host_id": host.id}, status_code=202)

    async def browse_files(request: Request) -> JSONResponse:
        host = context.require_host(request.path_params["host_id"])
        path = request.query_params.get("path", "/")
        entries = await asyncio.to_thread(context.browser.list_directory, host, path)
        return JSONResponse({"path": path, "entries": entries})

    async def validate_path(request: Request) -> JSONResponse:
        host = context.require_host(request.path_params["host_id"])
        path = request.query_params.get("path")
        if not path:
            raise ConfigurationError("Missing query parameter: path")
        result = await asyncio.to_thread(context.browser.validate_remote_path, host, path)
        return JSONResponse(result)

    async def service_logs(request: Request) -> JSONResponse:
        host = context.require_host(request.path_params["host_id"])
        name = request.path_params["name"]
        lines = _int_param(request, "lines", DEFAULT_LOG_LINES)
        output = await asyncio.to_thread(context.discovery.get_service_logs, host, name, lines)
        return JSONResponse({"service": name, "lines": lines, "logs": output})

    async def service_usage(request: Request) -> JSONResponse:
        host = context.require_host(request.path_params["host_id"])
        name = request.path_params["name"]
        usage = await asyncio.to_thread(context.discovery.get_service_resource_usage, host, name)
        return JSONResponse({"service": name, "running": bool(usage), "usage": usage})

    async def service_config(request: Request) -> JSONResponse:
        host = context.require_host(request.path_params["host_id"])
        name = request.path_params["name"]
        paths = await asyncio.to_thread(context.discovery.get_service_config_paths, host, name)
        return JSONResponse({"service": name, "config_paths": paths})

    async def application_logs(request: Request) -> JSONResponse:
        application = context.require_application(request.path_params["application_id"])
        host = context.require_host(application.host_id)
        lines = _int_param(request, "lines", DEFAULT_LOG_LINES)
        output = await asyncio.to_thread(
            context.inspector.fetch_logs,
            host,
            application,
            context.sudo_password(host),
            lines,
        )
        return JSONResponse({"application": application.name, "lines": lines, "logs": output})

    async def cleanup_transfers(request: Request) -> JSONResponse:
        days = _int_param(request, "days", config.transfer_retention_days)
        removed = transfers.cleanup(days)
        return JSONResponse({"removed": removed, "older_than_days": days})

    async def terminal_action(request: Request) -> JSONResponse:
        host = context.require_host(request.path_params["host_id"])
        action = request.path_params["action"]
        if action == "execute":
            body = await _json_body(request, "connection_id", "command")
            output = await asyncio.to_thread(
                context.terminal.execute,
                host,
                body["command"],
                body["connection_id"],
                bool(body.get("sudo", False)),
            )
        elif action in ("connect", "disconnect"):
            body = await _json_body(request, "connection_id")
            handler = getattr(context.terminal, action)
            output = await asyncio.to_thread(handler, host, body["connection_id"])
        else:
            raise RecordNotFound(f"Unknown terminal action: {action}")
        return JSONResponse({"output": output, "connection_id": body["connection_id"]})

    routes = [
        Route("/health", endpoint=health_check, methods=["GET"]),
        Route("/transfers/stats", endpoint=transfer_stats, methods=["GET"]),
        Route("/transfers/cleanup", endpoint=cleanup_transfers, methods=["POST"]),
        Route("/transfers/id/{transfer_id:int}", endpoint=transfer_by_id, methods=["GET"]),
        Route("/transfers/{key}", endpoint=transfer_by_key, methods=["GET"]),
        Route("/transfers/{key}", endpoint=delete_transfer, methods=["DELETE"]),
        Route("/transfers/{key}/cancel", endpoint=cancel_transfer, methods=["POST"]),
        Route("/transfers/{key}/retry", endpoint=retry_transfer, methods=["POST"]),
        Route("/hosts/{host_id:int}/transfers", endpoint=host_transfers, methods=["GET"]),
        Route("/hosts/{host_id:int}/downloads", endpoint=start_download, methods=["POST"]),
        Route("/hosts/{host_id:int}/uploads", endpoint=start_upload, methods=["POST"]),
        Route("/hosts/{host_id:int}/backups", endpoint=start_backup, methods=["POST"]),
        Route("/hosts/{host_id:int}/refresh", endpoint=refresh_host, methods=["POST"]),
        Route("/hosts/{host_id:int}/files", endpoint=browse_files, methods=["GET"]),
        Route("/hosts/{host_id:int}/files/validate", endpoint=validate_path, methods=["GET"]),
        Route(
            "/hosts/{host_id:int}/services/{name}/logs", endpoint=service_logs, methods=["GET"]
        ),
        Route(
            "/hosts/{host_id:int}/services/{name}/usage", endpoint=service_usage, methods=["GET"]
        ),
        Route(
            "/hosts/{host_id:int}/services/{name}/config",
            endpoint=service_config,
            methods=["GET"],
        ),
        Route(
            "/applications/{application_id:int}/logs",
            endpoint=application_logs,
            methods=["GET"],
        ),
        Route(
            "/hosts/{host_id:int}/terminal/{action}", endpoint=terminal_action, methods=["POST"]
        ),
    ]

    middleware = [
        Middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_methods=["*"],
            allow_headers=["*"],
        ),
    ]

    app = Starlette(
        routes=routes,
        middleware=middleware,
        exception_handlers={FleetError: fleet_error_handler},
        lifespan=lifespan,
    )
    app.state.context = context
    app.state.runner = runner
    app.state.transfers = transfers

    # Wrap with auth if API key is configured
    effective_api_key = api_key or config.api_key or os.environ.get("FLEETDECK_API_KEY")
    if effective_api_key:
        logger.info("API key authentication enabled")
        return AuthMiddleware(app, effective_api_key)

    logger.warning("No API key configured - server is unauthenticated")
    return app


async def run_http_server(
    context: FleetContext,
    host: str = DEFAULT_HOST,
    port: int = DEFAULT_PORT,
):
    """Run the HTTP server."""
    import uvicorn

    app = create_http_app(context)

    config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_level="info",
        access_log=True,
    )
    server = uvicorn.Server(config)

    logger.info(f"Starting HTTP server on {host}:{port}")
    await server.serve()
