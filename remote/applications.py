"""Application framework detection and metadata refresh."""

import json
import logging
import re
import shlex
from datetime import datetime, timezone
from typing import Callable

import httpx

from common.errors import ConfigurationError
from common.models import Application, FrameworkKind, Host
from remote.commands import stdin_secret, sudo_wrap
from remote.transport import SessionPool

logger = logging.getLogger(__name__)

STATUS_CHECK_TIMEOUT = 5.0
WEB_SERVER_PROCESSES = {"nginx": "nginx", "apache2": "apache", "httpd": "apache", "caddy": "caddy"}
# Only these .env keys are copied into environment_variables
EXPOSED_ENV_KEYS = (
    "APP_ENV",
    "APP_DEBUG",
    "APP_URL",
    "DB_CONNECTION",
    "CACHE_DRIVER",
    "QUEUE_CONNECTION",
)

Runner = Callable[[str], str]


def _version(output: str) -> str | None:
    match = re.search(r"(\d+\.\d+(?:\.\d+)?)", output)
    return match.group(1) if match else None


class Detector:
    """Reads framework and language details for one kind of application."""

    kind = FrameworkKind.UNKNOWN
    language: str | None = None
    # Files whose presence identifies the kind during auto-detection
    markers: tuple[str, ...] = ()
    language_version_command: str | None = None

    def matches(self, run: Runner, path: str) -> bool:
        for marker in self.markers:
            target = shlex.quote(f"{path.rstrip('/')}/{marker}")
            if run(f"test -e {target} && echo yes").strip() == "yes":
                return True
        return False

    def inspect(self, run: Runner, path: str) -> dict:
        details: dict = {"type": self.kind, "language": self.language}
        if self.language_version_command:
            details["language_version"] = _version(run(self.language_version_command))
        details.update(self.framework_details(run, path))
        return details

    def framework_details(self, run: Runner, path: str) -> dict:
        return {}


class PhpDetector(Detector):
    kind = FrameworkKind.PHP
    language = "php"
    markers = ("composer.json", "index.php")
    language_version_command = "php -r 'echo PHP_VERSION;'"


class LaravelDetector(PhpDetector):
    kind = FrameworkKind.LARAVEL
    markers = ("artisan",)

    def framework_details(self, run: Runner, path: str) -> dict:
        quoted = shlex.quote(path)
        details: dict = {
            "framework_version": _version(run(f"cd {quoted} && php artisan --version")),
        }
        env_file = shlex.quote(f"{path.rstrip('/')}/.env")
        env = parse_env_file(run(f"cat {env_file} 2>/dev/null"))
        exposed = {key: env[key] for key in EXPOSED_ENV_KEYS if key in env}
        details["environment_variables"] = exposed
        if env.get("DB_CONNECTION"):
            details["database_type"] = env["DB_CONNECTION"]
        if env.get("APP_URL"):
            details["app_url"] = env["APP_URL"]
        return details


class CodeIgniterDetector(PhpDetector):
    kind = FrameworkKind.CODEIGNITER
    markers = ("system/core/CodeIgniter.php", "system/CodeIgniter.php")

    def framework_details(self, run: Runner, path: str) -> dict:
        quoted = shlex.quote(path)
        output = run(
            f"grep -rhoE \"CI_VERSION'?,? *=? *'[0-9.]+'\" {quoted}/system 2>/dev/null | head -1"
        )
        return {"framework_version": _version(output)}


class PythonDetector(Detector):
    kind = FrameworkKind.PYTHON
    language = "python"
    markers = ("requirements.txt", "pyproject.toml", "setup.py")
    language_version_command = "python3 --version"


class DjangoDetector(PythonDetector):
    kind = FrameworkKind.DJANGO
    markers = ("manage.py",)

    def framework_details(self, run: Runner, path: str) -> dict:
        quoted = shlex.quote(path)
        output = run(
            f"cd {quoted} && python3 -c 'import django; print(django.get_version())' 2>/dev/null"
        )
        return {"framework_version": _version(output)}


class NodeDetector(Detector):
    kind = FrameworkKind.NODE
    language = "node"
    markers = ("package.json",)
    language_version_command = "node --version"

    def framework_details(self, run: Runner, path: str) -> dict:
        package_file = shlex.quote(f"{path.rstrip('/')}/package.json")
        try:
            package = json.loads(run(f"cat {package_file}"))
        except ValueError:
            return {}
        dependencies = package.get("dependencies", {})
        details: dict = {"additional_settings": {"name": package.get("name")}}
        if "express" in dependencies:
            details["framework_version"] = _version(dependencies["express"])
        return details


class RailsDetector(Detector):
    kind = FrameworkKind.RAILS
    language = "ruby"
    markers = ("Gemfile",)
    language_version_command = "ruby --version"

    def framework_details(self, run: Runner, path: str) -> dict:
        lock_file = shlex.quote(f"{path.rstrip('/')}/Gemfile.lock")
        output = run(f"grep -E '^    rails \\(' {lock_file} 2>/dev/null")
        return {"framework_version": _version(output)}


class UnknownDetector(Detector):
    pass


DETECTORS: dict[FrameworkKind, type[Detector]] = {
    FrameworkKind.LARAVEL: LaravelDetector,
    FrameworkKind.CODEIGNITER: CodeIgniterDetector,
    FrameworkKind.DJANGO: DjangoDetector,
    FrameworkKind.NODE: NodeDetector,
    FrameworkKind.RAILS: RailsDetector,
    FrameworkKind.PHP: PhpDetector,
    FrameworkKind.PYTHON: PythonDetector,
    FrameworkKind.UNKNOWN: UnknownDetector,
}

# Most specific first
AUTODETECT_ORDER = (
    FrameworkKind.LARAVEL,
    FrameworkKind.CODEIGNITER,
    FrameworkKind.DJANGO,
    FrameworkKind.NODE,
    FrameworkKind.RAILS,
    FrameworkKind.PHP,
    FrameworkKind.PYTHON,
)


def detector_for(kind: FrameworkKind) -> Detector:
    return DETECTORS[kind]()


def parse_env_file(text: str) -> dict[str, str]:
    values = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if sep:
            values[key.strip()] = value.strip().strip("\"'")
    return values


def check_application_url(url: str, timeout: float = STATUS_CHECK_TIMEOUT) -> str:
    """Return "up" when the URL answers below 400, else "down"."""
    try:
        response = httpx.get(url, timeout=timeout, follow_redirects=True)
    except httpx.HTTPError as e:
        logger.info(f"Status check for {url} failed: {e}")
        return "down"
    return "up" if response.status_code < 400 else "down"


class ApplicationInspector:
    """Refreshes application metadata from what is on disk and running."""

    def __init__(self, pool: SessionPool):
        self.pool = pool

    def detect_kind(self, host: Host, path: str) -> FrameworkKind:
        run = self._runner(host)
        for kind in AUTODETECT_ORDER:
            if detector_for(kind).matches(run, path):
                return kind
        return FrameworkKind.UNKNOWN

    def inspect(self, host: Host, application: Application) -> dict:
        """
        Gather fresh metadata for an application.

        Returns:
            dict of Application field names to values

        Raises:
            ConfigurationError: If the application path does not exist
        """
        if not self.pool.run(host, f"test -d {shlex.quote(application.path)}").ok:
            raise ConfigurationError(
                f"Application path does not exist on {host.name}: {application.path}"
            )

        kind = application.type
        if kind == FrameworkKind.UNKNOWN:
            kind = self.detect_kind(host, application.path)
            logger.info(f"Detected {kind.value} application at {application.path}")

        run = self._runner(host)
        details = detector_for(kind).inspect(run, application.path)
        details = {key: value for key, value in details.items() if value is not None}

        web_server = self.detect_web_server(host)
        if web_server:
            details["web_server"] = web_server

        deployed = self.last_deployed_at(host, application.path)
        if deployed:
            details["last_deployed_at"] = deployed

        url = details.get("app_url") or application.app_url
        if url:
            details["status"] = check_application_url(url)
        return details

    def detect_web_server(self, host: Host) -> str | None:
        processes = self.pool.execute(host, "ps -eo comm=").split()
        for process, name in WEB_SERVER_PROCESSES.items():
            if process in processes:
                return name
        return None

    def last_deployed_at(self, host: Host, path: str) -> datetime | None:
        """Newest file modification time under the path, ignoring dependencies."""
        quoted = shlex.quote(path)
        output = self.pool.execute(
            host,
            f"find {quoted} \\( -name vendor -o -name node_modules -o -name .git \\) -prune "
            f"-o -type f -printf '%T@\\n' 2>/dev/null | sort -n | tail -1",
        )
        try:
            return datetime.fromtimestamp(float(output.strip()), tz=timezone.utc)
        except ValueError:
            return None

    def fetch_logs(
        self,
        host: Host,
        application: Application,
        sudo_password: str | None = None,
        lines: int = 50,
    ) -> str:
        """Tail the application's error log (or access log) through sudo."""
        path = application.error_log_path or application.access_log_path
        if not path:
            return ""
        command = sudo_wrap(f"tail -n {int(lines)} {shlex.quote(path)}")
        return self.pool.execute(host, command, stdin_data=stdin_secret(sudo_password))

    def _runner(self, host: Host) -> Runner:
        return lambda command: self.pool.execute(host, command)
