"""Remote directory listing and path checks over SFTP."""

import logging
import posixpath
import stat
import uuid
from datetime import datetime, timezone

from common.models import Host, bytes_to_mb, to_iso
from remote.transport import SessionPool

logger = logging.getLogger(__name__)


class RemoteBrowser:
    """Read-only view of a host's filesystem for picking transfer paths."""

    def __init__(self, pool: SessionPool):
        self.pool = pool

    def list_directory(self, host: Host, path: str = "/") -> list[dict]:
        """
        List a remote directory.

        Directories come first, then files, each group sorted case-insensitively.
        A ".." entry pointing at the parent is prepended unless path is "/".

        Raises:
            FileNotFoundError: If the path does not exist on the host
        """
        path = posixpath.normpath(path or "/")
        sftp = self.pool.sftp(host)
        entries = []
        for attr in sftp.listdir_attr(path):
            if attr.filename in (".", ".."):
                continue
            is_dir = bool(attr.st_mode is not None and stat.S_ISDIR(attr.st_mode))
            modified = (
                to_iso(datetime.fromtimestamp(attr.st_mtime, tz=timezone.utc))
                if attr.st_mtime is not None
                else None
            )
            entries.append(
                {
                    "name": attr.filename,
                    "path": posixpath.join(path, attr.filename),
                    "type": "directory" if is_dir else "file",
                    "size": attr.st_size or 0,
                    "size_mb": bytes_to_mb(attr.st_size or 0),
                    "permissions": format_permissions(attr.st_mode),
                    "modified": modified,
                }
            )

        entries.sort(key=lambda e: (e["type"] != "directory", e["name"].lower()))
        if path != "/":
            entries.insert(
                0,
                {
                    "name": "..",
                    "path": posixpath.dirname(path) or "/",
                    "type": "directory",
                    "size": 0,
                    "size_mb": 0.0,
                    "permissions": None,
                    "modified": None,
                },
            )
        return entries

    def validate_remote_path(self, host: Host, path: str) -> dict:
        """Report whether a path exists, is a directory, and is writable."""
        sftp = self.pool.sftp(host)
        result = {"path": path, "exists": False, "is_dir": False, "writable": False}
        try:
            attr = sftp.stat(path)
        except IOError:
            return result

        result["exists"] = True
        result["is_dir"] = bool(attr.st_mode is not None and stat.S_ISDIR(attr.st_mode))
        if result["is_dir"]:
            probe = posixpath.join(path, f".fleetdeck-write-test-{uuid.uuid4().hex[:8]}")
            try:
                with sftp.open(probe, "w") as f:
                    f.write("")
                sftp.remove(probe)
                result["writable"] = True
            except IOError as e:
                logger.debug(f"{path} on {host.name} is not writable: {e}")
        return result


def format_permissions(mode: int | None) -> str | None:
    """Last four octal digits of a mode, e.g. '0755'."""
    if mode is None:
        return None
    return oct(stat.S_IMODE(mode))[2:].zfill(4)
