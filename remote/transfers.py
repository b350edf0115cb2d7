"""Chunked SFTP uploads and downloads with persisted progress."""

import logging
import os
import posixpath
import stat
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable

import paramiko

from common.errors import FleetError, TransferCancelled, TransferError
from common.events import EventType, transfer_channel
from common.models import (
    CANCELLED_MESSAGE,
    Host,
    TransferKind,
    TransferProgress,
    TransferStatus,
    bytes_to_mb,
    utcnow,
)
from remote.transport import SessionPool

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 1024 * 1024


@dataclass
class TransferTask:
    """One upload or download bound to a progress record."""

    progress_key: str
    local_path: Path
    cancel_event: threading.Event = field(default_factory=threading.Event)
    # Delete the staged local source once an upload is verified
    remove_source: bool = False


class TransferTracker:
    """
    Drives a transfer through SFTP and keeps its progress record current.

    Progress is written after every chunk. Writes against a record that has
    already reached a terminal state are refused by the record itself, which
    is also how an external cancel is noticed mid-transfer.
    """

    def __init__(
        self,
        pool: SessionPool,
        store,
        broadcaster=None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.pool = pool
        self.store = store
        self.broadcaster = broadcaster
        self.chunk_size = chunk_size
        self._clock = clock

    def run(self, task: TransferTask) -> None:
        """
        Execute a transfer task end to end.

        Raises:
            TransferError: On I/O failure or verification mismatch (after
                the record has been marked failed)
            AuthError, ConfigurationError: Re-raised unchanged so the task
                runner does not retry them
        """
        record = self.store.get_transfer(task.progress_key)
        if record is None:
            raise TransferError(f"Transfer record not found: {task.progress_key}")
        if not self._prepare(record, task):
            return

        host = self.store.get_host(record.host_id)
        if host is None:
            self._fail(record, f"Host {record.host_id} no longer exists")
            raise TransferError(f"Host {record.host_id} no longer exists")

        try:
            if record.kind == TransferKind.DOWNLOAD:
                final_bytes = self._download(host, record, task)
            else:
                final_bytes = self._upload(host, record, task)
        except TransferCancelled:
            logger.info(f"Transfer {record.progress_key} cancelled")
            self._mutate(
                record, lambda r: r.fail(CANCELLED_MESSAGE, self._clock(), cancelled=True)
            )
            if record.kind == TransferKind.DOWNLOAD:
                self._remove_partial(task.local_path)
            return
        except Exception as e:
            if isinstance(e, TransferError):
                message = str(e)
            else:
                message = f"{record.kind.value.capitalize()} failed: {e}"
            logger.error(f"Transfer {record.progress_key} failed: {message}")
            self._fail(record, message)
            if record.kind == TransferKind.DOWNLOAD:
                self._remove_partial(task.local_path)
            if isinstance(e, TransferError) or (isinstance(e, FleetError) and not e.retryable):
                raise
            raise TransferError(message) from e

        _, completed = self._mutate(
            record, lambda r: r.complete(bytes_to_mb(final_bytes), self._clock())
        )
        if completed:
            self._publish(record)
            logger.info(f"Transfer {record.progress_key} complete ({record.transferred_mb} MB)")
        if record.kind == TransferKind.UPLOAD and task.remove_source and completed:
            self._remove_partial(task.local_path)

    def _prepare(self, record: TransferProgress, task: TransferTask) -> bool:
        """Bring the record to in_flight; False when there is nothing to do."""
        if record.cancel_requested or task.cancel_event.is_set():
            logger.info(f"Transfer {record.progress_key} was cancelled before it started")
            return False
        if record.status == TransferStatus.COMPLETE:
            logger.info(f"Transfer {record.progress_key} already complete")
            return False
        if record.status == TransferStatus.FAILED:
            # A new attempt from the task runner starts over on the same record
            self._mutate(record, lambda r: r.reset_for_retry())
        self._mutate(record, lambda r: r.begin(self._clock()))
        return record.status == TransferStatus.IN_FLIGHT

    def _mutate(self, record: TransferProgress, mutator) -> tuple[TransferProgress, bool]:
        return self.store.mutate_transfer(record.progress_key, mutator)

    def _fail(self, record: TransferProgress, message: str) -> None:
        self._mutate(record, lambda r: r.fail(message, self._clock()))

    def _check_cancelled(self, record: TransferProgress, task: TransferTask) -> None:
        if task.cancel_event.is_set() or record.cancel_requested:
            raise TransferCancelled(CANCELLED_MESSAGE)

    def _report(self, record: TransferProgress, task: TransferTask, transferred: int) -> None:
        """Persist cumulative progress after a chunk."""
        _, changed = self._mutate(record, lambda r: r.update_progress(bytes_to_mb(transferred)))
        if changed:
            self._publish(record)
        elif record.is_terminal:
            # Marked failed from outside while we were streaming
            raise TransferCancelled(record.error_message or CANCELLED_MESSAGE)
        self._check_cancelled(record, task)

    def _publish(self, record: TransferProgress) -> None:
        if self.broadcaster is None:
            return
        event = (
            EventType.DOWNLOAD_PROGRESS
            if record.kind == TransferKind.DOWNLOAD
            else EventType.UPLOAD_PROGRESS
        )
        self.broadcaster.publish(
            event,
            transfer_channel(record.progress_key),
            {
                "progress_key": record.progress_key,
                "status": record.status.value,
                "transferred_mb": record.transferred_mb,
                "total_size_mb": record.total_size_mb,
                "percentage": record.percentage(),
            },
        )

    def _download(self, host: Host, record: TransferProgress, task: TransferTask) -> int:
        sftp = self.pool.sftp(host)
        try:
            remote_size = sftp.stat(record.remote_path).st_size
        except IOError as e:
            raise TransferError(f"Remote file not found: {record.remote_path}") from e
        if remote_size is not None:
            self._mutate(record, lambda r: r.set_total(bytes_to_mb(remote_size)))

        task.local_path.parent.mkdir(parents=True, exist_ok=True)
        transferred = 0
        with (
            sftp.open(record.remote_path, "rb") as remote_file,
            open(task.local_path, "wb") as local_file,
        ):
            if remote_size:
                remote_file.prefetch(remote_size)
            while True:
                self._check_cancelled(record, task)
                chunk = remote_file.read(self.chunk_size)
                if not chunk:
                    break
                local_file.write(chunk)
                transferred += len(chunk)
                self._report(record, task, transferred)

        return task.local_path.stat().st_size

    def _upload(self, host: Host, record: TransferProgress, task: TransferTask) -> int:
        if not task.local_path.exists():
            raise TransferError(f"Local file not found: {task.local_path}")
        local_size = task.local_path.stat().st_size
        if record.total_size_mb is None:
            self._mutate(record, lambda r: r.set_total(bytes_to_mb(local_size)))

        sftp = self.pool.sftp(host)
        if not record.overwrite and remote_exists(sftp, record.remote_path):
            raise TransferError("Remote file already exists and overwrite is disabled")
        ensure_remote_dir(sftp, posixpath.dirname(record.remote_path))

        transferred = 0
        try:
            with (
                open(task.local_path, "rb") as local_file,
                sftp.open(record.remote_path, "wb") as remote_file,
            ):
                while True:
                    self._check_cancelled(record, task)
                    chunk = local_file.read(self.chunk_size)
                    if not chunk:
                        break
                    remote_file.write(chunk)
                    transferred += len(chunk)
                    self._report(record, task, transferred)
        except (IOError, paramiko.SSHException) as e:
            raise TransferError(f"Upload transfer failed: {e}") from e

        remote_size = sftp.stat(record.remote_path).st_size
        if remote_size != local_size:
            raise TransferError(
                f"Upload verification failed. Local size: {local_size}, Remote size: {remote_size}"
            )
        return remote_size

    @staticmethod
    def _remove_partial(path: Path) -> None:
        try:
            if path.exists():
                os.unlink(path)
        except OSError as e:
            logger.warning(f"Could not remove {path}: {e}")


def remote_exists(sftp: paramiko.SFTPClient, path: str) -> bool:
    try:
        sftp.stat(path)
        return True
    except IOError:
        return False


def ensure_remote_dir(sftp: paramiko.SFTPClient, directory: str) -> None:
    """Create a remote directory and its parents (mkdir -p)."""
    if not directory or directory == "/":
        return
    try:
        if stat.S_ISDIR(sftp.stat(directory).st_mode):
            return
        raise TransferError(f"Remote path is not a directory: {directory}")
    except IOError:
        pass
    ensure_remote_dir(sftp, posixpath.dirname(directory))
    sftp.mkdir(directory)
