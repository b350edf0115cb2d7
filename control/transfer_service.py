"""Starting, cancelling and retrying tracked file transfers."""

import logging
import posixpath
import secrets
import string
import threading
from datetime import timedelta
from pathlib import Path

from common.errors import ConfigurationError, RecordNotFound
from common.models import (
    CANCELLED_MESSAGE,
    TransferKind,
    TransferProgress,
    TransferStatus,
)
from control.context import FleetContext
from control.jobs import DownloadFileJob, UploadFileJob
from control.task_runner import TaskRunner
from remote.transfers import TransferTask

logger = logging.getLogger(__name__)

KEY_ALPHABET = string.ascii_letters + string.digits
KEY_SUFFIX_LENGTH = 8
DOWNLOADS_DIR = "downloads"


def generate_progress_key(kind: TransferKind, host_id: int) -> str:
    """Build a key like ``download_3_aB9xQ2mK``."""
    suffix = "".join(secrets.choice(KEY_ALPHABET) for _ in range(KEY_SUFFIX_LENGTH))
    return f"{kind.value}_{host_id}_{suffix}"


class TransferService:
    """
    Front door for transfers: creates the progress record, then hands the
    work to the task runner.

    Local paths are kept relative to the storage directory in ``local_name``,
    so a retry after a restart can rebuild its task from the record alone.
    Upload sources must resolve to a file inside the storage directory.
    """

    def __init__(self, context: FleetContext, runner: TaskRunner):
        self.context = context
        self.runner = runner
        self._cancel_events: dict[str, threading.Event] = {}

    @property
    def store(self):
        return self.context.store

    def start_download(
        self, host_id: int, remote_path: str, local_name: str | None = None
    ) -> TransferProgress:
        host = self.context.require_host(host_id)
        key = generate_progress_key(TransferKind.DOWNLOAD, host.id)
        name = local_name or posixpath.basename(remote_path.rstrip("/")) or "download"
        record = self.store.create_transfer(
            TransferProgress(
                progress_key=key,
                kind=TransferKind.DOWNLOAD,
                host_id=host.id,
                remote_path=remote_path,
                local_name=f"{DOWNLOADS_DIR}/{key}/{Path(name).name}",
            )
        )
        logger.info(f"Queued download {key} of {remote_path} from {host.name}")
        self._submit(record)
        return record

    def start_upload(
        self,
        host_id: int,
        local_path: str | Path,
        remote_path: str,
        overwrite: bool = False,
        remove_source: bool = False,
    ) -> TransferProgress:
        host = self.context.require_host(host_id)
        local_name = self._storage_relative(local_path)
        key = generate_progress_key(TransferKind.UPLOAD, host.id)
        record = self.store.create_transfer(
            TransferProgress(
                progress_key=key,
                kind=TransferKind.UPLOAD,
                host_id=host.id,
                remote_path=remote_path,
                local_name=local_name,
                overwrite=overwrite,
            )
        )
        logger.info(f"Queued upload {key} of {local_path} to {host.name}:{remote_path}")
        self._submit(record, remove_source=remove_source)
        return record

    def get_progress(self, key_or_id: str | int) -> dict:
        """
        Look up a transfer by progress key or numeric id.

        Returns:
            The record plus percentage, eta_seconds and speed_mb_s

        Raises:
            RecordNotFound: If no record matches
        """
        return self._require(key_or_id).progress_view()

    def list_for_host(
        self,
        host_id: int,
        kind: TransferKind | None = None,
        status: TransferStatus | None = None,
    ) -> list[dict]:
        transfers = self.store.list_transfers(host_id=host_id, kind=kind, status=status)
        return [t.progress_view() for t in transfers]

    def cancel(self, key: str) -> bool:
        """
        Cancel a pending or in-flight transfer.

        Returns:
            True if the transfer was cancelled, False if it had already finished
        """
        record = self._require(key)
        if not record.is_in_progress:
            return False
        event = self._cancel_events.get(key)
        if event is not None:
            event.set()
        _, changed = self.store.mutate_transfer(
            key, lambda r: r.fail(CANCELLED_MESSAGE, cancelled=True)
        )
        if changed:
            logger.info(f"Cancelled transfer {key}")
        return changed

    def retry(self, key: str) -> bool:
        """Restart a failed transfer on the same record. Returns False unless failed."""
        record = self._require(key)
        if record.status != TransferStatus.FAILED:
            return False
        _, changed = self.store.mutate_transfer(key, lambda r: r.reset_for_retry(force=True))
        if changed:
            logger.info(f"Retrying transfer {key}")
            self._submit(record)
        return changed

    def delete(self, key: str) -> bool:
        """
        Remove a finished transfer record and its downloaded file.

        Returns:
            False while the transfer is still pending or in flight
        """
        record = self._require(key)
        if record.is_in_progress:
            return False
        if record.kind == TransferKind.DOWNLOAD:
            local_path = self._local_path(record)
            if local_path.exists():
                local_path.unlink()
        self._cancel_events.pop(key, None)
        return self.store.delete_transfer(key)

    def stats(self, host_id: int | None = None) -> dict:
        transfers = self.store.list_transfers(host_id=host_id)
        counts = {status.value: 0 for status in TransferStatus}
        for transfer in transfers:
            counts[transfer.status.value] += 1
        completed = [t for t in transfers if t.status == TransferStatus.COMPLETE]
        return {
            "total": len(transfers),
            "by_status": counts,
            "cancelled": sum(1 for t in transfers if t.was_cancelled),
            "completed_mb": round(sum(t.transferred_mb for t in completed), 2),
            "downloads": sum(1 for t in transfers if t.kind == TransferKind.DOWNLOAD),
            "uploads": sum(1 for t in transfers if t.kind == TransferKind.UPLOAD),
        }

    def cleanup(self, days: int = 7) -> int:
        removed = self.store.purge_transfers(older_than=timedelta(days=days))
        live = {t.progress_key for t in self.store.list_transfers()}
        for key in list(self._cancel_events):
            if key not in live:
                del self._cancel_events[key]
        return removed

    def _submit(self, record: TransferProgress, remove_source: bool = False) -> None:
        event = threading.Event()
        self._cancel_events[record.progress_key] = event
        task = TransferTask(
            progress_key=record.progress_key,
            local_path=self._local_path(record),
            cancel_event=event,
            remove_source=remove_source,
        )
        job_class = DownloadFileJob if record.kind == TransferKind.DOWNLOAD else UploadFileJob
        self.runner.submit(job_class(self.context, task))

    def _require(self, key_or_id: str | int) -> TransferProgress:
        if isinstance(key_or_id, int) or str(key_or_id).isdigit():
            record = self.store.get_transfer_by_id(int(key_or_id))
        else:
            record = self.store.get_transfer(key_or_id)
        if record is None:
            raise RecordNotFound(f"Transfer not found: {key_or_id}")
        return record

    def _local_path(self, record: TransferProgress) -> Path:
        return self.context.storage_dir / record.local_name

    def _storage_relative(self, local_path: str | Path) -> str:
        """
        Resolve an upload source against the storage directory.

        Relative paths are taken relative to the storage directory. Symlinks
        and ``..`` are resolved before the containment check.

        Raises:
            ConfigurationError: The path resolves outside the storage directory
        """
        root = self.context.storage_dir.resolve()
        path = Path(local_path).expanduser()
        if not path.is_absolute():
            path = root / path
        try:
            return str(path.resolve().relative_to(root))
        except ValueError:
            raise ConfigurationError(
                f"Upload source must be inside the storage directory: {local_path}"
            ) from None
