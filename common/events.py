"""Event names and channel naming shared by publishers and the broadcaster."""

from enum import Enum

HOST_DETAILS_CHANNEL = "host-details"
TEST_CHANNEL = "testing"


class EventType(str, Enum):
    """Published event names."""

    TERMINAL_OUTPUT = "terminal.output"
    HOST_UPDATED = "host.updated"
    DOWNLOAD_PROGRESS = "download.progress"
    UPLOAD_PROGRESS = "upload.progress"
    TEST_MESSAGE = "test.message"


def terminal_channel(host_id: int) -> str:
    return f"host.{host_id}.terminal"


def transfer_channel(progress_key: str) -> str:
    return f"transfers.{progress_key}"
