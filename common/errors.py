"""Error taxonomy shared by the remote layer and its callers."""


class FleetError(Exception):
    """Base class for every error raised by fleetdeck."""

    # Whether the task runner may try the failing job again
    retryable = True


class ConfigurationError(FleetError):
    """A host lacks what is needed to reach it (agent connection, credentials)."""

    retryable = False


class AuthError(FleetError):
    """The remote side rejected the supplied credentials."""

    retryable = False


class NetworkError(FleetError):
    """Connection establishment or channel I/O failed."""


class CommandBlocked(FleetError):
    """The safety filter vetoed a command before dispatch."""

    retryable = False


class ProbeError(FleetError):
    """A single metrics or discovery probe produced unusable output."""


class TransferError(FleetError):
    """A file transfer failed during I/O or verification."""


class TransferCancelled(TransferError):
    """A transfer observed its cancellation signal and stopped."""

    retryable = False


class RecordNotFound(FleetError):
    """A host, application or transfer record does not exist."""

    retryable = False
