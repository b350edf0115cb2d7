"""Shared models, errors and utilities for fleetdeck."""

from .errors import (
    AuthError,
    CommandBlocked,
    ConfigurationError,
    FleetError,
    NetworkError,
    ProbeError,
    RecordNotFound,
    TransferCancelled,
    TransferError,
)
from .version import __version__

__all__ = [
    "AuthError",
    "CommandBlocked",
    "ConfigurationError",
    "FleetError",
    "NetworkError",
    "ProbeError",
    "RecordNotFound",
    "TransferCancelled",
    "TransferError",
    "__version__",
]
