"""
Error taxonomy for the kill switch.

Most failure modes are NOT exceptions here. Readers of the PID file and the
state file return None/False for missing or corrupt content, and the kill
sequence logs signal failures and keeps going. The kinds below are used to
classify those conditions in logs and structured results.

Only configuration problems are raised.
"""

from enum import Enum


class ErrorKind(Enum):
    """Classification of kill switch failure conditions."""
    NOT_FOUND = "not_found"  # PID file or state file missing
    INVALID = "invalid"  # Malformed persisted content or configuration
    TRANSIENT_SIGNAL_FAILURE = "transient_signal_failure"  # Signal rejected, not ESRCH
    PERMISSION_DENIED = "permission_denied"  # Signal blocked, process assumed alive
    CORRUPT = "corrupt"  # Unparseable or incompatible state snapshot
    ALREADY_RUNNING = "already_running"  # Another live watchdog holds the PID file


class KillSwitchError(Exception):
    """Base exception for the kill switch."""

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.INVALID):
        super().__init__(message)
        self.kind = kind


class ConfigError(KillSwitchError):
    """Raised when the kill switch configuration cannot be used."""

    def __init__(self, message: str):
        super().__init__(message, ErrorKind.INVALID)


def classify_signal_error(err: OSError) -> ErrorKind:
    """Map an OSError from os.kill to an ErrorKind."""
    if isinstance(err, ProcessLookupError):
        return ErrorKind.NOT_FOUND
    if isinstance(err, PermissionError):
        return ErrorKind.PERMISSION_DENIED
    return ErrorKind.TRANSIENT_SIGNAL_FAILURE
