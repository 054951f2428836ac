"""
PID file store.

The tracked process writes its PID here at startup and removes it on clean
shutdown. The watchdog reads it to find its target.

The file is shared with an external writer, so every read is tolerant:
missing, unreadable or malformed content all mean "no PID".
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Union

import structlog

from killswitch.prober import process_exists

logger = structlog.get_logger(__name__)

PathLike = Union[str, Path]

# Largest value a pid_t can hold
MAX_PID = 2**31 - 1


class ProcessStatus(Enum):
    """Status of the tracked process as seen through its PID file."""
    RUNNING = "running"
    STOPPED = "stopped"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class PidFileCheck:
    """Result of a stale PID file check."""
    exists: bool
    is_stale: bool
    pid: Optional[int]


@dataclass(frozen=True)
class ProcessReport:
    """Tracked process status derived from the PID file."""
    status: ProcessStatus
    pid: Optional[int]
    message: str

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "pid": self.pid,
            "message": self.message,
        }


def write_pid_file(path: PathLike, pid: int) -> None:
    """
    Write a PID to file, creating parent directories as needed.

    No locking: only the record's owner writes it, last writer wins.
    """
    pid_path = Path(path)
    pid_path.parent.mkdir(parents=True, exist_ok=True)
    pid_path.write_text(str(int(pid)).strip(), encoding="utf-8")
    logger.info("pid_file_written", path=str(pid_path), pid=pid)


def read_pid_file(path: PathLike) -> Optional[int]:
    """Read a PID from file. Returns None unless it holds a valid PID."""
    pid_path = Path(path)

    try:
        content = pid_path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("pid_file_read_error", path=str(pid_path), error=str(e))
        return None

    if not content:
        return None

    # Plain decimal digits only; int() would also accept "+5" and "1_000"
    if not (content.isascii() and content.isdigit()) or not 0 < int(content) <= MAX_PID:
        logger.warning("pid_file_invalid", path=str(pid_path), content=content[:32])
        return None

    return int(content)


def remove_pid_file(path: PathLike) -> bool:
    """
    Remove a PID file.

    Returns True if removed or it didn't exist; False only on an
    unexpected OS error.
    """
    pid_path = Path(path)

    try:
        pid_path.unlink()
        logger.info("pid_file_removed", path=str(pid_path))
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.error("pid_file_remove_error", path=str(pid_path), error=str(e))
        return False

    return True


def check_stale_pid_file(
    path: PathLike,
    prober: Optional[Callable[[int], bool]] = None,
) -> PidFileCheck:
    """Check whether the PID file points at a process that no longer exists."""
    prober = prober or process_exists
    pid = read_pid_file(path)

    if pid is None:
        return PidFileCheck(exists=False, is_stale=False, pid=None)

    is_stale = not prober(pid)
    if is_stale:
        logger.info("pid_file_stale", path=str(path), pid=pid)

    return PidFileCheck(exists=True, is_stale=is_stale, pid=pid)


def process_status(
    path: PathLike,
    prober: Optional[Callable[[int], bool]] = None,
) -> ProcessReport:
    """Report the status of the process named by a PID file."""
    check = check_stale_pid_file(path, prober)

    if not check.exists:
        return ProcessReport(ProcessStatus.UNKNOWN, None, "PID file not found")

    if check.is_stale:
        return ProcessReport(
            ProcessStatus.STOPPED,
            check.pid,
            "Process not running (stale PID file)",
        )

    return ProcessReport(ProcessStatus.RUNNING, check.pid, "Process is running")
