"""
State snapshot store.

The tracked process periodically persists its last-known trading state
here. After a kill the watchdog reads it back, and after a forced kill
it flags the snapshot so recovery knows shutdown cleanup never ran.

Snapshot format (JSON, 2-space indent, field names are a fixed contract):

    {
      "version": 1,
      "timestamp": "2024-01-01T12:00:00.000Z",
      "pid": 12345,
      "forced_kill": false,
      "stale_warning": false,
      "orchestrator": {"state": "running", "started_at": ..., "error_count": 0},
      "positions": [...],
      "orders": [...],
      "summary": {"open_positions": 2, "open_orders": 2, "total_exposure": 17.0}
    }

Writes go through a temp file and an atomic rename, so readers see either
the previous snapshot or the new one, never a partial file. Reads never
raise: missing or corrupt snapshots come back as None.
"""

import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence, Union

import structlog

from killswitch.errors import ErrorKind

logger = structlog.get_logger(__name__)

PathLike = Union[str, Path]

# Increment on breaking schema changes
SNAPSHOT_VERSION = 1

DEFAULT_STALE_THRESHOLD_MS = 5000


def _temp_path(path: Path) -> Path:
    return path.with_name(path.name + ".tmp")


def write_snapshot(snapshot: Mapping[str, Any], path: PathLike) -> None:
    """
    Write a snapshot atomically (temp file + rename).

    Raises:
        OSError, TypeError: On any write or serialization failure. The temp
        file is removed first.
    """
    state_path = Path(path)
    temp_path = _temp_path(state_path)

    try:
        state_path.parent.mkdir(parents=True, exist_ok=True)

        with open(temp_path, "w", encoding="utf-8") as f:
            f.write(json.dumps(snapshot, indent=2))
            f.flush()
            os.fsync(f.fileno())

        os.replace(temp_path, state_path)

    except Exception:
        try:
            temp_path.unlink(missing_ok=True)
        except OSError as cleanup_err:
            logger.warning("state_snapshot_temp_cleanup_failed", path=str(temp_path), error=str(cleanup_err))
        raise

    logger.debug(
        "state_snapshot_written",
        path=str(state_path),
        version=snapshot.get("version"),
        positions_count=len(snapshot.get("positions") or []),
        orders_count=len(snapshot.get("orders") or []),
    )


def read_snapshot(path: PathLike) -> Optional[dict[str, Any]]:
    """
    Read a snapshot.

    Returns None for a missing file, empty content, invalid JSON, a
    non-object document or a missing timestamp. A version mismatch is
    logged and the snapshot is still returned.
    """
    state_path = Path(path)

    try:
        content = state_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("state_snapshot_read_failed", path=str(state_path), error=str(e))
        return None

    if not content.strip():
        return None

    try:
        snapshot = json.loads(content)
    except json.JSONDecodeError as e:
        logger.warning(
            "state_snapshot_read_failed",
            path=str(state_path),
            error=str(e),
            error_kind=ErrorKind.CORRUPT.value,
        )
        return None

    if not isinstance(snapshot, dict):
        logger.warning(
            "state_snapshot_invalid_format",
            path=str(state_path),
            reason="not an object",
            error_kind=ErrorKind.CORRUPT.value,
        )
        return None

    if snapshot.get("version") != SNAPSHOT_VERSION:
        logger.warning(
            "state_snapshot_version_mismatch",
            path=str(state_path),
            expected=SNAPSHOT_VERSION,
            actual=snapshot.get("version"),
        )

    if not snapshot.get("timestamp"):
        logger.warning("state_snapshot_missing_timestamp", path=str(state_path))
        return None

    return snapshot


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO8601 timestamp. Naive values are taken as UTC."""
    if not isinstance(value, str):
        return None

    try:
        ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None

    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def age_of(snapshot: Optional[Mapping[str, Any]], now: Optional[datetime] = None) -> Optional[int]:
    """Age of an already-loaded snapshot in milliseconds, None if undatable."""
    if not snapshot:
        return None

    ts = parse_timestamp(snapshot.get("timestamp"))
    if ts is None:
        return None

    now = now or datetime.now(timezone.utc)
    return int((now - ts).total_seconds() * 1000)


def snapshot_age_ms(path: PathLike) -> Optional[int]:
    """Age of the snapshot at path in milliseconds, None if unreadable."""
    return age_of(read_snapshot(path))


def is_snapshot_stale(path: PathLike, threshold_ms: int = DEFAULT_STALE_THRESHOLD_MS) -> bool:
    """True if the snapshot is missing, corrupt or older than threshold_ms."""
    age = snapshot_age_ms(path)
    return age is None or age > threshold_ms


def _field(source: Any, name: str, default: Any = None) -> Any:
    """Read a field from a mapping or an attribute-style object."""
    if source is None:
        return default
    if isinstance(source, Mapping):
        value = source.get(name)
    else:
        value = getattr(source, name, None)
    return default if value is None else value


def build_snapshot(
    orchestrator_state: Any,
    positions: Optional[Sequence[Mapping[str, Any]]],
    orders: Optional[Sequence[Mapping[str, Any]]],
    pid: Optional[int] = None,
) -> dict[str, Any]:
    """
    Build a snapshot from the tracked process's current state.

    Args:
        orchestrator_state: Mapping or object with state, started_at, error_count
        positions: Open positions (each with size and entry_price)
        orders: Open orders
        pid: PID to record (defaults to the calling process)

    Returns:
        Snapshot dict ready for write_snapshot()
    """
    positions_list = list(positions or [])
    orders_list = list(orders or [])

    total_exposure = sum(
        (_field(pos, "size", 0) or 0) * (_field(pos, "entry_price", 0) or 0)
        for pos in positions_list
    )

    return {
        "version": SNAPSHOT_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
        "pid": os.getpid() if pid is None else pid,
        "forced_kill": False,
        "stale_warning": False,
        "orchestrator": {
            "state": _field(orchestrator_state, "state", "unknown"),
            "started_at": _field(orchestrator_state, "started_at"),
            "error_count": _field(orchestrator_state, "error_count", 0),
        },
        "positions": positions_list,
        "orders": orders_list,
        "summary": {
            "open_positions": len(positions_list),
            "open_orders": len(orders_list),
            "total_exposure": total_exposure,
        },
    }


def mark_forced_kill(snapshot: Mapping[str, Any], is_stale: bool = False) -> dict[str, Any]:
    """
    Flag a snapshot as captured before a forced kill.

    Returns a new dict; the input is never modified.
    """
    return {
        **snapshot,
        "forced_kill": True,
        "stale_warning": bool(is_stale),
    }
