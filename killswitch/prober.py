"""
Process liveness probe.

Uses signal 0, which performs the existence and permission checks of
kill(2) without delivering anything to the target.
"""

import os

import structlog

logger = structlog.get_logger(__name__)


def process_exists(pid) -> bool:
    """
    Check whether a process with this PID currently exists.

    Policy:
    - No such process (ESRCH) -> False
    - Exists but we may not signal it (EPERM) -> True. This is a heuristic:
      the process is there, we just don't own it. It can report a reused
      PID owned by another user as alive.
    - Any other OS error -> False, so a kill sequence never stalls on an
      unconfirmable PID.
    - pid <= 0, non-integer, None or beyond the platform PID range -> False
      without raising.
    """
    if isinstance(pid, bool) or not isinstance(pid, int) or pid <= 0:
        return False

    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except (OSError, OverflowError, ValueError) as e:
        logger.debug("process_probe_failed", pid=pid, error=str(e))
        return False
