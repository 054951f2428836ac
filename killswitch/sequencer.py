"""
Kill sequencer.

Two-phase termination of the tracked process:

    INITIAL --not alive--> ALREADY_STOPPED                 (success)
    INITIAL --alive--> GRACEFUL: SIGTERM, poll until exit or timeout
    GRACEFUL --exited--> GRACEFUL_OK                       (success)
    GRACEFUL --timeout--> FORCE: SIGKILL, settle, recheck
    FORCE --gone--> FORCE_OK                               (success)
    FORCE --still alive--> FAILED                          (failure)

Total wall time is bounded by
graceful_timeout_ms + settle_time_ms + one poll interval.

The target is an uncontrolled external process. It can exit between any
probe and the signal that follows; "target vanished" is success at every
step. Signal errors other than that are logged and never abort the
sequence - only the final liveness check decides the outcome.
"""

import os
import signal
import time
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

import structlog

from killswitch.config import KillSwitchConfig, DEFAULT_CONFIG
from killswitch.errors import ConfigError, classify_signal_error
from killswitch.prober import process_exists

logger = structlog.get_logger(__name__)

# SIGKILL does not exist on Windows; SIGTERM there is already unconditional
FORCE_SIGNAL = getattr(signal, "SIGKILL", signal.SIGTERM)
GRACEFUL_SIGNAL = signal.SIGTERM


class KillMethod(str, Enum):
    """How the kill sequence ended."""
    ALREADY_STOPPED = "already_stopped"
    GRACEFUL = "graceful"
    FORCE = "force"
    FAILED = "failed"


@dataclass(frozen=True)
class KillResult:
    """Outcome of one kill sequence. Immutable once returned."""
    pid: int
    started_at: str
    completed_at: str
    duration_ms: int
    graceful_sent: bool
    force_sent: bool
    method: KillMethod
    success: bool

    def to_dict(self) -> dict:
        d = asdict(self)
        d["method"] = self.method.value
        return d


def utc_now_iso() -> str:
    """Current UTC time as ISO8601 with millisecond precision and a Z suffix."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class KillSequencer:
    """
    Runs the graceful -> forced kill state machine against one PID.

    The OS touch points (probe, signal, sleep, clock) are injectable so the
    state machine can be exercised without real processes.
    """

    def __init__(
        self,
        config: KillSwitchConfig = DEFAULT_CONFIG,
        prober: Callable[[int], bool] = process_exists,
        send_signal: Callable[[int, int], None] = os.kill,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.prober = prober
        self._send_signal = send_signal
        self._sleep = sleep
        self._clock = clock

    def kill(self, pid: int, graceful_timeout_ms: Optional[int] = None) -> KillResult:
        """
        Execute the kill sequence.

        Args:
            pid: Process to terminate
            graceful_timeout_ms: Override for the SIGTERM wait

        Returns:
            KillResult describing which terminal state was reached

        Raises:
            ConfigError: If the override is not a positive integer
        """
        if graceful_timeout_ms is None:
            timeout_ms = self.config.graceful_timeout_ms
        elif isinstance(graceful_timeout_ms, bool) or not isinstance(graceful_timeout_ms, int) or graceful_timeout_ms <= 0:
            raise ConfigError(f"graceful_timeout_ms must be a positive integer, got {graceful_timeout_ms!r}")
        else:
            timeout_ms = graceful_timeout_ms
        started_at = utc_now_iso()
        start = self._clock()

        def finish(method: KillMethod, success: bool, graceful_sent: bool = False, force_sent: bool = False) -> KillResult:
            return KillResult(
                pid=pid,
                started_at=started_at,
                completed_at=utc_now_iso(),
                duration_ms=int(round((self._clock() - start) * 1000)),
                graceful_sent=graceful_sent,
                force_sent=force_sent,
                method=method,
                success=success,
            )

        # Step 1: Nothing to do if it's already gone
        if not self.prober(pid):
            result = finish(KillMethod.ALREADY_STOPPED, True)
            logger.info("kill_already_stopped", pid=pid, duration_ms=result.duration_ms)
            return result

        # Step 2: SIGTERM
        logger.info("kill_graceful_start", pid=pid, graceful_timeout_ms=timeout_ms)
        graceful_sent = self._signal(pid, GRACEFUL_SIGNAL)
        if not graceful_sent:
            logger.warning("kill_graceful_signal_failed_continuing", pid=pid)

        # Step 3: Wait for graceful exit
        if self.wait_for_exit(pid, timeout_ms):
            result = finish(KillMethod.GRACEFUL, True, graceful_sent=graceful_sent)
            logger.info("kill_graceful_success", pid=pid, duration_ms=result.duration_ms)
            return result

        # Step 4: SIGKILL, then give the OS a moment to reap
        logger.warning("kill_force_start", pid=pid, reason="graceful_timeout")
        force_sent = self._signal(pid, FORCE_SIGNAL)
        self._sleep(self.config.settle_time_ms / 1000)

        # Step 5: Verify
        if not self.prober(pid):
            result = finish(KillMethod.FORCE, True, graceful_sent, force_sent)
            logger.warning("kill_force_success", pid=pid, duration_ms=result.duration_ms)
            return result

        result = finish(KillMethod.FAILED, False, graceful_sent, force_sent)
        logger.critical(
            "kill_failed",
            pid=pid,
            reason="process_still_running",
            duration_ms=result.duration_ms,
        )
        return result

    def wait_for_exit(self, pid: int, timeout_ms: int) -> bool:
        """
        Poll until the process exits or the deadline passes.

        Each sleep is capped at the time remaining, so the wait never
        overshoots the deadline by more than one probe.

        Returns:
            True if the process exited, False on timeout
        """
        deadline = self._clock() + timeout_ms / 1000
        poll_interval = self.config.poll_interval_ms / 1000

        while True:
            if not self.prober(pid):
                return True

            remaining = deadline - self._clock()
            if remaining <= 0:
                return False

            self._sleep(min(poll_interval, remaining))

    def _signal(self, pid: int, sig: int) -> bool:
        """
        Send a signal, treating an already-gone target as delivered.

        Returns:
            False only if the signal was rejected for another reason
        """
        name = signal.Signals(sig).name

        try:
            self._send_signal(pid, sig)
        except ProcessLookupError:
            logger.info("signal_skipped", pid=pid, signal=name, reason="process_not_found")
            return True
        except OSError as e:
            logger.warning(
                "signal_failed",
                pid=pid,
                signal=name,
                error=str(e),
                error_kind=classify_signal_error(e).value,
            )
            return False

        logger.info("signal_sent", pid=pid, signal=name)
        return True


def kill_process(
    pid: int,
    config: KillSwitchConfig = DEFAULT_CONFIG,
    graceful_timeout_ms: Optional[int] = None,
) -> KillResult:
    """Run the kill sequence with the real OS primitives."""
    return KillSequencer(config).kill(pid, graceful_timeout_ms=graceful_timeout_ms)
