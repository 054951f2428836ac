"""
Kill orchestrator.

Single entry point for terminating the tracked process:

1. Read the PID file (missing -> NOT_FOUND result, nothing signalled)
2. Already dead -> clean up the stale PID file and report already_stopped
3. Run the kill sequence
4. Remove the PID file on success; a failed kill leaves it as evidence
5. Read the state snapshot (best effort, never fails the kill)
6. After a forced kill, flag the snapshot and write it back
7. Return one structured KillOutcome

kill() never raises for expected conditions. The caller maps the outcome
to an exit code.

start() and stop() manage the watchdog's own PID file so that only one
watchdog runs at a time.
"""

import os
import signal
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import structlog

from killswitch.alert_dispatcher import AlertDispatcher
from killswitch.config import KillSwitchConfig, DEFAULT_CONFIG
from killswitch.errors import ErrorKind
from killswitch.pid_file import (
    check_stale_pid_file,
    process_status,
    read_pid_file,
    remove_pid_file,
    write_pid_file,
)
from killswitch.prober import process_exists
from killswitch.sequencer import KillMethod, KillResult, KillSequencer
from killswitch.state_snapshot import (
    age_of,
    read_snapshot,
    write_snapshot,
    mark_forced_kill,
)

logger = structlog.get_logger(__name__)

METHOD_DESCRIPTIONS = {
    KillMethod.GRACEFUL: "Graceful shutdown (SIGTERM)",
    KillMethod.FORCE: "Forced kill (SIGKILL) - tracked process was unresponsive",
    KillMethod.ALREADY_STOPPED: "Process was already stopped",
    KillMethod.FAILED: "Kill failed - process may still be running",
}


@dataclass(frozen=True)
class SnapshotSummary:
    """What the last-known state snapshot said at kill time."""
    forced_kill: bool
    stale_warning: bool
    open_positions: int
    open_orders: int
    total_exposure: float
    snapshot_age_ms: Optional[int]

    def to_dict(self) -> dict:
        return {
            "forced_kill": self.forced_kill,
            "stale_warning": self.stale_warning,
            "open_positions": self.open_positions,
            "open_orders": self.open_orders,
            "total_exposure": self.total_exposure,
            "snapshot_age_ms": self.snapshot_age_ms,
        }


@dataclass(frozen=True)
class KillOutcome:
    """Consolidated result of a kill request."""
    success: bool
    message: str
    pid: Optional[int] = None
    method: Optional[KillMethod] = None
    duration_ms: int = 0
    graceful_sent: bool = False
    force_sent: bool = False
    code: Optional[ErrorKind] = None
    state_snapshot: Optional[SnapshotSummary] = None
    kill_result: Optional[KillResult] = field(default=None, compare=False)

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "method": self.method.value if self.method else None,
            "message": self.message,
            "pid": self.pid,
            "duration_ms": self.duration_ms,
            "graceful_sent": self.graceful_sent,
            "force_sent": self.force_sent,
            "code": self.code.value if self.code else None,
            "state_snapshot": self.state_snapshot.to_dict() if self.state_snapshot else None,
        }


class KillOrchestrator:
    """
    Composes the PID file store, kill sequencer and snapshot store.

    Holds no state between calls beyond its configuration. Every liveness
    check uses the sequencer's prober so the two never disagree.
    """

    def __init__(
        self,
        config: KillSwitchConfig = DEFAULT_CONFIG,
        sequencer: Optional[KillSequencer] = None,
        alerter: Optional[AlertDispatcher] = None,
        prober: Optional[Callable[[int], bool]] = None,
    ):
        """
        Args:
            config: Kill switch configuration
            sequencer: Kill sequencer (defaults to one using real signals)
            alerter: Optional alert dispatcher for forced/failed kills
            prober: Liveness check (defaults to the sequencer's)
        """
        self.config = config
        if sequencer is None:
            sequencer = KillSequencer(config, prober=prober or process_exists)
        self.sequencer = sequencer
        self.prober = prober or sequencer.prober
        self.alerter = alerter

    def kill(self) -> KillOutcome:
        """Terminate the tracked process named by the PID file."""
        pid_path = self.config.pid_file_path

        logger.info("kill_command", pid_file=pid_path)

        pid = read_pid_file(pid_path)
        if pid is None:
            logger.warning("kill_no_pid_file", pid_file=pid_path)
            return KillOutcome(
                success=False,
                code=ErrorKind.NOT_FOUND,
                message="Tracked process PID file not found. Is the tracked process running?",
            )

        if not self.prober(pid):
            logger.info("kill_process_not_running", pid=pid)
            remove_pid_file(pid_path)
            return KillOutcome(
                success=True,
                method=KillMethod.ALREADY_STOPPED,
                pid=pid,
                message=f"Tracked process (PID: {pid}) is not running. Cleaned up stale PID file.",
            )

        logger.info(
            "kill_sequence_starting",
            pid=pid,
            graceful_timeout_ms=self.config.graceful_timeout_ms,
        )
        result = self.sequencer.kill(pid)

        if result.success:
            remove_pid_file(pid_path)
        else:
            logger.critical("kill_failed_pid_file_kept", pid=pid, pid_file=pid_path)

        summary = self._process_snapshot(result)

        try:
            self._send_alerts(result, summary)
        except Exception as e:
            logger.error("kill_alert_failed", pid=pid, error=str(e))

        outcome = KillOutcome(
            success=result.success,
            method=result.method,
            message=METHOD_DESCRIPTIONS[result.method],
            pid=result.pid,
            duration_ms=result.duration_ms,
            graceful_sent=result.graceful_sent,
            force_sent=result.force_sent,
            state_snapshot=summary,
            kill_result=result,
        )

        logger.info("kill_sequence_complete", **result.to_dict())
        return outcome

    def status(self) -> dict[str, Any]:
        """Report tracked process status and snapshot freshness."""
        report = process_status(self.config.pid_file_path, self.prober)
        watchdog = process_status(self.config.watchdog_pid_file_path, self.prober)
        snapshot = read_snapshot(self.config.state_file_path)
        age_ms = age_of(snapshot)

        status = {
            "success": True,
            "tracked_process": report.to_dict(),
            "watchdog": watchdog.to_dict(),
            "state_snapshot": {
                "available": snapshot is not None,
                "age_ms": age_ms,
                "stale": age_ms is None or age_ms > self.config.stale_threshold_ms,
            },
            "config": {
                "graceful_timeout_ms": self.config.graceful_timeout_ms,
                "pid_file_path": self.config.pid_file_path,
                "state_file_path": self.config.state_file_path,
                "watchdog_pid_file_path": self.config.watchdog_pid_file_path,
            },
        }

        logger.info("status_checked", status=report.status.value, pid=report.pid)
        return status

    def start(self) -> dict[str, Any]:
        """
        Register this process as the running watchdog.

        Refuses if another live watchdog holds the PID file. A PID file left
        behind by a dead watchdog is cleaned up first.
        """
        path = self.config.watchdog_pid_file_path
        own_pid = os.getpid()

        logger.info("watchdog_start_command", watchdog_pid_file=path)

        check = check_stale_pid_file(path, self.prober)
        if check.exists and not check.is_stale:
            logger.warning("watchdog_already_running", pid=check.pid)
            return {
                "success": False,
                "code": ErrorKind.ALREADY_RUNNING.value,
                "message": f"Watchdog already running (PID: {check.pid})",
            }

        if check.is_stale:
            logger.info("cleaning_stale_watchdog_pid", pid=check.pid)
            remove_pid_file(path)

        write_pid_file(path, own_pid)
        tracked = process_status(self.config.pid_file_path, self.prober)

        logger.info(
            "watchdog_started",
            watchdog_pid=own_pid,
            tracked_pid=tracked.pid,
            tracked_status=tracked.status.value,
        )
        return {
            "success": True,
            "message": "Watchdog started",
            "watchdog_pid": own_pid,
            "tracked_process": tracked.to_dict(),
        }

    def stop(self) -> dict[str, Any]:
        """
        Deregister the running watchdog.

        Called from another process, a live watchdog is sent SIGTERM so it
        can stop itself. The PID file is removed either way.
        """
        path = self.config.watchdog_pid_file_path
        pid = read_pid_file(path)

        logger.info("watchdog_stop_command", watchdog_pid=pid)

        if pid is not None and pid != os.getpid() and self.prober(pid):
            try:
                os.kill(pid, signal.SIGTERM)
                logger.info("watchdog_stop_signal_sent", pid=pid)
            except ProcessLookupError:
                pass
            except OSError as e:
                logger.warning("watchdog_stop_signal_failed", pid=pid, error=str(e))

        removed = remove_pid_file(path)

        logger.info("watchdog_stopped", watchdog_pid=pid)
        return {
            "success": removed,
            "message": "Watchdog stopped" if removed else "Could not remove watchdog PID file",
            "watchdog_pid": pid,
        }

    def _process_snapshot(self, result: KillResult) -> Optional[SnapshotSummary]:
        """
        Read the last-known state and flag it after a forced kill.

        Any failure here is logged and yields None; the kill result is
        already final.
        """
        state_path = self.config.state_file_path

        try:
            snapshot = read_snapshot(state_path)

            if snapshot is None:
                logger.warning(
                    "kill_complete_no_state",
                    path=state_path,
                    message="No state snapshot available - manual exchange verification required",
                )
                return None

            age_ms = age_of(snapshot)
            is_stale = age_ms is None or age_ms > self.config.stale_threshold_ms

            if result.method == KillMethod.FORCE:
                snapshot = mark_forced_kill(snapshot, is_stale)

                try:
                    write_snapshot(snapshot, state_path)
                except Exception as e:
                    logger.error("state_snapshot_update_failed", path=state_path, error=str(e))

                if is_stale:
                    logger.warning(
                        "state_snapshot_stale_warning",
                        age_ms=age_ms,
                        threshold_ms=self.config.stale_threshold_ms,
                        message="State snapshot from last known - verify with exchange",
                    )

            summary_block = snapshot.get("summary") or {}
            summary = SnapshotSummary(
                forced_kill=bool(snapshot.get("forced_kill", False)),
                stale_warning=bool(snapshot.get("stale_warning", False)),
                open_positions=summary_block.get("open_positions") or 0,
                open_orders=summary_block.get("open_orders") or 0,
                total_exposure=summary_block.get("total_exposure") or 0,
                snapshot_age_ms=age_ms,
            )

            logger.info("kill_complete_state_summary", **summary.to_dict())
            return summary

        except Exception as e:
            logger.warning(
                "state_snapshot_processing_failed",
                error=str(e),
                message="Failed to process state snapshot - manual exchange verification required",
            )
            return None

    def _send_alerts(self, result: KillResult, summary: Optional[SnapshotSummary]) -> None:
        if self.alerter is None:
            return

        if result.method == KillMethod.FAILED:
            self.alerter.send_critical(
                f"KILL FAILED: tracked process {result.pid} still running after SIGKILL",
                pid=result.pid,
                duration_ms=result.duration_ms,
            )
        elif result.method == KillMethod.FORCE:
            self.alerter.send_warning(
                "Tracked process required SIGKILL - verify positions with exchange",
                pid=result.pid,
                duration_ms=result.duration_ms,
            )
            if summary is not None and summary.stale_warning:
                self.alerter.send_warning(
                    "State snapshot was stale at forced kill - last known state may be outdated",
                    snapshot_age_ms=summary.snapshot_age_ms,
                )
