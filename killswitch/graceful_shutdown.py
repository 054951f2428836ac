"""
Graceful shutdown handler for the tracked process.

This module is installed in the TRACKED PROCESS (not the watchdog).
It provides the other half of the kill switch contract:

1. Write the PID file at startup so the watchdog can find us
2. On SIGTERM, run cleanup callbacks (LIFO)
3. Write a final state snapshot with forced_kill=false
4. Remove the PID file and exit

If the process is hung and never gets to run this, the watchdog falls
back to SIGKILL and flags the last periodic snapshot instead.
"""

import os
import signal
import sys
from pathlib import Path
from typing import Any, Callable, Optional

import structlog

from killswitch.pid_file import remove_pid_file, write_pid_file
from killswitch.state_snapshot import write_snapshot

logger = structlog.get_logger(__name__)


class GracefulShutdownHandler:
    """
    Handles SIGTERM for graceful shutdown of the tracked process.

    Usage:
        handler = GracefulShutdownHandler(
            pid_file="./data/main.pid",
            state_file="./data/last-known-state.json",
            snapshot_provider=lambda: build_snapshot(state, positions, orders),
        )
        handler.register_cleanup(lambda: db.close())
        handler.install()

        while not handler.should_shutdown():
            # do work
    """

    def __init__(
        self,
        pid_file: Optional[str] = None,
        state_file: Optional[str] = None,
        snapshot_provider: Optional[Callable[[], dict[str, Any]]] = None,
    ):
        """
        Args:
            pid_file: PID file written on install, removed on shutdown
            state_file: Where to write the final snapshot
            snapshot_provider: Builds the final snapshot (see build_snapshot)
        """
        self.pid_file = Path(pid_file) if pid_file else None
        self.state_file = Path(state_file) if state_file else None
        self.snapshot_provider = snapshot_provider
        self.shutdown_requested = False
        self._cleanup_callbacks: list[Callable[[], Any]] = []

    def register_cleanup(self, callback: Callable[[], Any]) -> None:
        """Register a cleanup callback. Callbacks run in reverse order (LIFO)."""
        self._cleanup_callbacks.append(callback)

    def install(self) -> None:
        """Install SIGTERM/SIGINT handlers and write the PID file."""
        signal.signal(signal.SIGTERM, self._handle_signal)
        signal.signal(signal.SIGINT, self._handle_signal)

        if self.pid_file:
            write_pid_file(self.pid_file, os.getpid())

        logger.info("signal_handlers_installed", pid=os.getpid())

    def _handle_signal(self, signum: int, frame) -> None:
        signal_name = signal.Signals(signum).name
        logger.info("shutdown_signal_received", signal=signal_name)
        self.shutdown_requested = True

        exit_code = 0 if self.shutdown() else 1
        sys.exit(exit_code)

    def shutdown(self) -> bool:
        """
        Run the shutdown steps without exiting.

        Returns:
            True if every step succeeded
        """
        ok = True

        logger.info("running_cleanup_callbacks", count=len(self._cleanup_callbacks))
        for callback in reversed(self._cleanup_callbacks):
            try:
                callback()
            except Exception as e:
                logger.error("cleanup_callback_error", error=str(e))
                ok = False

        if self.state_file and self.snapshot_provider:
            try:
                snapshot = self.snapshot_provider()
                write_snapshot({**snapshot, "forced_kill": False}, self.state_file)
                logger.info("final_state_snapshot_written", path=str(self.state_file))
            except Exception as e:
                logger.error("final_state_snapshot_failed", error=str(e))
                ok = False

        if self.pid_file and not remove_pid_file(self.pid_file):
            ok = False

        logger.info("graceful_shutdown_complete", clean=ok)
        return ok

    def should_shutdown(self) -> bool:
        return self.shutdown_requested
