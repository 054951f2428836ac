"""
Command entry point for the kill switch watchdog.

CRITICAL: Run this as a SEPARATE process from the tracked process.

Usage:
    killswitch start      # Register as the watchdog, run until SIGTERM/SIGINT
    killswitch stop       # Stop the running watchdog
    killswitch kill       # SIGTERM, then SIGKILL if needed
    killswitch status     # Tracked process and snapshot status

Prints the structured result as JSON. Exit code 0 on success
(already_stopped, graceful, force), 1 otherwise.
"""

import argparse
import json
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Optional

import structlog
from dotenv import load_dotenv

from killswitch.alert_dispatcher import AlertDispatcher
from killswitch.config import load_config
from killswitch.errors import ConfigError
from killswitch.orchestrator import KillOrchestrator


def setup_logging(log_level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Configure structured logging for the watchdog."""
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper()),
        handlers=handlers,
        force=True,
    )


def wait_for_shutdown(poll_seconds: float = 1.0) -> None:
    """Block until SIGTERM or SIGINT arrives."""
    stop_requested = threading.Event()

    def _request_stop(signum, frame):
        structlog.get_logger(__name__).info(
            "watchdog_shutdown_signal", signal=signal.Signals(signum).name
        )
        stop_requested.set()

    signal.signal(signal.SIGTERM, _request_stop)
    signal.signal(signal.SIGINT, _request_stop)

    while not stop_requested.is_set():
        stop_requested.wait(poll_seconds)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="killswitch",
        description="Kill Switch Watchdog - terminates the tracked process within 5 seconds",
    )
    parser.add_argument("command", choices=["start", "stop", "kill", "status"])
    parser.add_argument("--config", type=str, default=None, help="Path to YAML config file")
    parser.add_argument("--pid-file", type=str, default=None, help="Tracked process PID file")
    parser.add_argument("--state-file", type=str, default=None, help="State snapshot file")
    parser.add_argument(
        "--watchdog-pid-file",
        type=str,
        default=None,
        help="PID file of the running watchdog",
    )
    parser.add_argument(
        "--graceful-timeout-ms",
        type=int,
        default=None,
        help="Time to wait after SIGTERM before SIGKILL",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    parser.add_argument("--log-file", type=str, default=None, help="Path to log file")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    load_dotenv()

    try:
        config = load_config(args.config).with_overrides(
            pid_file_path=args.pid_file,
            state_file_path=args.state_file,
            watchdog_pid_file_path=args.watchdog_pid_file,
            graceful_timeout_ms=args.graceful_timeout_ms,
            log_file_path=args.log_file,
        )
    except ConfigError as e:
        setup_logging(args.log_level)
        structlog.get_logger(__name__).error("invalid_config", error=str(e))
        print(json.dumps({"success": False, "code": e.kind.value, "message": str(e)}, indent=2))
        return 1

    setup_logging(args.log_level, config.log_file_path)
    logger = structlog.get_logger(__name__)
    logger.info("killswitch_command_received", command=args.command)

    orchestrator = KillOrchestrator(config, alerter=AlertDispatcher())

    if args.command == "start":
        result = orchestrator.start()
        print(json.dumps(result, indent=2), flush=True)
        if not result["success"]:
            return 1

        wait_for_shutdown()
        result = orchestrator.stop()
        return 0 if result["success"] else 1

    if args.command == "stop":
        result = orchestrator.stop()
        print(json.dumps(result, indent=2))
        return 0 if result["success"] else 1

    if args.command == "kill":
        outcome = orchestrator.kill()
        print(json.dumps(outcome.to_dict(), indent=2))
        return outcome.exit_code

    print(json.dumps(orchestrator.status(), indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
