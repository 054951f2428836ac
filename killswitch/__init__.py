"""
Kill Switch Watchdog.

CRITICAL: This runs as a SEPARATE process from the tracked process.
A kill switch inside a hung process cannot execute, so termination is
driven from outside:

- Find the tracked process through its PID file
- SIGTERM first, SIGKILL if it doesn't exit in time
- Whole sequence bounded well under 5 seconds
- Flag the last-known state snapshot after a forced kill
"""

from killswitch.config import KillSwitchConfig, DEFAULT_CONFIG, load_config
from killswitch.orchestrator import KillOrchestrator, KillOutcome
from killswitch.sequencer import KillMethod, KillResult, KillSequencer

__all__ = [
    "KillSwitchConfig",
    "DEFAULT_CONFIG",
    "load_config",
    "KillOrchestrator",
    "KillOutcome",
    "KillMethod",
    "KillResult",
    "KillSequencer",
]
