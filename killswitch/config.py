"""
Kill switch configuration.

Every recognized setting and its default lives in KillSwitchConfig.
The config object is frozen and passed explicitly to the orchestrator
and sequencer; nothing reads process-wide state at kill time.

Timing defaults keep the worst-case kill sequence (graceful timeout +
settle time + one poll interval) well under the 5 second kill deadline.
"""

import os
import re
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Optional

import structlog
import yaml

from killswitch.errors import ConfigError

logger = structlog.get_logger(__name__)

# Hard deadline the kill sequence must resolve under
KILL_DEADLINE_MS = 5000

ENV_OVERRIDES = {
    "KILLSWITCH_PID_FILE": "pid_file_path",
    "KILLSWITCH_STATE_FILE": "state_file_path",
    "KILLSWITCH_WATCHDOG_PID_FILE": "watchdog_pid_file_path",
    "KILLSWITCH_LOG_FILE": "log_file_path",
    "KILLSWITCH_GRACEFUL_TIMEOUT_MS": "graceful_timeout_ms",
}

_ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")


@dataclass(frozen=True)
class KillSwitchConfig:
    """
    Kill switch settings. FROZEN - build a new instance to change anything.
    """

    # ==========================================================================
    # KILL SEQUENCE TIMING
    # ==========================================================================

    # Time to wait for the tracked process to exit after SIGTERM
    graceful_timeout_ms: int = 2000

    # How often to probe the process while waiting
    poll_interval_ms: int = 100

    # Time allowed for the OS to reap the process after SIGKILL
    settle_time_ms: int = 100

    # ==========================================================================
    # STATE SNAPSHOT
    # ==========================================================================

    # Snapshot older than this is flagged stale after a forced kill
    stale_threshold_ms: int = 5000

    # ==========================================================================
    # FILES
    # ==========================================================================

    pid_file_path: str = "./data/main.pid"
    watchdog_pid_file_path: str = "./data/watchdog.pid"
    state_file_path: str = "./data/last-known-state.json"
    log_file_path: Optional[str] = "./logs/kill-switch.log"

    def __post_init__(self):
        for name in ("graceful_timeout_ms", "poll_interval_ms", "settle_time_ms", "stale_threshold_ms"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigError(f"{name} must be an integer, got {value!r}")
            if value <= 0:
                raise ConfigError(f"{name} must be positive, got {value}")

        if not self.pid_file_path:
            raise ConfigError("pid_file_path must not be empty")
        if not self.state_file_path:
            raise ConfigError("state_file_path must not be empty")
        if not self.watchdog_pid_file_path:
            raise ConfigError("watchdog_pid_file_path must not be empty")

    @property
    def worst_case_kill_ms(self) -> int:
        """Upper bound on the kill sequence duration."""
        return self.graceful_timeout_ms + self.settle_time_ms + self.poll_interval_ms

    def with_overrides(self, **overrides: Any) -> "KillSwitchConfig":
        """Return a copy with the non-None overrides applied."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **changes) if changes else self

    def to_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


# Default config instance
DEFAULT_CONFIG = KillSwitchConfig()


def _expand_env_vars(value: Any) -> Any:
    """Expand ${VAR} references in string config values."""
    if isinstance(value, str) and "${" in value:
        def replace_env(match):
            return os.environ.get(match.group(1), match.group(0))
        return _ENV_VAR_PATTERN.sub(replace_env, value)
    return value


def _coerce(name: str, value: Any) -> Any:
    if name.endswith("_ms") and isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            raise ConfigError(f"{name} must be an integer, got {value!r}") from None
    return value


def load_config(
    config_path: Optional[str] = None,
    environ: Optional[dict[str, str]] = None,
) -> KillSwitchConfig:
    """
    Load configuration.

    Precedence (lowest to highest): defaults, the `kill_switch` section of
    the YAML file, KILLSWITCH_* environment variables.

    Args:
        config_path: Optional YAML file. A missing file falls back to defaults.
        environ: Environment mapping (defaults to os.environ)

    Raises:
        ConfigError: If the file cannot be parsed or a value is invalid
    """
    environ = os.environ if environ is None else environ
    known = {f.name for f in fields(KillSwitchConfig)}
    values: dict[str, Any] = {}

    if config_path:
        path = Path(config_path)
        if not path.exists():
            logger.warning("config_not_found_using_defaults", path=str(path))
        else:
            try:
                with open(path) as f:
                    raw = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Cannot parse config file {path}: {e}") from e

            if not isinstance(raw, dict):
                raise ConfigError(f"Config file {path} must contain a mapping")

            section = raw.get("kill_switch", {}) or {}
            if not isinstance(section, dict):
                raise ConfigError("kill_switch section must be a mapping")

            for key, value in section.items():
                if key not in known:
                    logger.warning("config_unknown_key_ignored", key=key)
                    continue
                values[key] = _expand_env_vars(value)

            logger.info("config_loaded", path=str(path))

    for env_var, name in ENV_OVERRIDES.items():
        if environ.get(env_var):
            values[name] = environ[env_var]

    values = {name: _coerce(name, value) for name, value in values.items()}

    try:
        return KillSwitchConfig(**values)
    except TypeError as e:
        raise ConfigError(str(e)) from e
