"""
Tests for the kill sequencer state machine.

Runs against a simulated process and clock so every terminal state and
race can be reached deterministically.
"""

import signal
from dataclasses import FrozenInstanceError
from typing import Optional

import pytest

from killswitch.config import KillSwitchConfig, KILL_DEADLINE_MS
from killswitch.errors import ConfigError
from killswitch.sequencer import (
    FORCE_SIGNAL,
    GRACEFUL_SIGNAL,
    KillMethod,
    KillSequencer,
)


class FakeClock:
    """Monotonic clock that only advances when something sleeps."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeProcess:
    """
    Simulated tracked process.

    exit_after maps a signal to the delay (seconds) after which the process
    dies once that signal arrives; signals not listed are ignored.
    errors maps a signal to the exception os.kill would raise.
    """

    def __init__(
        self,
        clock: FakeClock,
        alive: bool = True,
        exit_after: Optional[dict] = None,
        errors: Optional[dict] = None,
        vanish_on_first_signal: bool = False,
    ):
        self.clock = clock
        self.alive = alive
        self.exit_after = exit_after or {}
        self.errors = errors or {}
        self.vanish_on_first_signal = vanish_on_first_signal
        self.death_time: Optional[float] = None
        self.signals: list[int] = []
        self.probes = 0

    def exists(self, pid: int) -> bool:
        self.probes += 1
        if not self.alive:
            return False
        if self.death_time is not None and self.clock.now >= self.death_time:
            self.alive = False
            return False
        return True

    def send_signal(self, pid: int, sig: int) -> None:
        self.signals.append(sig)

        if self.vanish_on_first_signal:
            self.alive = False
            raise ProcessLookupError(3, "No such process")

        if sig in self.errors:
            raise self.errors[sig]

        if not self.alive:
            raise ProcessLookupError(3, "No such process")

        if sig in self.exit_after:
            death = self.clock.now + self.exit_after[sig]
            if self.death_time is None or death < self.death_time:
                self.death_time = death


def make_sequencer(proc: FakeProcess, clock: FakeClock, **config) -> KillSequencer:
    return KillSequencer(
        KillSwitchConfig(**config),
        prober=proc.exists,
        send_signal=proc.send_signal,
        sleep=clock.sleep,
        clock=clock,
    )


@pytest.fixture
def clock():
    return FakeClock()


class TestAlreadyStopped:

    def test_dead_process_returns_immediately(self, clock):
        proc = FakeProcess(clock, alive=False)
        result = make_sequencer(proc, clock).kill(1234)

        assert result.method == KillMethod.ALREADY_STOPPED
        assert result.success is True
        assert result.duration_ms == 0
        assert result.graceful_sent is False
        assert result.force_sent is False
        assert proc.signals == []


class TestGraceful:

    def test_exits_after_sigterm(self, clock):
        proc = FakeProcess(clock, exit_after={GRACEFUL_SIGNAL: 0.35, FORCE_SIGNAL: 0})
        result = make_sequencer(proc, clock).kill(1234)

        assert result.method == KillMethod.GRACEFUL
        assert result.success is True
        assert result.graceful_sent is True
        assert result.force_sent is False
        assert proc.signals == [GRACEFUL_SIGNAL]
        assert 350 <= result.duration_ms < 2000 + 100

    def test_exits_immediately(self, clock):
        proc = FakeProcess(clock, exit_after={GRACEFUL_SIGNAL: 0})
        result = make_sequencer(proc, clock).kill(1234)

        assert result.method == KillMethod.GRACEFUL
        assert result.duration_ms == 0

    def test_vanishes_between_probe_and_sigterm(self, clock):
        """Target gone before the signal lands counts as success."""
        proc = FakeProcess(clock, vanish_on_first_signal=True)
        result = make_sequencer(proc, clock).kill(1234)

        assert result.method == KillMethod.GRACEFUL
        assert result.success is True
        assert result.graceful_sent is True


class TestForce:

    def test_ignores_sigterm(self, clock):
        proc = FakeProcess(clock, exit_after={FORCE_SIGNAL: 0})
        result = make_sequencer(proc, clock).kill(1234)

        assert result.method == KillMethod.FORCE
        assert result.success is True
        assert result.graceful_sent is True
        assert result.force_sent is True
        assert proc.signals == [GRACEFUL_SIGNAL, FORCE_SIGNAL]
        # graceful timeout + settle time
        assert 2100 <= result.duration_ms <= 2200
        assert result.duration_ms < KILL_DEADLINE_MS

    def test_custom_graceful_timeout(self, clock):
        proc = FakeProcess(clock, exit_after={FORCE_SIGNAL: 0})
        result = make_sequencer(proc, clock, graceful_timeout_ms=500).kill(1234)

        assert result.method == KillMethod.FORCE
        assert 600 <= result.duration_ms <= 700

    def test_timeout_override_per_call(self, clock):
        proc = FakeProcess(clock, exit_after={FORCE_SIGNAL: 0})
        result = make_sequencer(proc, clock).kill(1234, graceful_timeout_ms=300)

        assert result.method == KillMethod.FORCE
        assert 400 <= result.duration_ms <= 500

    def test_sigterm_permission_denied_still_forces(self, clock):
        """A rejected SIGTERM is logged; the sequence continues."""
        proc = FakeProcess(
            clock,
            exit_after={FORCE_SIGNAL: 0},
            errors={GRACEFUL_SIGNAL: PermissionError(1, "Operation not permitted")},
        )
        result = make_sequencer(proc, clock).kill(1234)

        assert result.graceful_sent is False
        assert result.force_sent is True
        assert result.method == KillMethod.FORCE
        assert result.success is True

    def test_exits_during_settle(self, clock):
        proc = FakeProcess(clock, exit_after={FORCE_SIGNAL: 0.05})
        result = make_sequencer(proc, clock).kill(1234)
        assert result.method == KillMethod.FORCE

    def test_vanishes_between_timeout_and_sigkill(self, clock):
        proc = FakeProcess(clock, errors={FORCE_SIGNAL: ProcessLookupError(3, "No such process")})

        def gone_after_kill(pid, sig):
            try:
                FakeProcess.send_signal(proc, pid, sig)
            finally:
                if sig == FORCE_SIGNAL:
                    proc.alive = False

        sequencer = KillSequencer(
            KillSwitchConfig(),
            prober=proc.exists,
            send_signal=gone_after_kill,
            sleep=clock.sleep,
            clock=clock,
        )
        result = sequencer.kill(1234)

        assert result.method == KillMethod.FORCE
        assert result.force_sent is True
        assert result.success is True


class TestFailed:

    def test_survives_sigkill(self, clock):
        proc = FakeProcess(clock)
        result = make_sequencer(proc, clock).kill(1234)

        assert result.method == KillMethod.FAILED
        assert result.success is False
        assert result.graceful_sent is True
        assert result.force_sent is True
        assert result.duration_ms < KILL_DEADLINE_MS

    def test_sigkill_rejected(self, clock):
        proc = FakeProcess(clock, errors={FORCE_SIGNAL: OSError(22, "Invalid argument")})
        result = make_sequencer(proc, clock).kill(1234)

        assert result.method == KillMethod.FAILED
        assert result.force_sent is False
        assert result.success is False


class TestWaitForExit:

    def test_total_sleep_bounded_by_timeout(self, clock):
        proc = FakeProcess(clock)
        sequencer = make_sequencer(proc, clock, poll_interval_ms=300)

        assert sequencer.wait_for_exit(1234, 1000) is False
        assert sum(clock.sleeps) == pytest.approx(1.0)
        assert max(clock.sleeps) <= 0.3

    def test_polls_at_interval(self, clock):
        proc = FakeProcess(clock)
        sequencer = make_sequencer(proc, clock)

        sequencer.wait_for_exit(1234, 500)
        assert clock.sleeps[0] == pytest.approx(0.1)
        assert len(clock.sleeps) in (5, 6)

    def test_returns_true_on_exit(self, clock):
        proc = FakeProcess(clock, alive=False)
        sequencer = make_sequencer(proc, clock)

        assert sequencer.wait_for_exit(1234, 500) is True
        assert clock.sleeps == []


class TestKillResult:

    def test_result_is_immutable(self, clock):
        proc = FakeProcess(clock, alive=False)
        result = make_sequencer(proc, clock).kill(1234)

        with pytest.raises(FrozenInstanceError):
            result.success = False

    def test_to_dict(self, clock):
        proc = FakeProcess(clock, exit_after={GRACEFUL_SIGNAL: 0})
        d = make_sequencer(proc, clock).kill(1234).to_dict()

        assert d["pid"] == 1234
        assert d["method"] == "graceful"
        assert d["started_at"].endswith("Z")
        assert d["completed_at"].endswith("Z")
        assert set(d) == {
            "pid", "started_at", "completed_at", "duration_ms",
            "graceful_sent", "force_sent", "method", "success",
        }

    def test_signal_names(self):
        assert GRACEFUL_SIGNAL == signal.SIGTERM


class TestGracefulTimeoutOverride:

    def test_none_uses_configured_timeout(self, clock):
        proc = FakeProcess(clock, exit_after={FORCE_SIGNAL: 0})
        result = make_sequencer(proc, clock, graceful_timeout_ms=700).kill(1234, graceful_timeout_ms=None)

        assert result.method == KillMethod.FORCE
        assert 700 <= result.duration_ms < 900

    @pytest.mark.parametrize("timeout", [0, -100, True, 1.5])
    def test_invalid_override_rejected(self, clock, timeout):
        """Rejected before the process is touched."""
        proc = FakeProcess(clock)

        with pytest.raises(ConfigError):
            make_sequencer(proc, clock).kill(1234, graceful_timeout_ms=timeout)

        assert proc.signals == []
        assert proc.probes == 0
