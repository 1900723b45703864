from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Protocol

from .errors import WaitTimeout

Probe = Callable[[], bool]


class Clock(Protocol):
    def monotonic(self) -> float: ...

    def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Wall clock backed by the time module."""

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)


class PollState(str, Enum):
    probing = "probing"
    ready = "ready"
    failed = "failed"
    timed_out = "timed_out"


@dataclass
class PollResult:
    state: PollState
    probes: int
    elapsed_s: float


class Poller:
    """Bounded retry: probe now, then once per interval tick until the deadline.

    The probe returns True when done, False to keep waiting, and raises to
    fail. Ticks are anchored on the start time, so a slow probe does not
    shift the schedule; a tick falling on or after the deadline is never
    probed.
    """

    def __init__(self, interval_s: float, limit_s: float, clock: Clock | None = None):
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        if limit_s < 0:
            raise ValueError("limit_s must not be negative")
        self.interval_s = interval_s
        self.limit_s = limit_s
        self.clock = clock or SystemClock()
        self.state = PollState.probing
        self.probes = 0

    def run(self, probe: Probe) -> PollResult:
        """Drive the probe to a terminal state.

        Returns on success, re-raises the probe's exception, and raises
        WaitTimeout once the deadline elapses.
        """
        self.state = PollState.probing
        self.probes = 0
        start = self.clock.monotonic()
        deadline = start + self.limit_s

        tick = 0
        while self.state == PollState.probing:
            self._probe(probe)
            if self.state != PollState.probing:
                break

            now = self.clock.monotonic()
            # Ticks missed by a slow probe are dropped, like a ticker does.
            tick = max(tick + 1, int((now - start) // self.interval_s) + 1)
            next_at = start + tick * self.interval_s
            if next_at >= deadline:
                if deadline > now:
                    self.clock.sleep(deadline - now)
                self.state = PollState.timed_out
                break
            if next_at > now:
                self.clock.sleep(next_at - now)

        elapsed = self.clock.monotonic() - start
        if self.state == PollState.timed_out:
            raise WaitTimeout(f"condition not met within {self.limit_s}s ({self.probes} probes)")
        return PollResult(state=self.state, probes=self.probes, elapsed_s=elapsed)

    def _probe(self, probe: Probe) -> None:
        self.probes += 1
        try:
            done = probe()
        except Exception:
            self.state = PollState.failed
            raise
        if done:
            self.state = PollState.ready
