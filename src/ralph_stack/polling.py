"""Bounded sleep-and-recheck loops.

Clock and sleep are injectable so tests can run a ten-minute CI wait in
microseconds.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass
class PollOutcome(Generic[T]):
    """Result of :func:`wait_for`.

    Attributes:
        value: Last value returned by the probe
        timed_out: True if the budget ran out before ``is_done`` held
        elapsed: Seconds spent, measured on the injected clock
        polls: How many times the probe ran
    """

    value: Optional[T]
    timed_out: bool
    elapsed: float
    polls: int


def wait_for(
    probe: Callable[[], T],
    is_done: Callable[[T], bool],
    timeout: float,
    interval: float,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
    on_wait: Optional[Callable[[T, float], None]] = None,
) -> PollOutcome[T]:
    """Call ``probe`` until ``is_done(value)`` or ``timeout`` seconds pass.

    The probe always runs at least once. Each sleep is clamped to the
    remaining budget, so the total time slept never exceeds ``timeout``.

    Args:
        probe: Returns the current observation
        is_done: True when the observation is final
        timeout: Budget in seconds
        interval: Seconds between probes
        sleep: Sleep function (``time.sleep`` by default)
        clock: Monotonic clock (``time.monotonic`` by default)
        on_wait: Called with (value, elapsed) before each sleep
    """
    if interval <= 0:
        raise ValueError("interval must be positive")

    start = clock()
    deadline = start + max(0.0, timeout)
    polls = 0

    while True:
        value = probe()
        polls += 1
        if is_done(value):
            return PollOutcome(value=value, timed_out=False, elapsed=clock() - start, polls=polls)

        remaining = deadline - clock()
        if remaining <= 0:
            return PollOutcome(value=value, timed_out=True, elapsed=clock() - start, polls=polls)

        if on_wait is not None:
            on_wait(value, clock() - start)
        sleep(min(interval, remaining))
