"""Delays, retry backoff and the clock the deployment driver waits on.

Every wait in the deployment is a named field of ``Delays`` so that a
slow cluster can be accommodated in one place and tests can run with a
fake clock instead of sleeping.
"""

from __future__ import annotations

import random
import time
from dataclasses import dataclass, field
from typing import Optional


class Clock:
    """Wall-clock waits. Replaced by a fake in tests."""

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)

    def monotonic(self) -> float:
        return time.monotonic()


@dataclass(frozen=True)
class ConstantBackoff:
    """Same delay before every retry."""

    seconds: float = 30.0

    def delay(self, attempt: int) -> float:
        return self.seconds


@dataclass(frozen=True)
class ExponentialBackoff:
    """``base * factor ** (attempt - 1)`` capped at ``cap``, optionally jittered.

    With ``jitter`` the delay is drawn uniformly from ``[0, delay]``
    ("full jitter").
    """

    base: float = 10.0
    factor: float = 2.0
    cap: float = 300.0
    jitter: bool = False
    rng: Optional[random.Random] = field(default=None, compare=False)

    def delay(self, attempt: int) -> float:
        value = min(self.cap, self.base * self.factor ** max(attempt - 1, 0))
        if self.jitter:
            return (self.rng or random).uniform(0, value)
        return value


@dataclass(frozen=True)
class Delays:
    """Fixed waits between deployment phases, in seconds."""

    # Infrastructure apply: propagation after specific manifests
    configmaps: float = 10
    secrets: float = 10
    services: float = 5

    # Deploy-retry loop
    initial_rollout: float = 45
    restart_settle: float = 30
    after_restart: float = 60
    poll_interval: float = 10
    pods_ready_timeout: float = 180
    retry: ConstantBackoff | ExponentialBackoff = field(default_factory=ConstantBackoff)
    max_attempts: int = 3

    # Remaining resources / final convergence
    repository_secret: float = 30
    final_wait_timeout: int = 180
    final_grace: float = 60
    final_reapply: float = 30

    # Validation
    validation_grace: float = 60
