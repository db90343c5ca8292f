from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Callable


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Exponential backoff policy for consecutive transient failures.

    - base_delay_seconds is the delay after the first failure.
    - jitter_ratio scales each raw delay by a factor in [1-jitter, 1].
    - retry_after_cap_seconds caps any Retry-After override (0 means max_delay_seconds).
    """

    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 300.0
    jitter_ratio: float = 0.25
    retry_after_cap_seconds: float = 0.0

    def __post_init__(self) -> None:
        if self.base_delay_seconds < 0:
            raise ValueError("base_delay_seconds must be >= 0")
        if self.max_delay_seconds < 0:
            raise ValueError("max_delay_seconds must be >= 0")
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        if not (0.0 <= self.jitter_ratio <= 1.0):
            raise ValueError("jitter_ratio must be between 0 and 1")
        if self.retry_after_cap_seconds < 0:
            raise ValueError("retry_after_cap_seconds must be >= 0")


UniformFn = Callable[[float, float], float]


def _compute_backoff_seconds(failure_attempt: int, policy: BackoffPolicy) -> float:
    # failure_attempt=1 => base delay.
    exponent = min(64, max(0, int(failure_attempt) - 1))
    delay = policy.base_delay_seconds * (2**exponent)
    return min(policy.max_delay_seconds, max(0.0, float(delay)))


def _apply_jitter(delay: float, policy: BackoffPolicy, uniform: UniformFn) -> float:
    d = max(0.0, float(delay))
    if d == 0.0 or policy.jitter_ratio <= 0:
        return d
    factor = uniform(1.0 - policy.jitter_ratio, 1.0)
    return max(0.0, d * factor)


def _normalize_retry_after(value: float | None, policy: BackoffPolicy) -> float | None:
    if value is None:
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    if seconds < 0:
        return None
    cap = policy.retry_after_cap_seconds or policy.max_delay_seconds
    return min(seconds, float(cap))


class Backoff:
    """
    Tracks the delay sequence for one run of consecutive failures.

    Successive delays never decrease and never exceed `max_delay_seconds`; `reset()`
    starts a new sequence after a success.
    """

    def __init__(self, policy: BackoffPolicy, *, uniform: UniformFn | None = None) -> None:
        self._policy = policy
        self._uniform = uniform or random.uniform
        self._attempt = 0
        self._last = 0.0

    @property
    def attempt(self) -> int:
        return self._attempt

    def reset(self) -> None:
        self._attempt = 0
        self._last = 0.0

    def next_delay(self, *, retry_after_seconds: float | None = None) -> float:
        self._attempt += 1

        delay = _apply_jitter(
            _compute_backoff_seconds(self._attempt, self._policy),
            self._policy,
            self._uniform,
        )
        ra = _normalize_retry_after(retry_after_seconds, self._policy)
        if ra is not None:
            delay = max(delay, ra)

        delay = min(self._policy.max_delay_seconds, max(self._last, delay))
        self._last = delay
        return delay
