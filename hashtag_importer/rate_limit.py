from __future__ import annotations

import time
from typing import Callable, Optional

ClockFn = Callable[[], float]
# Returns True when the sleep was cut short (e.g. by a shutdown request).
SleepFn = Callable[[float], Optional[bool]]


class RateLimiter:
    """
    Spaces out calls so that at most `per_minute` happen in any minute.

    `per_minute <= 0` disables limiting. An interrupted sleep does not use up a slot.
    """

    def __init__(
        self,
        per_minute: float,
        *,
        clock: ClockFn | None = None,
        sleep_fn: SleepFn | None = None,
    ) -> None:
        self._interval = 60.0 / float(per_minute) if per_minute > 0 else 0.0
        self._clock = clock or time.monotonic
        self._sleep = sleep_fn or time.sleep
        self._next_allowed: float | None = None

    @property
    def interval_seconds(self) -> float:
        return self._interval

    def wait(self) -> bool:
        """Block until the next call is allowed; False when the wait was interrupted."""
        if self._interval <= 0:
            return True

        now = self._clock()
        if self._next_allowed is not None and now < self._next_allowed:
            if self._sleep(self._next_allowed - now):
                return False
            now = self._next_allowed

        self._next_allowed = now + self._interval
        return True
