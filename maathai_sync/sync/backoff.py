"""Exponential reconnect backoff with jitter."""

import random
from typing import Callable


class ReconnectBackoff:
    """
    Delay sequence ``base * factor ** attempt`` capped at ``max_delay``.

    Jitter shaves up to ``jitter`` (a fraction) off each delay so many
    clients dropped at once do not reconnect in lockstep; delays never
    exceed the cap.
    """

    def __init__(
        self,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        factor: float = 2.0,
        jitter: float = 0.2,
        rng: Callable[[], float] = random.random,
    ):
        if base_delay <= 0 or max_delay < base_delay:
            raise ValueError("need 0 < base_delay <= max_delay")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.factor = factor
        self.jitter = jitter
        self._rng = rng
        self.attempts = 0

    def peek(self) -> float:
        """Un-jittered delay the next call to ``next_delay`` is based on."""
        return min(self.max_delay, self.base_delay * (self.factor ** self.attempts))

    def next_delay(self) -> float:
        delay = self.peek()
        delay -= delay * self.jitter * self._rng()
        self.attempts += 1
        return delay

    def reset(self) -> None:
        self.attempts = 0
