"""Reconnect delay policies used by ``ConnectionManager``.

A policy only decides how long to wait before the next attempt; the
manager guarantees that at most one reconnect timer is pending.
"""
from __future__ import annotations

import random
from typing import Protocol

MAX_EXPONENT = 32


class ReconnectPolicy(Protocol):
    def next_delay(self) -> float:
        """Seconds to wait before the next reconnect attempt."""
        ...

    def reset(self) -> None:
        """Called after a successful connect."""
        ...


class FixedInterval:
    """Constant delay between attempts (the default)."""

    def __init__(self, interval: float = 5.0) -> None:
        if interval < 0:
            raise ValueError("reconnect interval must be >= 0")
        self.interval = interval

    def next_delay(self) -> float:
        return self.interval

    def reset(self) -> None:
        pass

    def __repr__(self) -> str:
        return f"FixedInterval({self.interval!r})"


class ExponentialBackoff:
    """Exponential backoff with jitter, capped at ``maximum`` seconds."""

    def __init__(self, initial: float = 1.0, maximum: float = 60.0, jitter: float = 1.0) -> None:
        self.initial = initial
        self.maximum = maximum
        self.jitter = jitter
        self._attempt = 0

    def next_delay(self) -> float:
        # 2 ** n no longer fits a float past n = 1023
        base = self.initial * (2 ** min(self._attempt, MAX_EXPONENT))
        self._attempt += 1
        return min(self.maximum, base + random.uniform(0, self.jitter))

    def reset(self) -> None:
        self._attempt = 0

    def __repr__(self) -> str:
        return f"ExponentialBackoff(initial={self.initial!r}, maximum={self.maximum!r})"
