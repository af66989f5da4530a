"""
Circuit breaker — fail fast against an artifact registry that is down.

The resolver keeps one breaker per registry host. After enough
consecutive transport failures the host's circuit opens, and every
lookup for that host is refused until ``recovery_timeout`` has passed.
The first lookup after that is a trial: success closes the circuit,
failure re-opens it and restarts the timer.

    closed ──(threshold failures)──▶ open ──(timeout)──▶ half_open
      ▲                                ▲                     │
      └──────────(trial ok)────────────┼─────────────────────┤
                                       └────(trial failed)───┘
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class CircuitState(StrEnum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreaker:
    """Failure counter and gate for a single registry host.

    Shared by the resolver's worker threads; all mutation happens under
    ``_lock``. ``clock`` is injectable so tests can move time.
    """

    name: str
    failure_threshold: int = 5
    recovery_timeout: float = 30.0
    clock: Callable[[], float] = field(default=time.monotonic, repr=False, compare=False)

    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    total_rejections: int = 0
    opened_at: float | None = None
    _probing: bool = field(default=False, repr=False, compare=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def allow_request(self) -> bool:
        """Whether a lookup against this host may go out now."""
        with self._lock:
            if self.state == CircuitState.CLOSED:
                return True
            if self.state == CircuitState.OPEN and self._remaining() <= 0:
                self._move_to(CircuitState.HALF_OPEN)
            if self.state == CircuitState.HALF_OPEN and not self._probing:
                self._probing = True
                return True
            self.total_rejections += 1
            return False

    def record_success(self) -> None:
        with self._lock:
            self.failure_count = 0
            if self.state != CircuitState.CLOSED:
                self._move_to(CircuitState.CLOSED)

    def record_failure(self) -> None:
        """Count a transport failure (unreachable, 5xx, throttled)."""
        with self._lock:
            self.failure_count += 1
            if self.state == CircuitState.HALF_OPEN or (
                self.state == CircuitState.CLOSED
                and self.failure_count >= self.failure_threshold
            ):
                self._move_to(CircuitState.OPEN)

    def seconds_until_retry(self) -> float:
        """Seconds before an open circuit lets a trial lookup through (0 when not open)."""
        with self._lock:
            return max(0.0, self._remaining()) if self.state == CircuitState.OPEN else 0.0

    def reset(self) -> None:
        with self._lock:
            self._move_to(CircuitState.CLOSED)
            self.failure_count = 0
            self.total_rejections = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "total_rejections": self.total_rejections,
            "failure_threshold": self.failure_threshold,
            "recovery_timeout": self.recovery_timeout,
        }

    # ── internals (caller holds _lock) ──────────────────────────

    def _remaining(self) -> float:
        if self.opened_at is None:
            return 0.0
        return self.opened_at + self.recovery_timeout - self.clock()

    def _move_to(self, new_state: CircuitState) -> None:
        if new_state == self.state:
            return
        previous, self.state = self.state, new_state
        self._probing = False
        if new_state == CircuitState.OPEN:
            self.opened_at = self.clock()
            logger.warning(
                "Registry %s unavailable after %d failure(s); pausing lookups for %.0fs",
                self.name, self.failure_count, self.recovery_timeout,
            )
        elif new_state == CircuitState.CLOSED:
            self.opened_at = None
            self.failure_count = 0
            logger.info("Registry %s recovered (%s → closed)", self.name, previous.value)
        else:
            logger.info("Registry %s: probing after cool-down", self.name)


@dataclass
class CircuitBreakerRegistry:
    """Lazily created breakers, keyed by registry host."""

    default_threshold: int = 5
    default_timeout: float = 30.0
    breakers: dict[str, CircuitBreaker] = field(default_factory=dict)
    _guard: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def get_or_create(self, host: str) -> CircuitBreaker:
        with self._guard:
            breaker = self.breakers.get(host)
            if breaker is None:
                breaker = CircuitBreaker(
                    name=host,
                    failure_threshold=self.default_threshold,
                    recovery_timeout=self.default_timeout,
                )
                self.breakers[host] = breaker
            return breaker

    def get_status(self) -> dict[str, dict[str, Any]]:
        with self._guard:
            return {host: breaker.to_dict() for host, breaker in self.breakers.items()}

    def unavailable_hosts(self) -> list[str]:
        """Hosts whose circuit is not currently closed."""
        with self._guard:
            return sorted(h for h, b in self.breakers.items() if b.state != CircuitState.CLOSED)

    def reset_all(self) -> None:
        with self._guard:
            breakers = list(self.breakers.values())
        for breaker in breakers:
            breaker.reset()
