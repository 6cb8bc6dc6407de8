# execution/circuit_breaker.py - MARKET ORACLE - UPSTREAM CIRCUIT GUARD - 2026 v1.3
# Patch vs v1.2:
# - release_trial(): a trial that never reached upstream frees the slot instead of re-opening
# Patch vs v1.1:
# - CircuitBreakerRegistry: shared breaker by default, per-endpoint-class when enabled
# - reset() / reset_all(): manual close for operators
# - snapshot(): state + counters + last failure time (wall + age)
# - Single half-open trial: a second check while the trial is unresolved re-opens

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from market_oracle.data.models import EndpointClass
from market_oracle.utils.logging import log_exec

Clock = Callable[[], float]

SHARED_BREAKER = "upstream"


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass
class CircuitBreakerState:
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    last_failure_at: Optional[float] = None
    last_reset_at: Optional[float] = None


class CircuitBreaker:
    """
    Three-state breaker counting consecutive failures since the last success.

    CLOSED    -> OPEN       when failure_count reaches threshold
    OPEN      -> HALF_OPEN  on the first check after reset_timeout since the last failure
    HALF_OPEN -> CLOSED     on success
    HALF_OPEN -> OPEN       on failure, or on a second check while the trial is unresolved
    """

    def __init__(
        self,
        name: str = SHARED_BREAKER,
        threshold: int = 3,
        reset_timeout: float = 300.0,
        clock: Optional[Clock] = None,
    ):
        self.name = str(name)
        self.threshold = max(1, int(threshold))
        self.reset_timeout = max(0.0, float(reset_timeout))
        self._clock = clock or time.monotonic
        self.state = CircuitBreakerState(last_reset_at=self._clock())
        self._trial_outstanding = False

        # telemetry
        self.total_failures = 0
        self.total_successes = 0
        self.times_opened = 0
        self.last_failure_wall: Optional[float] = None

    @property
    def current(self) -> CircuitState:
        return self.state.state

    @property
    def failure_count(self) -> int:
        return self.state.failure_count

    def _open(self, now: float) -> None:
        if self.state.state is not CircuitState.OPEN:
            self.times_opened += 1
        self.state.state = CircuitState.OPEN
        self._trial_outstanding = False
        log_exec.warning(
            f"CIRCUIT OPEN | {self.name} failures={self.state.failure_count} "
            f"cooldown={self.reset_timeout:.0f}s"
        )

    def allow_request(self) -> bool:
        now = self._clock()
        st = self.state

        if st.state is CircuitState.CLOSED:
            return True

        if st.state is CircuitState.OPEN:
            last = st.last_failure_at if st.last_failure_at is not None else now
            if now - last >= self.reset_timeout:
                st.state = CircuitState.HALF_OPEN
                self._trial_outstanding = True
                log_exec.info(f"CIRCUIT HALF-OPEN | {self.name} allowing one trial request")
                return True
            return False

        # HALF_OPEN
        if self._trial_outstanding:
            # trial not resolved yet: back off for another full cool-down
            st.last_failure_at = now
            self._open(now)
            return False
        self._trial_outstanding = True
        return True

    def release_trial(self) -> bool:
        """Give back a HALF_OPEN trial slot that ended without an upstream verdict."""
        if self.state.state is CircuitState.HALF_OPEN and self._trial_outstanding:
            self._trial_outstanding = False
            log_exec.info(f"CIRCUIT TRIAL RELEASED | {self.name} no verdict, next request may try")
            return True
        return False

    def record_success(self) -> None:
        st = self.state
        self.total_successes += 1
        was = st.state
        st.failure_count = 0
        self._trial_outstanding = False
        if was is not CircuitState.CLOSED:
            st.state = CircuitState.CLOSED
            st.last_reset_at = self._clock()
            log_exec.info(f"CIRCUIT CLOSED | {self.name} recovered from {was.value}")

    def record_failure(self) -> None:
        now = self._clock()
        st = self.state
        self.total_failures += 1
        self.last_failure_wall = time.time()

        if st.state is CircuitState.OPEN:
            st.last_failure_at = now
            return

        st.failure_count += 1
        st.last_failure_at = now

        if st.state is CircuitState.HALF_OPEN:
            self._open(now)
            return

        if st.failure_count >= self.threshold:
            self._open(now)

    def reset(self) -> None:
        """Manual close: clears failures regardless of current state."""
        prev = self.state.state
        self.state = CircuitBreakerState(last_reset_at=self._clock())
        self._trial_outstanding = False
        log_exec.warning(f"CIRCUIT RESET | {self.name} manual reset from {prev.value}")

    def snapshot(self) -> Dict[str, Any]:
        now = self._clock()
        last = self.state.last_failure_at
        return {
            "name": self.name,
            "state": self.state.state.value,
            "failure_count": self.state.failure_count,
            "threshold": self.threshold,
            "reset_timeout_sec": self.reset_timeout,
            "last_failure_age_sec": None if last is None else round(now - last, 3),
            "last_failure_wall": self.last_failure_wall,
            "times_opened": self.times_opened,
            "total_failures": self.total_failures,
            "total_successes": self.total_successes,
        }


class CircuitBreakerRegistry:
    """
    Hands out breakers by endpoint class.
    Shared mode: every class maps onto one breaker named 'upstream'.
    """

    def __init__(
        self,
        threshold: int = 3,
        reset_timeout: float = 300.0,
        per_endpoint: bool = False,
        clock: Optional[Clock] = None,
    ):
        self.threshold = threshold
        self.reset_timeout = reset_timeout
        self.per_endpoint = bool(per_endpoint)
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}
        if not self.per_endpoint:
            self.get()

    def get(self, endpoint_class: Optional[EndpointClass] = None) -> CircuitBreaker:
        name = SHARED_BREAKER
        if self.per_endpoint and endpoint_class is not None:
            name = EndpointClass(endpoint_class).value
        br = self._breakers.get(name)
        if br is None:
            br = CircuitBreaker(name, self.threshold, self.reset_timeout, clock=self._clock)
            self._breakers[name] = br
        return br

    def reset(self, name: str) -> bool:
        br = self._breakers.get(name)
        if br is None:
            return False
        br.reset()
        return True

    def reset_all(self) -> int:
        for br in self._breakers.values():
            br.reset()
        return len(self._breakers)

    def snapshot_all(self) -> Dict[str, Dict[str, Any]]:
        return {name: br.snapshot() for name, br in self._breakers.items()}
