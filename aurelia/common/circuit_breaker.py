import asyncio
import time
from typing import Optional


class CircuitOpenError(RuntimeError):
    pass


class CircuitBreaker:
    """
    Simple async in-memory circuit breaker.

    Usage:
      cb = CircuitBreaker(name="razorpay", failure_threshold=5, recovery_timeout=30)
      await cb.before_call()
      ... call ...
      await cb.after_call(success)

    Behavior:
      - CLOSED: normal operation; consecutive failures increment fail_count.
      - OPEN: before_call() raises CircuitOpenError until recovery_timeout has passed.
      - HALF_OPEN: one probe at a time is let through; success closes, failure re-opens.
    """
    def __init__(self, name: str, failure_threshold: int = 5, recovery_timeout: float = 30.0):
        self.name = name
        self.failure_threshold = max(1, int(failure_threshold))
        self.recovery_timeout = float(recovery_timeout)

        self._state = "CLOSED"  # CLOSED | OPEN | HALF_OPEN
        self._fail_count = 0
        self._opened_at: Optional[float] = None
        self._probe_in_flight = False
        self._lock = asyncio.Lock()

    @property
    def state(self) -> str:
        return self._state

    def _maybe_transition(self):
        # called under lock
        if self._state == "OPEN" and self._opened_at is not None:
            if time.monotonic() - self._opened_at >= self.recovery_timeout:
                self._state = "HALF_OPEN"
                self._probe_in_flight = False

    async def before_call(self):
        async with self._lock:
            self._maybe_transition()
            if self._state == "OPEN":
                raise CircuitOpenError(f"circuit {self.name} is open")
            if self._state == "HALF_OPEN":
                if self._probe_in_flight:
                    raise CircuitOpenError(f"circuit {self.name} is half-open and a probe is running")
                self._probe_in_flight = True

    def release_probe(self):
        self._probe_in_flight = False

    async def after_call(self, success: bool):
        async with self._lock:
            self._probe_in_flight = False

            if success:
                self._fail_count = 0
                self._state = "CLOSED"
                self._opened_at = None
                return

            self._fail_count += 1
            # a failing probe re-opens immediately
            if self._fail_count >= self.failure_threshold or self._state == "HALF_OPEN":
                self._state = "OPEN"
                self._opened_at = time.monotonic()
                self._fail_count = 0
