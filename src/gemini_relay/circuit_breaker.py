import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Union

lib_logger = logging.getLogger("gemini_relay")


@dataclass
class CircuitState:
    """Counter for the current window plus the time it resets."""

    request_count: int = 0
    window_reset_at: float = 0.0
    is_open: bool = False


class CircuitBreaker:
    """
    Fixed-window request-rate guard shared by every caller of the executor.

    Counts each admitted attempt. Once more than `max_requests` attempts ask
    for admission inside one window, the breaker opens and refuses everything
    until the window's reset time passes; the first call after that starts a
    fresh window and closes it again.

    The decision is O(1) under a plain lock and never sleeps, so callers are
    never made to wait here.
    """

    def __init__(
        self,
        max_requests: int = 60,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._state = CircuitState(window_reset_at=clock() + window_seconds)
        self._lock = threading.Lock()

    def admit(self) -> bool:
        """Returns True if an upstream attempt may proceed right now."""
        with self._lock:
            now = self._clock()
            state = self._state
            if now >= state.window_reset_at:
                if state.is_open:
                    lib_logger.info("Circuit breaker window reset. Closing circuit.")
                state.request_count = 0
                state.is_open = False
                state.window_reset_at = now + self.window_seconds

            if state.is_open:
                return False

            if state.request_count >= self.max_requests:
                state.is_open = True
                remaining = state.window_reset_at - now
                lib_logger.warning(
                    f"Circuit breaker opened: {self.max_requests} requests within "
                    f"{self.window_seconds:.0f}s. Refusing attempts for {remaining:.1f}s."
                )
                return False

            state.request_count += 1
            return True

    @property
    def is_open(self) -> bool:
        with self._lock:
            return self._state.is_open and self._clock() < self._state.window_reset_at

    def snapshot(self) -> Dict[str, Union[int, float, bool]]:
        with self._lock:
            return {
                "request_count": self._state.request_count,
                "is_open": self._state.is_open,
                "reset_in_seconds": round(
                    max(0.0, self._state.window_reset_at - self._clock()), 3
                ),
            }
