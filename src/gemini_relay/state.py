from dataclasses import dataclass, field

from .circuit_breaker import CircuitBreaker
from .key_pool import KeyPool
from .processing_lock import PerFileProcessingLock
from .settings import RelaySettings


@dataclass
class ServiceState:
    """
    The process-wide mutable state of the relay, created once and passed by
    reference to every controller and pipeline.

    Each member guards itself with its own lock; nothing here ever holds two
    of those locks at once.
    """

    key_pool: KeyPool
    circuit_breaker: CircuitBreaker = field(default_factory=CircuitBreaker)
    processing_locks: PerFileProcessingLock = field(default_factory=PerFileProcessingLock)

    @classmethod
    def from_settings(cls, settings: RelaySettings) -> "ServiceState":
        return cls(
            key_pool=KeyPool(
                regular=settings.api_keys, premium=settings.premium_api_keys
            ),
            circuit_breaker=CircuitBreaker(
                max_requests=settings.circuit_max_requests,
                window_seconds=settings.circuit_window_seconds,
            ),
        )
