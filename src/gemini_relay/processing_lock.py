import logging
import threading
from typing import Set

from .error_handler import ProcessingConflictError

lib_logger = logging.getLogger("gemini_relay")


class PerFileProcessingLock:
    """
    Allows at most one in-flight pipeline per input identity (e.g. file name).

    Acquisition never waits: a second submission for an identity that is
    still being processed fails immediately with ProcessingConflictError.
    The lock is not reentrant.
    """

    def __init__(self):
        self._active: Set[str] = set()
        self._lock = threading.Lock()

    def acquire(self, identity: str) -> None:
        with self._lock:
            if identity in self._active:
                raise ProcessingConflictError(identity)
            self._active.add(identity)
        lib_logger.debug(f"Processing lock acquired for '{identity}'")

    def release(self, identity: str) -> None:
        with self._lock:
            self._active.discard(identity)
        lib_logger.debug(f"Processing lock released for '{identity}'")

    def is_held(self, identity: str) -> bool:
        with self._lock:
            return identity in self._active
