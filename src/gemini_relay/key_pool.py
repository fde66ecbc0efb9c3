import logging
import threading
from enum import Enum
from typing import AbstractSet, List, Optional, Sequence

from .error_handler import mask_credential

lib_logger = logging.getLogger("gemini_relay")


class KeyTier(Enum):
    PREMIUM = "premium"
    REGULAR = "regular"


class KeyPool:
    """
    Holds the API keys in two tiers and a rotation cursor over the active one.

    Premium keys are used first. Once every premium key has failed, `demote()`
    switches the pool to the regular tier for good and resets the cursor.

    All operations are synchronous and guarded by one lock, so `advance`,
    `demote` and `current` are atomic with respect to each other across
    concurrent requests. Nothing here awaits or blocks on I/O.
    """

    def __init__(
        self,
        regular: Optional[Sequence[str]] = None,
        premium: Optional[Sequence[str]] = None,
    ):
        self._regular: List[str] = [k for k in (regular or []) if k]
        self._premium: List[str] = [k for k in (premium or []) if k]
        if not self._regular and not self._premium:
            raise ValueError("At least one API key must be configured.")

        self._tier = KeyTier.PREMIUM if self._premium else KeyTier.REGULAR
        self._cursor = 0
        self._lock = threading.Lock()

    def _active(self) -> List[str]:
        return self._premium if self._tier is KeyTier.PREMIUM else self._regular

    @property
    def tier(self) -> KeyTier:
        with self._lock:
            return self._tier

    @property
    def cursor(self) -> int:
        with self._lock:
            return self._cursor

    def size(self) -> int:
        """Number of keys in the active tier."""
        with self._lock:
            return len(self._active())

    def current(self) -> str:
        with self._lock:
            return self._active()[self._cursor]

    def advance(self) -> str:
        """Moves the cursor to the next key of the active tier, wrapping around."""
        with self._lock:
            keys = self._active()
            self._cursor = (self._cursor + 1) % len(keys)
            return keys[self._cursor]

    def next_untried(self, tried: AbstractSet[str]) -> Optional[str]:
        """
        Rotates until the current key is not in `tried` and returns it.

        Returns None (leaving the cursor where it was) when every key of the
        active tier has already been tried.
        """
        with self._lock:
            keys = self._active()
            for step in range(1, len(keys) + 1):
                index = (self._cursor + step) % len(keys)
                if keys[index] not in tried:
                    self._cursor = index
                    return keys[index]
            return None

    def can_demote(self) -> bool:
        with self._lock:
            return self._tier is KeyTier.PREMIUM and bool(self._regular)

    def demote(self) -> bool:
        """
        Irreversibly switches from the premium to the regular tier.

        Returns:
            True if the tier changed, False if already regular or no
            regular keys exist
        """
        with self._lock:
            if self._tier is not KeyTier.PREMIUM or not self._regular:
                return False
            self._tier = KeyTier.REGULAR
            self._cursor = 0
        lib_logger.warning(
            f"All premium keys failed. Switching to {len(self._regular)} regular key(s)."
        )
        return True

    def describe_current(self) -> str:
        """Masked label of the current key, safe to log or show to callers."""
        with self._lock:
            return f"{self._tier.value} key {mask_credential(self._active()[self._cursor])}"
