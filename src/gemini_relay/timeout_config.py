# src/gemini_relay/timeout_config.py
"""
httpx timeouts for the two kinds of upstream call the relay makes.

Generation streams are bounded by the gap between SSE lines, so a stalled
stream fails the attempt and rotates the key. Transcription and document
uploads send or wait on a whole payload and get one long read/write budget.

Every value is in seconds and can be overridden through the environment;
an unparsable value is logged and the default is kept.
"""

import os

import httpx

from .settings import env_float

# env var -> default seconds
DEFAULTS = {
    "TIMEOUT_CONNECT": 30.0,
    "TIMEOUT_WRITE": 30.0,
    "TIMEOUT_POOL": 60.0,
    "TIMEOUT_READ_STREAMING": 180.0,
    "TIMEOUT_TRANSCRIPTION": 600.0,
}


def _seconds(name: str) -> float:
    return env_float(os.environ, name, DEFAULTS[name])


class TimeoutConfig:
    @staticmethod
    def streaming() -> httpx.Timeout:
        """Timeout for `streamGenerateContent`; `read` is the allowed gap between lines."""
        return httpx.Timeout(
            connect=_seconds("TIMEOUT_CONNECT"),
            read=_seconds("TIMEOUT_READ_STREAMING"),
            write=_seconds("TIMEOUT_WRITE"),
            pool=_seconds("TIMEOUT_POOL"),
        )

    @staticmethod
    def transcription() -> httpx.Timeout:
        """Timeout for speech-to-text calls and file uploads, where whole payloads move at once."""
        payload = _seconds("TIMEOUT_TRANSCRIPTION")
        return httpx.Timeout(
            connect=_seconds("TIMEOUT_CONNECT"),
            read=payload,
            write=payload,
            pool=_seconds("TIMEOUT_POOL"),
        )
