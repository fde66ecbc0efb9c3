# src/gemini_relay/settings.py
"""
Relay configuration read from environment variables.

The application entry point loads `.env` files with python-dotenv before
calling `RelaySettings.from_env()`; library users can also build
`RelaySettings` directly.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Mapping, Optional

from .model_catalog import DEFAULT_MODEL

lib_logger = logging.getLogger("gemini_relay")

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_UPLOAD_BASE_URL = "https://generativelanguage.googleapis.com"
DEFAULT_TRANSCRIPTION_MODEL = "FunAudioLLM/SenseVoiceSmall"
DEFAULT_ANALYSIS_MODEL = "gemini-2.0-flash-lite-preview-02-05"


def _split_keys(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def env_int(env: Mapping[str, str], key: str, default: int) -> int:
    value = env.get(key)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        lib_logger.warning(f"Invalid value for {key}: {value}. Using default: {default}")
        return default


def env_float(env: Mapping[str, str], key: str, default: float) -> float:
    value = env.get(key)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        lib_logger.warning(f"Invalid value for {key}: {value}. Using default: {default}")
        return default


@dataclass
class RelaySettings:
    api_keys: List[str] = field(default_factory=list)
    premium_api_keys: List[str] = field(default_factory=list)
    base_url: str = DEFAULT_BASE_URL
    upload_base_url: str = DEFAULT_UPLOAD_BASE_URL
    models_file: Path = Path("models.yaml")
    default_model: str = DEFAULT_MODEL

    circuit_max_requests: int = 60
    circuit_window_seconds: float = 60.0

    transcription_base_url: str = ""
    transcription_api_key: str = ""
    transcription_model: str = DEFAULT_TRANSCRIPTION_MODEL

    max_file_size: int = 25 * 1024 * 1024
    analysis_model: str = DEFAULT_ANALYSIS_MODEL
    segment_seconds: int = 600
    segment_bitrate: str = "22k"
    ffmpeg_path: str = "ffmpeg"
    max_concurrent_segments: int = 3

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "RelaySettings":
        env = os.environ if env is None else env
        settings = cls(
            api_keys=_split_keys(env.get("GEMINI_API_KEYS")),
            premium_api_keys=_split_keys(env.get("GEMINI_PREMIUM_API_KEYS")),
            base_url=(env.get("GEMINI_BASE_URL") or DEFAULT_BASE_URL).rstrip("/"),
            upload_base_url=(
                env.get("GEMINI_UPLOAD_BASE_URL") or DEFAULT_UPLOAD_BASE_URL
            ).rstrip("/"),
            models_file=Path(env.get("GEMINI_MODELS_FILE") or "models.yaml"),
            default_model=env.get("GEMINI_DEFAULT_MODEL") or DEFAULT_MODEL,
            circuit_max_requests=env_int(env, "CIRCUIT_BREAKER_MAX_REQUESTS", 60),
            circuit_window_seconds=env_float(env, "CIRCUIT_BREAKER_WINDOW_SECONDS", 60.0),
            transcription_base_url=(env.get("TRANSCRIPTION_BASE_URL") or "").rstrip("/"),
            transcription_api_key=env.get("TRANSCRIPTION_API_KEY") or "",
            transcription_model=env.get("TRANSCRIPTION_MODEL") or DEFAULT_TRANSCRIPTION_MODEL,
            max_file_size=env_int(env, "MEETING_MAX_FILE_SIZE", 25 * 1024 * 1024),
            analysis_model=env.get("MEETING_ANALYSIS_MODEL") or DEFAULT_ANALYSIS_MODEL,
            segment_seconds=env_int(env, "MEETING_SEGMENT_SECONDS", 600),
            segment_bitrate=env.get("MEETING_SEGMENT_BITRATE") or "22k",
            ffmpeg_path=env.get("FFMPEG_PATH") or "ffmpeg",
        )
        if not settings.api_keys and not settings.premium_api_keys:
            lib_logger.warning(
                "No Gemini API keys configured. Set GEMINI_API_KEYS and/or GEMINI_PREMIUM_API_KEYS."
            )
        return settings

    @property
    def transcription_enabled(self) -> bool:
        return bool(self.transcription_base_url and self.transcription_api_key)
