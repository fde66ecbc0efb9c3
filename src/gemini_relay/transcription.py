# src/gemini_relay/transcription.py

import asyncio
import logging
from typing import Optional, Sequence

import httpx

from .error_handler import TranscriptionError
from .settings import DEFAULT_TRANSCRIPTION_MODEL
from .timeout_config import TimeoutConfig

lib_logger = logging.getLogger("gemini_relay")

DEFAULT_RETRY_DELAYS = (1.0, 2.0, 4.0)


class TranscriptionClient:
    """
    Client for an OpenAI-style `/transcriptions` speech-to-text endpoint.

    Sends the audio as multipart form data (`file` + `model`) with a bearer
    key and returns the `text` field of the JSON reply.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        model: str = DEFAULT_TRANSCRIPTION_MODEL,
        http_client: Optional[httpx.AsyncClient] = None,
        retry_delays: Sequence[float] = DEFAULT_RETRY_DELAYS,
        max_attempts: int = 3,
    ):
        if not base_url:
            raise ValueError("A transcription base URL must be configured.")
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.retry_delays = tuple(retry_delays)
        self.max_attempts = max_attempts
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=TimeoutConfig.transcription()
        )

    async def close(self):
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def transcribe(
        self,
        audio: bytes,
        file_name: str = "audio.opus",
        content_type: str = "audio/opus",
    ) -> str:
        """Sends one transcription request. Raises TranscriptionError on failure."""
        if not audio:
            raise TranscriptionError("Audio payload is empty")

        try:
            response = await self._client.post(
                f"{self.base_url}/transcriptions",
                headers={"Authorization": f"Bearer {self.api_key}"},
                files={"file": (file_name, audio, content_type)},
                data={"model": self.model},
                timeout=TimeoutConfig.transcription(),
            )
        except httpx.HTTPError as e:
            raise TranscriptionError(
                f"Transcription request failed: {type(e).__name__}: {e}"
            ) from e

        if response.status_code >= 400:
            lib_logger.error(
                f"Transcription failed with status {response.status_code}: {response.text[:500]}"
            )
            raise TranscriptionError(
                f"Transcription failed with status {response.status_code}",
                status_code=response.status_code,
            )

        try:
            text = response.json().get("text") or ""
        except (ValueError, AttributeError) as e:
            raise TranscriptionError("Transcription response is not valid JSON") from e

        lib_logger.info(f"Transcription successful, text length: {len(text)}")
        return text

    async def transcribe_with_retry(
        self,
        audio: bytes,
        file_name: str = "audio.opus",
        content_type: str = "audio/opus",
    ) -> str:
        """
        Transcribes with up to `max_attempts` tries, sleeping 1s, 2s, 4s
        between them. The last failure is re-raised.
        """
        last_error: Optional[TranscriptionError] = None
        for attempt in range(self.max_attempts):
            try:
                return await self.transcribe(audio, file_name, content_type)
            except TranscriptionError as e:
                last_error = e
                if attempt + 1 >= self.max_attempts:
                    break
                delay = (
                    self.retry_delays[min(attempt, len(self.retry_delays) - 1)]
                    if self.retry_delays
                    else 0.0
                )
                lib_logger.warning(
                    f"Transcription attempt {attempt + 1}/{self.max_attempts} failed: {e}. "
                    f"Retrying in {delay:g}s."
                )
                await asyncio.sleep(delay)

        lib_logger.error(f"Transcription failed after {self.max_attempts} attempts.")
        raise last_error
