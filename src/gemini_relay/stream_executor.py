# src/gemini_relay/stream_executor.py

import asyncio
import json
import logging
from typing import Any, AsyncGenerator, Dict, List, Optional, Sequence

import httpx

from .error_handler import (
    DocumentUploadError,
    RateLimitError,
    StreamParseError,
    TransientNetworkError,
    UnexpectedUpstreamError,
    UpstreamTimeoutError,
    error_from_status,
)
from .schemas import ChatMessage, DocumentData, ImageData
from .settings import DEFAULT_BASE_URL, DEFAULT_UPLOAD_BASE_URL
from .timeout_config import TimeoutConfig

lib_logger = logging.getLogger("gemini_relay")

# Delays before retrying a transient failure against the same key
DEFAULT_RETRY_DELAYS = (1.0, 2.0, 4.0)


class StreamRequestExecutor:
    """
    Runs one streaming generation attempt for a (model, key) pair.

    Performs no key rotation or model fallback itself. Transient failures
    that happen before the stream produced anything are retried in place
    against the same key; every other failure is raised as a typed
    UpstreamError for the controller to act on.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        base_url: str = DEFAULT_BASE_URL,
        upload_base_url: str = DEFAULT_UPLOAD_BASE_URL,
        retry_delays: Sequence[float] = DEFAULT_RETRY_DELAYS,
    ):
        self.http_client = http_client
        self.base_url = base_url.rstrip("/")
        self.upload_base_url = upload_base_url.rstrip("/")
        self.retry_delays = tuple(retry_delays)

    @staticmethod
    def build_contents(
        prompt: str,
        history: Optional[Sequence[ChatMessage]] = None,
        images: Optional[Sequence[ImageData]] = None,
        documents: Optional[Sequence[DocumentData]] = None,
    ) -> List[Dict[str, Any]]:
        """
        Builds the `contents` array: prior turns in order, then the current
        user turn with images, documents and finally the text.
        """
        contents: List[Dict[str, Any]] = []

        # Every prior turn is sent, empty ones included, so the user/model
        # alternation the caller built is preserved
        for message in history or []:
            contents.append(
                {"role": message.role, "parts": [{"text": message.content}]}
            )

        parts: List[Dict[str, Any]] = []
        for image in images or []:
            if image.data:
                parts.append(
                    {"inline_data": {"mime_type": image.mime_type, "data": image.data}}
                )
        for document in documents or []:
            if document.file_uri:
                parts.append(
                    {
                        "file_data": {
                            "mime_type": document.mime_type,
                            "file_uri": document.file_uri,
                        }
                    }
                )
        if prompt:
            parts.append({"text": prompt})
        if not parts:
            parts.append({"text": ""})

        contents.append({"role": "user", "parts": parts})
        return contents

    @staticmethod
    def parse_sse_line(line: str, model: str = "") -> List[str]:
        """
        Extracts the text deltas carried by one server-sent-event line.

        Non-data lines, blank payloads and the `[DONE]` marker yield nothing.
        """
        line = line.strip()
        if not line.startswith("data:"):
            return []
        data_str = line[len("data:"):].strip()
        if not data_str or data_str == "[DONE]":
            return []

        try:
            chunk = json.loads(data_str)
        except json.JSONDecodeError as e:
            raise StreamParseError(
                f"Model {model} sent a malformed stream payload", body=data_str[:2000]
            ) from e

        if not isinstance(chunk, dict):
            return []

        # Errors can arrive inside an already-open stream
        if isinstance(chunk.get("error"), dict):
            code = chunk["error"].get("code")
            raise error_from_status(
                code if isinstance(code, int) else 500, f"Model {model}", data_str
            )

        candidates = chunk.get("candidates")
        if not isinstance(candidates, list) or not candidates:
            return []
        candidate = candidates[0]
        content = candidate.get("content") if isinstance(candidate, dict) else None
        if isinstance(candidate, dict) and content is None:
            # e.g. a chunk carrying only finishReason
            return []
        if not isinstance(content, dict):
            raise StreamParseError(
                f"Model {model} sent a stream payload with an unexpected shape",
                body=data_str[:2000],
            )
        parts = content.get("parts")
        if not isinstance(parts, list):
            return []
        return [
            part["text"]
            for part in parts
            if isinstance(part, dict) and isinstance(part.get("text"), str) and part["text"]
        ]

    async def stream(
        self,
        model: str,
        credential: str,
        prompt: str,
        history: Optional[Sequence[ChatMessage]] = None,
        images: Optional[Sequence[ImageData]] = None,
        documents: Optional[Sequence[DocumentData]] = None,
    ) -> AsyncGenerator[str, None]:
        """
        Streams text deltas from `streamGenerateContent` as they arrive.

        Raises:
            TransientNetworkError: 503/504/408 or connect failure after all retries
            RateLimitError: HTTP 429
            ModelRequestError: HTTP 400
            UpstreamTimeoutError: The connection or a read timed out
            StreamParseError: A data line did not contain valid JSON
            UnexpectedUpstreamError: Any other upstream failure
        """
        url = f"{self.base_url}/models/{model}:streamGenerateContent"
        payload = {"contents": self.build_contents(prompt, history, images, documents)}
        headers = {"x-goog-api-key": credential, "Content-Type": "application/json"}

        attempt = 0
        while True:
            started = False
            try:
                async with self.http_client.stream(
                    "POST",
                    url,
                    headers=headers,
                    json=payload,
                    params={"alt": "sse"},
                    timeout=TimeoutConfig.streaming(),
                ) as response:
                    if response.status_code >= 400:
                        error_body = await response.aread()
                        raise error_from_status(
                            response.status_code,
                            f"Model {model}",
                            error_body.decode("utf-8", errors="replace"),
                        )

                    async for line in response.aiter_lines():
                        started = True
                        for text in self.parse_sse_line(line, model):
                            yield text
                return

            except TransientNetworkError as e:
                if started:
                    raise
                last_error = e
            except (httpx.ConnectError, httpx.RemoteProtocolError) as e:
                if started:
                    raise UnexpectedUpstreamError(
                        f"Model {model} stream was interrupted: {type(e).__name__}"
                    ) from e
                last_error = TransientNetworkError(
                    f"Model {model} could not be reached: {type(e).__name__}"
                )
            except httpx.TimeoutException as e:
                raise UpstreamTimeoutError(
                    f"Model {model} timed out ({type(e).__name__})"
                ) from e
            except httpx.HTTPError as e:
                raise UnexpectedUpstreamError(
                    f"Model {model} request failed: {type(e).__name__}"
                ) from e

            if attempt >= len(self.retry_delays):
                raise last_error
            delay = self.retry_delays[attempt]
            attempt += 1
            lib_logger.info(
                f"{last_error.message}. Retrying same key in {delay:g}s "
                f"(retry {attempt}/{len(self.retry_delays)})."
            )
            await asyncio.sleep(delay)

    async def upload_document(
        self,
        credential: str,
        data: bytes,
        file_name: str,
        mime_type: str,
        display_name: Optional[str] = None,
    ) -> str:
        """
        Uploads a document through the resumable file API and returns its URI.

        Raises:
            RateLimitError: The key is rate limited (HTTP 429)
            DocumentUploadError: Any other failure
        """
        start_url = f"{self.upload_base_url}/upload/v1beta/files"
        start_headers = {
            "x-goog-api-key": credential,
            "X-Goog-Upload-Protocol": "resumable",
            "X-Goog-Upload-Command": "start",
            "X-Goog-Upload-Header-Content-Length": str(len(data)),
            "X-Goog-Upload-Header-Content-Type": mime_type,
        }

        try:
            response = await self.http_client.post(
                start_url,
                headers=start_headers,
                json={"file": {"display_name": display_name or file_name}},
                timeout=TimeoutConfig.transcription(),
            )
            self._check_upload_response(response, "start")

            upload_url = response.headers.get("x-goog-upload-url")
            if not upload_url:
                raise DocumentUploadError("Upload URL not found in response headers")

            response = await self.http_client.post(
                upload_url,
                headers={
                    "x-goog-api-key": credential,
                    "X-Goog-Upload-Offset": "0",
                    "X-Goog-Upload-Command": "upload, finalize",
                },
                content=data,
                timeout=TimeoutConfig.transcription(),
            )
            self._check_upload_response(response, "finalize")
        except httpx.HTTPError as e:
            raise DocumentUploadError(
                f"Uploading '{file_name}' failed: {type(e).__name__}"
            ) from e

        try:
            file_uri = response.json()["file"]["uri"]
        except (ValueError, KeyError, TypeError) as e:
            raise DocumentUploadError(
                f"Upload of '{file_name}' returned no file URI"
            ) from e

        lib_logger.info(f"Uploaded document '{file_name}' as {file_uri}")
        return file_uri

    @staticmethod
    def _check_upload_response(response: httpx.Response, step: str) -> None:
        if response.status_code == 429:
            raise RateLimitError(
                f"File upload rate limit reached (HTTP 429) during {step}",
                status_code=429,
                body=response.text,
            )
        if response.status_code >= 400:
            raise DocumentUploadError(
                f"File upload {step} failed (HTTP {response.status_code}): {response.text[:500]}"
            )
