import asyncio
import logging
from enum import Enum
from typing import List, Optional

import httpx

lib_logger = logging.getLogger("gemini_relay")


class FailureClass(Enum):
    """Failure categories for routing decisions, in classification priority order."""

    TRANSIENT = "transient"  # Retry same key after backoff
    TIMEOUT = "timeout"  # Rotate key
    RATE_LIMIT = "rate_limit"  # Rotate key
    MODEL_ERROR = "model_error"  # Rotate key, model/request pairing is suspect
    UNEXPECTED = "unexpected"  # Log and rotate


# Statuses retried in place against the same key
TRANSIENT_STATUS_CODES = frozenset({503, 504, 408})


class RelayError(Exception):
    """Base class for every error raised by the relay."""

    pass


class ResolutionError(RelayError):
    """Raised when a model name cannot be resolved and no default is configured."""

    pass


class UpstreamError(RelayError):
    """
    An error returned by (or while talking to) the upstream generation API.

    Attributes:
        failure_class: How the controller should react to this failure
        status_code: HTTP status when the failure came from a response
        body: Raw response body, if any (never contains the key)
    """

    failure_class: FailureClass = FailureClass.UNEXPECTED

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.body = body


class TransientNetworkError(UpstreamError):
    failure_class = FailureClass.TRANSIENT


class UpstreamTimeoutError(UpstreamError):
    failure_class = FailureClass.TIMEOUT


class RateLimitError(UpstreamError):
    failure_class = FailureClass.RATE_LIMIT


class ModelRequestError(UpstreamError):
    failure_class = FailureClass.MODEL_ERROR


class UnexpectedUpstreamError(UpstreamError):
    failure_class = FailureClass.UNEXPECTED


class StreamParseError(UnexpectedUpstreamError):
    """Raised when a server-sent-event payload is not valid JSON."""

    pass


class TerminalRelayError(RelayError):
    """
    Raised (or carried by a terminal error fragment) once every key and every
    fallback model has failed.

    Attributes:
        failures: Every failure message recorded during the request, in order
    """

    def __init__(self, message: str, failures: Optional[List[str]] = None):
        super().__init__(message)
        self.message = message
        self.failures = list(failures or [])


class AllKeysRateLimited(TerminalRelayError):
    pass


class AllKeysModelError(TerminalRelayError):
    pass


class ModelsExhaustedError(TerminalRelayError):
    pass


class ProcessingConflictError(RelayError):
    """Raised when the same input is submitted while it is still being processed."""

    def __init__(self, identity: str):
        super().__init__(f"'{identity}' is already being processed")
        self.identity = identity


class CleanupError(RelayError):
    """Temporary artifacts could not be removed. Logged, never surfaced."""

    pass


class TranscriptionError(RelayError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SegmentationError(RelayError):
    """The external audio encoder failed or produced no segments."""

    pass


class DocumentUploadError(RelayError):
    pass


def error_from_status(
    status_code: int, target: str, body: Optional[str] = None
) -> UpstreamError:
    """
    Builds the typed upstream error for a non-success HTTP status.

    Args:
        status_code: HTTP status of the response
        target: What was being called, e.g. "Model gemini-1.5-flash-latest"
        body: Raw response body
    """
    if status_code in TRANSIENT_STATUS_CODES:
        return TransientNetworkError(
            f"{target} is temporarily unavailable (HTTP {status_code})",
            status_code=status_code,
            body=body,
        )
    if status_code == 429:
        return RateLimitError(
            f"{target} rate limit reached (HTTP 429)",
            status_code=status_code,
            body=body,
        )
    if status_code == 400:
        return ModelRequestError(
            f"{target} rejected the request (HTTP 400): "
            "the model name may be invalid or the request malformed",
            status_code=status_code,
            body=body,
        )
    return UnexpectedUpstreamError(
        f"{target} request failed (HTTP {status_code})",
        status_code=status_code,
        body=body,
    )


def classify_error(e: BaseException) -> FailureClass:
    """
    Classifies an exception into a FailureClass.

    Checked in priority order:
    - transient: HTTP 503/504/408 or a network error while connecting
    - timeout: client-side deadline (httpx or asyncio timeouts)
    - rate_limit: HTTP 429
    - model_error: HTTP 400
    - unexpected: anything else
    """
    if isinstance(e, UpstreamError):
        return e.failure_class

    status_code = None
    if isinstance(e, httpx.HTTPStatusError):
        status_code = e.response.status_code

    if status_code in TRANSIENT_STATUS_CODES:
        return FailureClass.TRANSIENT
    if isinstance(e, (httpx.ConnectError, httpx.RemoteProtocolError)):
        return FailureClass.TRANSIENT
    if isinstance(e, (httpx.TimeoutException, asyncio.TimeoutError)):
        return FailureClass.TIMEOUT
    if status_code == 429:
        return FailureClass.RATE_LIMIT
    if status_code == 400:
        return FailureClass.MODEL_ERROR
    return FailureClass.UNEXPECTED


def mask_credential(credential: str) -> str:
    """
    Mask a credential for safe display in logs and error messages.
    Shows the last 6 characters of keys long enough to stay unguessable.
    """
    if not credential:
        return "***"
    if len(credential) > 12:
        return f"...{credential[-6:]}"
    return "***"


def build_terminal_error(message: str, failures: List[str], classes: List[FailureClass]) -> TerminalRelayError:
    """
    Picks the terminal exception type from the failure classes seen during a request.

    Every attempt rate limited -> AllKeysRateLimited; every attempt a bad
    request -> AllKeysModelError; any mix -> ModelsExhaustedError.
    """
    if classes and all(c is FailureClass.RATE_LIMIT for c in classes):
        return AllKeysRateLimited(message, failures)
    if classes and all(c is FailureClass.MODEL_ERROR for c in classes):
        return AllKeysModelError(message, failures)
    return ModelsExhaustedError(message, failures)
