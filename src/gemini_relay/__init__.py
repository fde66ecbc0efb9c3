from typing import TYPE_CHECKING

from .circuit_breaker import CircuitBreaker
from .controller import ResilientStreamController
from .error_handler import (
    AllKeysModelError,
    AllKeysRateLimited,
    FailureClass,
    ModelsExhaustedError,
    ProcessingConflictError,
    RelayError,
    ResolutionError,
    TerminalRelayError,
    UpstreamError,
)
from .key_pool import KeyPool, KeyTier
from .model_catalog import ModelCatalog, ModelConfig
from .processing_lock import PerFileProcessingLock
from .schemas import ChatMessage, DocumentData, Fragment, FragmentType, ImageData
from .settings import RelaySettings
from .state import ServiceState
from .stream_executor import StreamRequestExecutor

# The meeting pipeline classes are lazy-loaded via __getattr__ so chat-only
# users never import them; type checkers see them statically
if TYPE_CHECKING:
    from .pipeline import ChunkedTranscriptionPipeline
    from .segmenter import AudioSegmenter
    from .transcription import TranscriptionClient

__all__ = [
    "AllKeysModelError",
    "AllKeysRateLimited",
    "AudioSegmenter",
    "ChatMessage",
    "ChunkedTranscriptionPipeline",
    "CircuitBreaker",
    "DocumentData",
    "FailureClass",
    "Fragment",
    "FragmentType",
    "ImageData",
    "KeyPool",
    "KeyTier",
    "ModelCatalog",
    "ModelConfig",
    "ModelsExhaustedError",
    "PerFileProcessingLock",
    "ProcessingConflictError",
    "RelayError",
    "RelaySettings",
    "ResilientStreamController",
    "ResolutionError",
    "ServiceState",
    "StreamRequestExecutor",
    "TerminalRelayError",
    "TranscriptionClient",
    "UpstreamError",
]


def __getattr__(name):
    """Lazy-load the meeting pipeline classes to speed up module import."""
    if name == "ChunkedTranscriptionPipeline":
        from .pipeline import ChunkedTranscriptionPipeline

        return ChunkedTranscriptionPipeline
    if name == "AudioSegmenter":
        from .segmenter import AudioSegmenter

        return AudioSegmenter
    if name == "TranscriptionClient":
        from .transcription import TranscriptionClient

        return TranscriptionClient
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
