from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class FragmentType(Enum):
    """Kinds of streamed output."""

    # Produced by the resilient controller
    CONTENT = "content"
    SYSTEM = "system"
    ERROR = "error"
    # Produced by the transcription pipeline
    STATUS = "status"
    TRANSCRIPTION = "transcription"
    ANALYSIS = "analysis"


@dataclass(frozen=True)
class Fragment:
    """
    One unit of streamed output.

    Error fragments that end a request carry the terminal exception in
    `error`; it does not take part in equality so tests can compare on
    type and content alone.
    """

    type: FragmentType
    content: str
    error: Optional[Exception] = field(default=None, compare=False, repr=False)

    @classmethod
    def content_of(cls, text: str) -> "Fragment":
        return cls(FragmentType.CONTENT, text)

    @classmethod
    def system(cls, text: str) -> "Fragment":
        return cls(FragmentType.SYSTEM, text)

    @classmethod
    def failure(cls, text: str, error: Optional[Exception] = None) -> "Fragment":
        return cls(FragmentType.ERROR, text, error)

    @classmethod
    def status(cls, text: str) -> "Fragment":
        return cls(FragmentType.STATUS, text)

    @classmethod
    def transcription(cls, text: str) -> "Fragment":
        return cls(FragmentType.TRANSCRIPTION, text)

    @classmethod
    def analysis(cls, text: str) -> "Fragment":
        return cls(FragmentType.ANALYSIS, text)

    @property
    def is_error(self) -> bool:
        return self.type is FragmentType.ERROR


@dataclass(frozen=True)
class ChatMessage:
    """A previous conversation turn. Role is "user" or "model"."""

    role: str
    content: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatMessage":
        return cls(role=data.get("role", "user"), content=data.get("content", ""))


@dataclass(frozen=True)
class ImageData:
    """An inline image for the current turn. `data` is base64 without a data: prefix."""

    mime_type: str
    data: str


@dataclass(frozen=True)
class DocumentData:
    """A document previously uploaded through the file API."""

    mime_type: str
    file_uri: str
