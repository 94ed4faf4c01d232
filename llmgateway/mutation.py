"""Header and body mutations exchanged with the proxy, plus token usage."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class HeaderSendMode(str, Enum):
    """How response headers are sent to the processor."""

    DEFAULT = "DEFAULT"
    SEND = "SEND"
    SKIP = "SKIP"


class BodySendMode(str, Enum):
    """How response bodies are sent to the processor."""

    NONE = "NONE"
    STREAMED = "STREAMED"
    BUFFERED = "BUFFERED"


@dataclass
class HeaderValue:
    """A single header; ``raw_value`` is used when ``value`` is empty."""

    key: str
    value: str = ""
    raw_value: bytes = b""

    @property
    def text(self) -> str | None:
        """The header value as text, or None if the raw bytes are not UTF-8."""
        if self.value:
            return self.value
        try:
            return self.raw_value.decode("utf-8")
        except UnicodeDecodeError:
            return None


@dataclass
class HeaderMutation:
    """Headers to set and headers to remove."""

    set_headers: list[HeaderValue] = field(default_factory=list)
    remove_headers: list[str] = field(default_factory=list)


@dataclass
class BodyMutation:
    """A replacement body."""

    body: bytes = b""


@dataclass
class ProcessingMode:
    """An override of the processing mode for the rest of a stream."""

    response_header_mode: HeaderSendMode = HeaderSendMode.DEFAULT
    response_body_mode: BodySendMode = BodySendMode.NONE


@dataclass(frozen=True)
class LLMTokenUsage:
    """Token usage reported by a backend."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0


def is_good_status_code(code: int) -> bool:
    """Return True for a 2xx status code."""
    return 200 <= code < 300


def set_content_length(headers: HeaderMutation, body: bytes | None) -> None:
    """Append a content-length header matching ``body`` to ``headers``."""
    headers.set_headers.append(
        HeaderValue(key="content-length", raw_value=str(len(body or b"")).encode())
    )