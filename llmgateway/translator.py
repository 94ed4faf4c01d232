"""The interface for translating chat completion traffic between API schemas."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from llmgateway.mutation import BodyMutation, HeaderMutation, LLMTokenUsage, ProcessingMode

STATUS_HEADER_NAME = ":status"
CONTENT_TYPE_HEADER_NAME = "content-type"
AWS_ERROR_TYPE_HEADER_NAME = "x-amzn-errortype"
JSON_CONTENT_TYPE = "application/json"
OPENAI_BACKEND_ERROR = "OpenAIBackendError"
AWS_BEDROCK_BACKEND_ERROR = "AWSBedrockBackendError"


class TranslationError(Exception):
    """Raised when a request or response cannot be translated."""


class ChatCompletionTranslator(ABC):
    """Translates /v1/chat/completions traffic for one request; not thread-safe."""

    @abstractmethod
    def request_body(
        self, request: dict[str, Any]
    ) -> tuple[HeaderMutation | None, BodyMutation | None, ProcessingMode | None]:
        """Translate the parsed request body."""

    @abstractmethod
    def response_headers(self, headers: dict[str, str]) -> HeaderMutation | None:
        """Translate the response headers."""

    @abstractmethod
    def response_body(
        self, headers: dict[str, str], body: bytes, end_of_stream: bool
    ) -> tuple[HeaderMutation | None, BodyMutation | None, LLMTokenUsage]:
        """Translate a response body chunk or the whole body."""

    @abstractmethod
    def response_error(
        self, headers: dict[str, str], body: bytes
    ) -> tuple[HeaderMutation | None, BodyMutation | None]:
        """Translate an error response body."""