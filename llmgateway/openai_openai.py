"""Pass-through translation for OpenAI-compatible backends."""

from __future__ import annotations

import json
from typing import Any

from llmgateway.mutation import (
    BodyMutation,
    BodySendMode,
    HeaderMutation,
    HeaderSendMode,
    LLMTokenUsage,
    ProcessingMode,
    is_good_status_code,
    set_content_length,
)
from llmgateway.translator import (
    CONTENT_TYPE_HEADER_NAME,
    JSON_CONTENT_TYPE,
    OPENAI_BACKEND_ERROR,
    STATUS_HEADER_NAME,
    ChatCompletionTranslator,
    TranslationError,
)

_DATA_PREFIX = b"data: "
_U32 = 0xFFFFFFFF


def _usage_from(usage: dict[str, Any]) -> LLMTokenUsage:
    return LLMTokenUsage(
        input_tokens=int(usage.get("prompt_tokens") or 0) & _U32,
        output_tokens=int(usage.get("completion_tokens") or 0) & _U32,
        total_tokens=int(usage.get("total_tokens") or 0) & _U32,
    )


class OpenAIToOpenAITranslator(ChatCompletionTranslator):
    """Leaves bodies untouched and extracts token usage."""

    def __init__(self, stream: bool = False) -> None:
        self.stream = stream
        self.buffered = b""
        self.buffering_done = False

    def request_body(self, request):
        override = None
        if request.get("stream"):
            self.stream = True
            override = ProcessingMode(
                response_header_mode=HeaderSendMode.SEND,
                response_body_mode=BodySendMode.STREAMED,
            )
        return None, None, override

    def response_error(self, headers, body):
        content_type = headers.get(CONTENT_TYPE_HEADER_NAME)
        if content_type is None or content_type == JSON_CONTENT_TYPE:
            return None, None
        error = {
            "type": "error",
            "error": {
                "type": OPENAI_BACKEND_ERROR,
                "message": body.decode("utf-8", errors="replace"),
                "code": headers.get(STATUS_HEADER_NAME, ""),
            },
        }
        new_body = json.dumps(error, separators=(",", ":")).encode()
        header_mutation = HeaderMutation()
        set_content_length(header_mutation, new_body)
        return header_mutation, BodyMutation(new_body)

    def response_headers(self, headers):
        return None

    def response_body(self, headers, body, end_of_stream):
        headers = headers or {}
        status = headers.get(STATUS_HEADER_NAME)
        if status is not None:
            try:
                code = int(status)
            except ValueError:
                code = None
            if code is not None and not is_good_status_code(code):
                hm, bm = self.response_error(headers, body)
                return hm, bm, LLMTokenUsage()
        if self.stream:
            usage = LLMTokenUsage()
            if not self.buffering_done:
                self.buffered += body
                usage = self.extract_usage_from_buffer_event()
            return None, None, usage
        try:
            resp = json.loads(body)
        except (ValueError, UnicodeDecodeError) as exc:
            raise TranslationError(f"failed to unmarshal body: {exc}") from exc
        if not isinstance(resp, dict):
            raise TranslationError("failed to unmarshal body: not a JSON object")
        return None, None, _usage_from(resp.get("usage") or {})

    def extract_usage_from_buffer_event(self) -> LLMTokenUsage:
        """Consume complete lines from the buffer until a usage event is found."""
        while True:
            line, sep, rest = self.buffered.partition(b"\n")
            if not sep:
                return LLMTokenUsage()
            self.buffered = rest
            if not line.startswith(_DATA_PREFIX):
                continue
            try:
                event = json.loads(line[len(_DATA_PREFIX):])
            except (ValueError, UnicodeDecodeError):
                continue
            if not isinstance(event, dict):
                continue
            usage = event.get("usage")
            if isinstance(usage, dict):
                self.buffering_done = True
                self.buffered = b""
                return _usage_from(usage)