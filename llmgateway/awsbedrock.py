"""Translation between OpenAI chat completions and the Bedrock Converse API."""

from __future__ import annotations

import json
from typing import Any

from llmgateway.bedrock_request import convert_request
from llmgateway.eventstream import decode_messages
from llmgateway.mutation import (
    BodyMutation,
    BodySendMode,
    HeaderMutation,
    HeaderSendMode,
    HeaderValue,
    LLMTokenUsage,
    ProcessingMode,
    is_good_status_code,
    set_content_length,
)
from llmgateway.translator import (
    AWS_BEDROCK_BACKEND_ERROR,
    AWS_ERROR_TYPE_HEADER_NAME,
    CONTENT_TYPE_HEADER_NAME,
    JSON_CONTENT_TYPE,
    STATUS_HEADER_NAME,
    ChatCompletionTranslator,
    TranslationError,
)

_U32 = 0xFFFFFFFF
_EVENT_STREAM_CONTENT_TYPE = "application/vnd.amazon.eventstream"
_CHUNK_OBJECT = "chat.completion.chunk"

_FINISH_REASONS = {
    "stop_sequence": "stop",
    "end_turn": "stop",
    "max_tokens": "length",
    "content_filtered": "content_filter",
    "tool_use": "tool_calls",
}


def stop_reason_to_finish_reason(stop_reason: str | None) -> str:
    """Map a Bedrock stop reason to an OpenAI finish reason."""
    if stop_reason is None:
        return "stop"
    return _FINISH_REASONS.get(stop_reason, "stop")


def _dumps(value: Any) -> bytes:
    return json.dumps(value, separators=(",", ":")).encode()


def _token_usage(usage: dict[str, Any]) -> LLMTokenUsage:
    return LLMTokenUsage(
        input_tokens=int(usage.get("inputTokens") or 0) & _U32,
        output_tokens=int(usage.get("outputTokens") or 0) & _U32,
        total_tokens=int(usage.get("totalTokens") or 0) & _U32,
    )


def _openai_usage(usage: dict[str, Any]) -> dict[str, int]:
    return {
        "prompt_tokens": int(usage.get("inputTokens") or 0),
        "completion_tokens": int(usage.get("outputTokens") or 0),
        "total_tokens": int(usage.get("totalTokens") or 0),
    }


def _tool_call(tool_use: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": tool_use.get("toolUseId", ""),
        "type": "function",
        "function": {
            "name": tool_use.get("name", ""),
            "arguments": json.dumps(tool_use.get("input"), separators=(",", ":"), sort_keys=True),
        },
    }


class OpenAIToAWSBedrockTranslator(ChatCompletionTranslator):
    """Translates one chat completion exchange to and from Bedrock Converse."""

    def __init__(self) -> None:
        self.stream = False
        self.buffered = b""
        self.events: list[dict[str, Any]] = []
        # Role from the message start event, reused for every streamed chunk.
        self.role = ""

    def request_body(self, request):
        override = None
        if request.get("stream"):
            self.stream = True
            override = ProcessingMode(
                response_header_mode=HeaderSendMode.SEND,
                response_body_mode=BodySendMode.STREAMED,
            )
            path = f"/model/{request.get('model', '')}/converse-stream"
        else:
            path = f"/model/{request.get('model', '')}/converse"
        header_mutation = HeaderMutation(
            set_headers=[HeaderValue(key=":path", raw_value=path.encode())]
        )
        body = _dumps(convert_request(request))
        set_content_length(header_mutation, body)
        return header_mutation, BodyMutation(body), override

    def response_headers(self, headers):
        if self.stream and headers.get(CONTENT_TYPE_HEADER_NAME) == _EVENT_STREAM_CONTENT_TYPE:
            return HeaderMutation(
                set_headers=[HeaderValue(key="content-type", value="text/event-stream")]
            )
        return None

    def response_error(self, headers, body):
        status = headers.get(STATUS_HEADER_NAME, "")
        if headers.get(CONTENT_TYPE_HEADER_NAME) == JSON_CONTENT_TYPE:
            try:
                exception = json.loads(body)
            except (ValueError, UnicodeDecodeError) as exc:
                raise TranslationError(f"failed to unmarshal error body: {exc}") from exc
            if not isinstance(exception, dict):
                raise TranslationError("failed to unmarshal error body: not a JSON object")
            error_type = headers.get(AWS_ERROR_TYPE_HEADER_NAME, "")
            message = str(exception.get("message") or "")
        else:
            error_type = AWS_BEDROCK_BACKEND_ERROR
            message = body.decode("utf-8", errors="replace")
        new_body = _dumps(
            {"type": "error", "error": {"type": error_type, "message": message, "code": status}}
        )
        header_mutation = HeaderMutation()
        set_content_length(header_mutation, new_body)
        return header_mutation, BodyMutation(new_body)

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
            return self._stream_body(body, end_of_stream)
        return self._whole_body(body)

    def _stream_body(self, body: bytes, end_of_stream: bool):
        self.buffered += body
        self._extract_events()
        usage = LLMTokenUsage()
        out = bytearray()
        for event in self.events:
            if isinstance(event.get("usage"), dict):
                usage = _token_usage(event["usage"])
            chunk, ok = self.convert_event(event)
            if not ok:
                continue
            out += b"data: " + _dumps(chunk) + b"\n\n"
        if end_of_stream:
            out += b"data: [DONE]\n"
        return None, BodyMutation(bytes(out)), usage

    def _extract_events(self) -> None:
        messages, consumed = decode_messages(self.buffered)
        self.buffered = self.buffered[consumed:]
        self.events = []
        for message in messages:
            try:
                event = json.loads(message.payload)
            except (ValueError, UnicodeDecodeError):
                continue
            if isinstance(event, dict):
                self.events.append(event)

    def _whole_body(self, body: bytes):
        try:
            resp = json.loads(body)
        except (ValueError, UnicodeDecodeError) as exc:
            raise TranslationError(f"failed to unmarshal body: {exc}") from exc
        if not isinstance(resp, dict):
            raise TranslationError("failed to unmarshal body: not a JSON object")
        usage = LLMTokenUsage()
        bedrock_usage = resp.get("usage")
        openai_usage = _openai_usage({})
        if isinstance(bedrock_usage, dict):
            usage = _token_usage(bedrock_usage)
            openai_usage = _openai_usage(bedrock_usage)

        message = ((resp.get("output") or {}).get("message")) or {}
        choice_message: dict[str, Any] = {"role": message.get("role", "")}
        for block in message.get("content") or []:
            if isinstance(block.get("toolUse"), dict):
                choice_message["tool_calls"] = [_tool_call(block["toolUse"])]
            elif block.get("text") is not None and "content" not in choice_message:
                # Only the first text block is kept.
                choice_message["content"] = block["text"]
        choice = {
            "index": 0,
            "message": choice_message,
            "finish_reason": stop_reason_to_finish_reason(resp.get("stopReason")),
        }
        new_body = _dumps(
            {"object": "chat.completion", "choices": [choice], "usage": openai_usage}
        )
        header_mutation = HeaderMutation()
        set_content_length(header_mutation, new_body)
        return header_mutation, BodyMutation(new_body), usage

    def convert_event(self, event: dict[str, Any]) -> tuple[dict[str, Any], bool]:
        """Turn one Bedrock stream event into an OpenAI chunk; False if it has none."""
        chunk: dict[str, Any] = {"object": _CHUNK_OBJECT, "choices": []}
        if event.get("usage") is not None:
            chunk["usage"] = _openai_usage(event["usage"])
        elif event.get("role") is not None:
            self.role = event["role"]
            chunk["choices"].append(
                {"index": 0, "delta": {"role": self.role, "content": ""}}
            )
        elif event.get("delta") is not None:
            delta = event["delta"]
            if delta.get("text") is not None:
                chunk["choices"].append(
                    {"index": 0, "delta": {"role": self.role, "content": delta["text"]}}
                )
            elif delta.get("toolUse") is not None:
                call = {
                    "type": "function",
                    "function": {"arguments": delta["toolUse"].get("input", "")},
                }
                chunk["choices"].append(
                    {"index": 0, "delta": {"role": self.role, "tool_calls": [call]}}
                )
        elif event.get("start") is not None:
            tool_use = event["start"].get("toolUse")
            if tool_use is not None:
                call = {
                    "id": tool_use.get("toolUseId", ""),
                    "type": "function",
                    "function": {"name": tool_use.get("name", ""), "arguments": ""},
                }
                chunk["choices"].append(
                    {"index": 0, "delta": {"role": self.role, "tool_calls": [call]}}
                )
        elif event.get("stopReason") is not None:
            chunk["choices"].append(
                {
                    "index": 0,
                    "delta": {"role": self.role, "content": ""},
                    "finish_reason": stop_reason_to_finish_reason(event["stopReason"]),
                }
            )
        else:
            return chunk, False
        return chunk, True