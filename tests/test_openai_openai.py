import json

import pytest

from llmgateway.mutation import BodySendMode, HeaderSendMode, LLMTokenUsage
from llmgateway.openai_openai import OpenAIToOpenAITranslator
from llmgateway.translator import TranslationError


@pytest.mark.parametrize("stream", [True, False])
def test_request_body(stream):
    o = OpenAIToOpenAITranslator()
    hm, bm, mode = o.request_body({"model": "foo-bar-ai", "stream": stream})
    assert bm is None
    assert hm is None
    assert o.stream == stream
    if stream:
        assert mode.response_header_mode == HeaderSendMode.SEND
        assert mode.response_body_mode == BodySendMode.STREAMED
    else:
        assert mode is None


def test_response_error_unhealthy_upstream():
    o = OpenAIToOpenAITranslator()
    hm, bm = o.response_error(
        {":status": "503", "content-type": "text/plain"}, b"service not available"
    )
    assert len(hm.set_headers) == 1
    assert hm.set_headers[0].key == "content-length"
    assert hm.set_headers[0].raw_value == str(len(bm.body)).encode()
    assert json.loads(bm.body) == {
        "type": "error",
        "error": {
            "type": "OpenAIBackendError",
            "code": "503",
            "message": "service not available",
        },
    }


def test_response_error_json_passthrough():
    body = b'{"error": {"message": "missing required field", "type": "BadRequestError", "code": "400"}}'
    o = OpenAIToOpenAITranslator()
    hm, bm = o.response_error({":status": "400", "content-type": "application/json"}, body)
    assert hm is None and bm is None
    assert json.loads(body)["error"] == {
        "message": "missing required field",
        "type": "BadRequestError",
        "code": "400",
    }


def test_response_body_bad_status_goes_to_error():
    o = OpenAIToOpenAITranslator()
    hm, bm, usage = o.response_body(
        {":status": "503", "content-type": "text/plain"}, b"down", False
    )
    assert usage == LLMTokenUsage()
    assert json.loads(bm.body)["error"]["message"] == "down"


_CHUNK = (
    'data: {"id":"chatcmpl-foo","object":"chat.completion.chunk","choices":'
    '[{"index":0,"delta":{"content":"%s"},"finish_reason":null}],"usage":null}\n\n'
)


def test_streaming_byte_by_byte():
    whole = "\n" + "".join(_CHUNK % w for w in ["This", " is", " a", " test"])
    whole += (
        'data: {"id":"chatcmpl-foo","object":"chat.completion.chunk","choices":[],'
        '"usage":{"prompt_tokens":13,"completion_tokens":12,"total_tokens":25}}\n\n'
        "data: [DONE]\n\n"
    )
    data = whole.encode()
    o = OpenAIToOpenAITranslator(stream=True)
    seen = []
    for i in range(len(data)):
        hm, bm, usage = o.response_body({}, data[i : i + 1], False)
        assert hm is None and bm is None
        if usage.output_tokens > 0:
            seen.append(usage)
    assert seen == [LLMTokenUsage(13, 12, 25)]


def test_non_streaming_invalid_body():
    with pytest.raises(TranslationError):
        OpenAIToOpenAITranslator().response_body({}, b"invalid", False)


def test_non_streaming_valid_body():
    body = json.dumps({"usage": {"total_tokens": 42}}).encode()
    _, _, usage = OpenAIToOpenAITranslator().response_body({}, body, False)
    assert usage == LLMTokenUsage(total_tokens=42)


def test_extract_valid_usage():
    o = OpenAIToOpenAITranslator()
    o.buffered = b'data: {"usage": {"total_tokens": 42}}\n'
    assert o.extract_usage_from_buffer_event() == LLMTokenUsage(total_tokens=42)
    assert o.buffering_done
    assert o.buffered == b""


def test_extract_valid_after_invalid():
    o = OpenAIToOpenAITranslator()
    o.buffered = b'data: invalid\ndata: {"usage": {"total_tokens": 42}}\n'
    assert o.extract_usage_from_buffer_event() == LLMTokenUsage(total_tokens=42)
    assert o.buffering_done


def test_extract_no_usage_then_valid():
    o = OpenAIToOpenAITranslator()
    o.buffered = b"data: {}\n\ndata: "
    assert o.extract_usage_from_buffer_event() == LLMTokenUsage()
    assert not o.buffering_done
    assert o.buffered == b"data: "
    o.buffered += b'{"usage": {"total_tokens": 42}}\n'
    assert o.extract_usage_from_buffer_event() == LLMTokenUsage(total_tokens=42)
    assert o.buffering_done
    assert o.buffered == b""


def test_extract_invalid_json():
    o = OpenAIToOpenAITranslator()
    o.buffered = b"data: invalid\n"
    assert o.extract_usage_from_buffer_event() == LLMTokenUsage()
    assert not o.buffering_done