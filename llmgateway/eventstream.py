"""Encoding and decoding of the binary event stream framing used by Bedrock."""

from __future__ import annotations

import struct
import uuid
import zlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Union

HeaderValue = Union[bool, int, bytes, str, datetime, uuid.UUID]

_PRELUDE = struct.Struct(">II")
_PRELUDE_LEN = 12
_CRC_LEN = 4
_MIN_MESSAGE_LEN = _PRELUDE_LEN + _CRC_LEN

_TRUE, _FALSE, _BYTE, _SHORT, _INT, _LONG, _BYTES, _STRING, _TIMESTAMP, _UUID = range(10)


class EventStreamError(Exception):
    """Raised when an event stream message is incomplete or malformed."""


@dataclass
class EventStreamMessage:
    """One framed message: typed headers and an opaque payload."""

    headers: dict[str, Any] = field(default_factory=dict)
    payload: bytes = b""


def _crc(data: bytes) -> int:
    return zlib.crc32(data) & 0xFFFFFFFF


def _encode_header(name: str, value: HeaderValue) -> bytes:
    raw_name = name.encode("utf-8")
    if not 0 < len(raw_name) <= 255:
        raise EventStreamError(f"invalid header name length: {name!r}")
    out = bytes([len(raw_name)]) + raw_name
    if isinstance(value, bool):
        return out + bytes([_TRUE if value else _FALSE])
    if isinstance(value, int):
        if -(2**31) <= value < 2**31:
            return out + bytes([_INT]) + struct.pack(">i", value)
        return out + bytes([_LONG]) + struct.pack(">q", value)
    if isinstance(value, (bytes, bytearray)):
        if len(value) > 0xFFFF:
            raise EventStreamError(f"header value too long: {name}")
        return out + bytes([_BYTES]) + struct.pack(">H", len(value)) + bytes(value)
    if isinstance(value, str):
        raw = value.encode("utf-8")
        if len(raw) > 0xFFFF:
            raise EventStreamError(f"header value too long: {name}")
        return out + bytes([_STRING]) + struct.pack(">H", len(raw)) + raw
    if isinstance(value, datetime):
        millis = int(value.timestamp() * 1000)
        return out + bytes([_TIMESTAMP]) + struct.pack(">q", millis)
    if isinstance(value, uuid.UUID):
        return out + bytes([_UUID]) + value.bytes
    raise EventStreamError(f"unsupported header value type: {type(value).__name__}")


def encode_message(headers: dict[str, HeaderValue], payload: bytes) -> bytes:
    """Frame ``headers`` and ``payload`` as one event stream message."""
    raw_headers = b"".join(_encode_header(k, v) for k, v in headers.items())
    total = _MIN_MESSAGE_LEN + len(raw_headers) + len(payload)
    prelude = _PRELUDE.pack(total, len(raw_headers))
    prelude += struct.pack(">I", _crc(prelude))
    body = prelude + raw_headers + bytes(payload)
    return body + struct.pack(">I", _crc(body))


def _take(data: bytes, pos: int, size: int) -> tuple[bytes, int]:
    end = pos + size
    if end > len(data):
        raise EventStreamError("truncated header")
    return data[pos:end], end


def _decode_headers(data: bytes) -> dict[str, Any]:
    headers: dict[str, Any] = {}
    pos = 0
    while pos < len(data):
        (name_len,), pos = data[pos:pos + 1], pos + 1
        raw_name, pos = _take(data, pos, name_len)
        kind_raw, pos = _take(data, pos, 1)
        kind = kind_raw[0]
        value: Any
        if kind == _TRUE:
            value = True
        elif kind == _FALSE:
            value = False
        elif kind == _BYTE:
            raw, pos = _take(data, pos, 1)
            value = struct.unpack(">b", raw)[0]
        elif kind == _SHORT:
            raw, pos = _take(data, pos, 2)
            value = struct.unpack(">h", raw)[0]
        elif kind == _INT:
            raw, pos = _take(data, pos, 4)
            value = struct.unpack(">i", raw)[0]
        elif kind == _LONG:
            raw, pos = _take(data, pos, 8)
            value = struct.unpack(">q", raw)[0]
        elif kind in (_BYTES, _STRING):
            raw, pos = _take(data, pos, 2)
            value, pos = _take(data, pos, struct.unpack(">H", raw)[0])
            if kind == _STRING:
                try:
                    value = value.decode("utf-8")
                except UnicodeDecodeError as exc:
                    raise EventStreamError("invalid string header value") from exc
        elif kind == _TIMESTAMP:
            raw, pos = _take(data, pos, 8)
            millis = struct.unpack(">q", raw)[0]
            value = datetime.fromtimestamp(millis / 1000, tz=timezone.utc)
        elif kind == _UUID:
            raw, pos = _take(data, pos, 16)
            value = uuid.UUID(bytes=raw)
        else:
            raise EventStreamError(f"unknown header value type: {kind}")
        try:
            headers[raw_name.decode("utf-8")] = value
        except UnicodeDecodeError as exc:
            raise EventStreamError("invalid header name") from exc
    return headers


def decode_message(data: bytes) -> tuple[EventStreamMessage, int]:
    """Decode the message at the start of ``data``; return it and its length."""
    data = bytes(data)
    if len(data) < _PRELUDE_LEN:
        raise EventStreamError("incomplete prelude")
    total, headers_len = _PRELUDE.unpack_from(data)
    (prelude_crc,) = struct.unpack_from(">I", data, 8)
    if _crc(data[:8]) != prelude_crc:
        raise EventStreamError("prelude checksum mismatch")
    if total < _MIN_MESSAGE_LEN or headers_len > total - _MIN_MESSAGE_LEN:
        raise EventStreamError("invalid message length")
    if len(data) < total:
        raise EventStreamError("incomplete message")
    (message_crc,) = struct.unpack_from(">I", data, total - _CRC_LEN)
    if _crc(data[:total - _CRC_LEN]) != message_crc:
        raise EventStreamError("message checksum mismatch")
    headers_end = _PRELUDE_LEN + headers_len
    headers = _decode_headers(data[_PRELUDE_LEN:headers_end])
    payload = data[headers_end:total - _CRC_LEN]
    return EventStreamMessage(headers=headers, payload=payload), total


def decode_messages(data: bytes) -> tuple[list[EventStreamMessage], int]:
    """Decode messages until one fails; return them and the bytes consumed."""
    messages: list[EventStreamMessage] = []
    consumed = 0
    view = bytes(data)
    while True:
        try:
            message, size = decode_message(view[consumed:])
        except EventStreamError:
            return messages, consumed
        messages.append(message)
        consumed += size