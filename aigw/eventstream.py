"""Encoding and decoding of the binary event stream used by streaming Bedrock responses."""

from __future__ import annotations

import enum
import struct
import uuid
import zlib
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Union

HeaderScalar = Union[bool, int, bytes, str, datetime, uuid.UUID]

_PRELUDE_LENGTH = 12
_CRC_LENGTH = 4
_MIN_MESSAGE_LENGTH = _PRELUDE_LENGTH + _CRC_LENGTH
_MAX_PAYLOAD_LENGTH = 16 * 1024 * 1024
_MAX_HEADERS_LENGTH = 128 * 1024
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MILLISECOND = timedelta(milliseconds=1)


class _HeaderType(enum.IntEnum):
    BOOL_TRUE = 0
    BOOL_FALSE = 1
    BYTE = 2
    SHORT = 3
    INT = 4
    LONG = 5
    BYTES = 6
    STRING = 7
    TIMESTAMP = 8
    UUID = 9


class EventStreamError(ValueError):
    """The data is not a valid event stream message."""


class IncompleteMessageError(EventStreamError):
    """The data ends before the message does."""


@dataclass
class EventStreamMessage:
    """One message of an event stream."""

    headers: dict[str, HeaderScalar] = field(default_factory=dict)
    payload: bytes = b""


def _encode_header(name: str, value: HeaderScalar) -> bytes:
    raw_name = name.encode("utf-8")
    if not 0 < len(raw_name) <= 0xFF:
        raise EventStreamError(f"invalid header name length: {name!r}")
    prefix = bytes([len(raw_name)]) + raw_name
    if isinstance(value, bool):
        kind = _HeaderType.BOOL_TRUE if value else _HeaderType.BOOL_FALSE
        return prefix + bytes([kind])
    if isinstance(value, int):
        if -(2**31) <= value < 2**31:
            return prefix + struct.pack(">Bi", _HeaderType.INT, value)
        if -(2**63) <= value < 2**63:
            return prefix + struct.pack(">Bq", _HeaderType.LONG, value)
        raise EventStreamError(f"header {name!r}: integer out of range")
    if isinstance(value, (bytes, bytearray)):
        if len(value) > 0xFFFF:
            raise EventStreamError(f"header {name!r}: value too long")
        return prefix + struct.pack(">BH", _HeaderType.BYTES, len(value)) + bytes(value)
    if isinstance(value, str):
        raw = value.encode("utf-8")
        if len(raw) > 0xFFFF:
            raise EventStreamError(f"header {name!r}: value too long")
        return prefix + struct.pack(">BH", _HeaderType.STRING, len(raw)) + raw
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        millis = (value - _EPOCH) // _MILLISECOND
        return prefix + struct.pack(">Bq", _HeaderType.TIMESTAMP, millis)
    if isinstance(value, uuid.UUID):
        return prefix + bytes([_HeaderType.UUID]) + value.bytes
    raise TypeError(f"unsupported header value type: {type(value).__name__}")


def encode_message(message: EventStreamMessage) -> bytes:
    """Encode a message into its wire form."""
    headers = b"".join(_encode_header(n, v) for n, v in message.headers.items())
    payload = bytes(message.payload)
    if len(headers) > _MAX_HEADERS_LENGTH:
        raise EventStreamError("headers too long")
    if len(payload) > _MAX_PAYLOAD_LENGTH:
        raise EventStreamError("payload too long")
    total = _MIN_MESSAGE_LENGTH + len(headers) + len(payload)
    prelude = struct.pack(">II", total, len(headers))
    prelude += struct.pack(">I", zlib.crc32(prelude))
    body = prelude + headers + payload
    return body + struct.pack(">I", zlib.crc32(body))


def _take(view: memoryview, pos: int, size: int) -> memoryview:
    if pos + size > len(view):
        raise EventStreamError("truncated header")
    return view[pos : pos + size]


def _decode_headers(view: memoryview) -> dict[str, HeaderScalar]:
    headers: dict[str, HeaderScalar] = {}
    pos = 0
    while pos < len(view):
        name_length = view[pos]
        pos += 1
        try:
            name = bytes(_take(view, pos, name_length)).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise EventStreamError("header name is not UTF-8") from exc
        pos += name_length
        try:
            kind = _HeaderType(_take(view, pos, 1)[0])
        except ValueError as exc:
            if isinstance(exc, EventStreamError):
                raise
            raise EventStreamError(f"unknown header type for {name!r}") from exc
        pos += 1
        value: HeaderScalar
        if kind is _HeaderType.BOOL_TRUE:
            value = True
        elif kind is _HeaderType.BOOL_FALSE:
            value = False
        elif kind in (_HeaderType.BYTE, _HeaderType.SHORT, _HeaderType.INT, _HeaderType.LONG):
            fmt = {
                _HeaderType.BYTE: ">b",
                _HeaderType.SHORT: ">h",
                _HeaderType.INT: ">i",
                _HeaderType.LONG: ">q",
            }[kind]
            size = struct.calcsize(fmt)
            (value,) = struct.unpack(fmt, _take(view, pos, size))
            pos += size
        elif kind in (_HeaderType.BYTES, _HeaderType.STRING):
            (length,) = struct.unpack(">H", _take(view, pos, 2))
            pos += 2
            raw = bytes(_take(view, pos, length))
            pos += length
            if kind is _HeaderType.BYTES:
                value = raw
            else:
                try:
                    value = raw.decode("utf-8")
                except UnicodeDecodeError as exc:
                    raise EventStreamError(f"header {name!r} is not UTF-8") from exc
        elif kind is _HeaderType.TIMESTAMP:
            (millis,) = struct.unpack(">q", _take(view, pos, 8))
            pos += 8
            value = _EPOCH + timedelta(milliseconds=millis)
        else:
            value = uuid.UUID(bytes=bytes(_take(view, pos, 16)))
            pos += 16
        headers[name] = value
    return headers


def decode_message(data: bytes) -> tuple[EventStreamMessage, int]:
    """Decode the message at the start of ``data``.

    Returns the message and the number of bytes it took. Raises
    IncompleteMessageError when more data is needed, EventStreamError when the
    data is malformed.
    """
    view = memoryview(data)
    if len(view) < _PRELUDE_LENGTH:
        raise IncompleteMessageError("incomplete prelude")
    total, headers_length, prelude_crc = struct.unpack_from(">III", view)
    if zlib.crc32(view[:8]) != prelude_crc:
        raise EventStreamError("prelude checksum mismatch")
    if total < _MIN_MESSAGE_LENGTH:
        raise EventStreamError(f"message length too small: {total}")
    if headers_length > _MAX_HEADERS_LENGTH or headers_length > total - _MIN_MESSAGE_LENGTH:
        raise EventStreamError(f"invalid headers length: {headers_length}")
    if total - _MIN_MESSAGE_LENGTH - headers_length > _MAX_PAYLOAD_LENGTH:
        raise EventStreamError("payload too long")
    if len(view) < total:
        raise IncompleteMessageError("incomplete message")
    (message_crc,) = struct.unpack_from(">I", view, total - _CRC_LENGTH)
    if zlib.crc32(view[: total - _CRC_LENGTH]) != message_crc:
        raise EventStreamError("message checksum mismatch")
    headers_end = _PRELUDE_LENGTH + headers_length
    headers = _decode_headers(view[_PRELUDE_LENGTH:headers_end])
    payload = bytes(view[headers_end : total - _CRC_LENGTH])
    return EventStreamMessage(headers=headers, payload=payload), total