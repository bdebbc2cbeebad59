"""Messages exchanged with the proxy's external processing filter."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any


@dataclass
class HeaderValue:
    """A single header; a non-empty ``value`` takes precedence over ``raw_value``."""

    key: str
    value: str = ""
    raw_value: bytes = b""

    def text(self) -> str:
        """Return the header's value as text.

        Raises UnicodeDecodeError when only the raw value is set and it is not UTF-8.
        """
        if self.value:
            return self.value
        return self.raw_value.decode("utf-8")


@dataclass
class HeaderMutation:
    """Headers to set on, or remove from, the message being processed."""

    set_headers: list[HeaderValue] = field(default_factory=list)
    remove_headers: list[str] = field(default_factory=list)

    def set_header(self, key: str, value: str | bytes) -> HeaderValue:
        """Append a header carried as a raw value and return it."""
        raw = value.encode("utf-8") if isinstance(value, str) else bytes(value)
        header = HeaderValue(key=key, raw_value=raw)
        self.set_headers.append(header)
        return header


@dataclass
class BodyMutation:
    """A replacement for the body of the message being processed."""

    body: bytes = b""


@dataclass
class HttpBody:
    """A body, or a chunk of one, received from the proxy."""

    body: bytes = b""
    end_of_stream: bool = False


class HeaderSendMode(enum.IntEnum):
    """How the proxy sends headers to the processor."""

    DEFAULT = 0
    SEND = 1
    SKIP = 2


class BodySendMode(enum.IntEnum):
    """How the proxy sends bodies to the processor."""

    NONE = 0
    STREAMED = 1
    BUFFERED = 2
    BUFFERED_PARTIAL = 3


@dataclass
class ProcessingMode:
    """A change to the way the proxy sends the rest of the exchange."""

    request_header_mode: HeaderSendMode = HeaderSendMode.DEFAULT
    response_header_mode: HeaderSendMode = HeaderSendMode.DEFAULT
    request_body_mode: BodySendMode = BodySendMode.NONE
    response_body_mode: BodySendMode = BodySendMode.NONE


@dataclass
class CommonResponse:
    """The mutations a processor applies to one message."""

    header_mutation: HeaderMutation | None = None
    body_mutation: BodyMutation | None = None
    clear_route_cache: bool = False


class MessageKind(enum.Enum):
    """The phase of the HTTP exchange a message belongs to."""

    REQUEST_HEADERS = "request_headers"
    REQUEST_BODY = "request_body"
    RESPONSE_HEADERS = "response_headers"
    RESPONSE_BODY = "response_body"


@dataclass
class ProcessingRequest:
    """A message sent by the proxy; ``kind`` is None when it carries nothing known."""

    kind: MessageKind | None = None
    headers: list[HeaderValue] = field(default_factory=list)
    body: HttpBody | None = None


@dataclass
class ProcessingResponse:
    """The processor's answer to one :class:`ProcessingRequest`."""

    kind: MessageKind
    response: CommonResponse | None = None
    mode_override: ProcessingMode | None = None
    dynamic_metadata: dict[str, Any] | None = None