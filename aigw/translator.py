"""Translation of requests and responses between API schemas."""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any, Optional

from .messages import BodyMutation, BodySendMode, HeaderMutation, HeaderSendMode, ProcessingMode

CHAT_COMPLETIONS_PATH = "/v1/chat/completions"
_DATA_PREFIX = b"data: "


class TranslationError(Exception):
    """A request or response cannot be translated."""


def _uint32(value: int) -> int:
    return value & 0xFFFFFFFF


def _streaming_mode() -> ProcessingMode:
    return ProcessingMode(
        response_header_mode=HeaderSendMode.SEND,
        response_body_mode=BodySendMode.STREAMED,
    )


class Translator:
    """Translates one request and its response; the base class changes nothing.

    An instance serves a single request and is not thread-safe.
    """

    def request_body(
        self, body: Any
    ) -> tuple[Optional[HeaderMutation], Optional[BodyMutation], Optional[ProcessingMode]]:
        """Translate the parsed request body; None means no mutation or no mode change."""
        return None, None, None

    def response_headers(self, headers: Mapping[str, str]) -> Optional[HeaderMutation]:
        """Translate the response headers; None means no mutation."""
        return None

    def response_body(
        self, body: bytes, end_of_stream: bool
    ) -> tuple[Optional[HeaderMutation], Optional[BodyMutation], int]:
        """Translate the response body or a chunk of it, returning the used token count."""
        return None, None, 0


class OpenAIToOpenAIChatCompletion(Translator):
    """Passes chat completions through unchanged, counting the used tokens."""

    def __init__(self) -> None:
        self.stream = False
        self.buffered = b""
        self.buffering_done = False

    def request_body(
        self, body: Any
    ) -> tuple[Optional[HeaderMutation], Optional[BodyMutation], Optional[ProcessingMode]]:
        if not isinstance(body, Mapping):
            raise TranslationError(f"unexpected body type: {type(body).__name__}")
        override = None
        if body.get("stream"):
            self.stream = True
            override = _streaming_mode()
        return None, None, override

    def response_body(
        self, body: bytes, end_of_stream: bool
    ) -> tuple[Optional[HeaderMutation], Optional[BodyMutation], int]:
        if self.stream:
            used = 0
            if not self.buffering_done:
                self.buffered += body
                used = self.extract_usage_from_buffer()
            return None, None, used
        try:
            text = bytes(body).decode("utf-8").lstrip()
            response, _ = json.JSONDecoder().raw_decode(text)
        except ValueError as exc:
            raise TranslationError(f"failed to unmarshal body: {exc}") from exc
        usage = response.get("usage") if isinstance(response, dict) else None
        total = usage.get("total_tokens", 0) if isinstance(usage, dict) else 0
        if not isinstance(total, int) or isinstance(total, bool):
            raise TranslationError("failed to unmarshal body: total_tokens must be an integer")
        return None, None, _uint32(total)

    def extract_usage_from_buffer(self) -> int:
        """Consume complete lines of the buffer until an event carries usage.

        Once found, buffering stops and the total token count is returned; else 0.
        """
        while True:
            line, sep, rest = self.buffered.partition(b"\n")
            if not sep:
                return 0
            self.buffered = rest
            if not line.startswith(_DATA_PREFIX):
                continue
            try:
                event = json.loads(line[len(_DATA_PREFIX):])
            except ValueError:
                continue
            if not isinstance(event, dict):
                continue
            usage = event.get("usage")
            if not isinstance(usage, dict):
                continue
            total = usage.get("total_tokens", 0)
            if total is None:
                total = 0
            if not isinstance(total, int) or isinstance(total, bool):
                continue
            self.buffering_done = True
            self.buffered = b""
            return _uint32(total)


def new_openai_to_openai_translator(path: str) -> Translator:
    """Create the OpenAI-to-OpenAI translator for a request path."""
    if path == CHAT_COMPLETIONS_PATH:
        return OpenAIToOpenAIChatCompletion()
    raise TranslationError(f"unsupported path: {path}")


def set_content_length(mutation: HeaderMutation, body: bytes) -> None:
    """Set the content-length header to the length of ``body``."""
    mutation.set_header("content-length", str(len(body)))