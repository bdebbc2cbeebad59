"""Translation of OpenAI chat completions to and from the AWS Bedrock Converse API."""

from __future__ import annotations

import base64
import json
from collections.abc import Mapping
from typing import Any, Optional

from .eventstream import EventStreamError, decode_message
from .messages import (
    BodyMutation,
    BodySendMode,
    HeaderMutation,
    HeaderSendMode,
    HeaderValue,
    ProcessingMode,
)
from .translator import CHAT_COMPLETIONS_PATH, TranslationError, Translator, set_content_length

EVENTSTREAM_CONTENT_TYPE = "application/vnd.amazon.eventstream"
SSE_CONTENT_TYPE = "text/event-stream"
CHUNK_OBJECT = "chat.completion.chunk"
COMPLETION_OBJECT = "chat.completion"

_FINISH_REASONS = {
    "stop_sequence": "stop",
    "end_turn": "stop",
    "max_tokens": "length",
    "content_filtered": "content_filter",
    "tool_use": "tool_calls",
}

_INFERENCE_FIELDS = (
    ("max_tokens", "maxTokens"),
    ("stop", "stopSequences"),
    ("temperature", "temperature"),
    ("top_p", "topP"),
)


def _dumps(value: Any) -> bytes:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _count(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        return 0
    return value


def _uint32(value: int) -> int:
    return value & 0xFFFFFFFF


def _image_block(part: Mapping[str, Any]) -> dict[str, Any]:
    image_url = part.get("image_url")
    url = image_url.get("url", "") if isinstance(image_url, Mapping) else ""
    pieces = str(url).split(",")
    if len(pieces) != 2:
        raise TranslationError("unexpected image data url")
    image_format = pieces[0].split(";")[0].removeprefix("data:image/")
    # The data is carried as bytes, which JSON represents in base64.
    data = base64.b64encode(pieces[1].encode("utf-8")).decode("ascii")
    return {"image": {"format": image_format, "source": {"bytes": data}}}


def _user_content(content: Any) -> list[dict[str, Any]]:
    if isinstance(content, str):
        return [{"text": content}]
    if not isinstance(content, list):
        raise TranslationError("unexpected content type for user message")
    blocks: list[dict[str, Any]] = []
    for part in content:
        if not isinstance(part, Mapping):
            raise TranslationError("unexpected content type for user message")
        kind = part.get("type")
        if kind == "text":
            blocks.append({"text": part.get("text", "")})
        elif kind == "image_url":
            blocks.append(_image_block(part))
    return blocks


def _assistant_block(message: Mapping[str, Any]) -> dict[str, Any]:
    content = message.get("content")
    if isinstance(content, str):
        return {"text": content}
    if isinstance(content, list):
        texts = []
        for part in content:
            if not isinstance(part, Mapping):
                raise TranslationError("unexpected content type for assistant message")
            if part.get("type") == "refusal":
                texts.append(str(part.get("refusal", "")))
            else:
                texts.append(str(part.get("text", "")))
        return {"text": "".join(texts)}
    refusal = message.get("refusal")
    if isinstance(refusal, str):
        return {"text": refusal}
    return {}


def _system_blocks(content: Any) -> list[dict[str, Any]]:
    if isinstance(content, str):
        return [{"text": content}]
    if isinstance(content, list) and all(isinstance(p, Mapping) for p in content):
        return [{"text": part.get("text", "")} for part in content]
    raise TranslationError("unexpected content type for system message")


def openai_messages_to_bedrock(openai_request: Mapping[str, Any]) -> dict[str, Any]:
    """Convert the request's messages into Bedrock ``messages`` and, if any, ``system``."""
    raw = openai_request.get("messages") or []
    if not isinstance(raw, list):
        raise TranslationError("unexpected type for messages")
    messages: list[dict[str, Any]] = []
    system: Optional[list[dict[str, Any]]] = None
    for message in raw:
        if not isinstance(message, Mapping):
            raise TranslationError(f"unexpected message type: {type(message).__name__}")
        role = message.get("role")
        content = message.get("content")
        if role == "user":
            messages.append({"role": "user", "content": _user_content(content)})
        elif role == "assistant":
            messages.append({"role": "assistant", "content": [_assistant_block(message)]})
        elif role == "system":
            if system is None:
                system = []
            system.extend(_system_blocks(content))
        elif role == "tool":
            if not isinstance(content, str):
                raise TranslationError("unexpected content type for tool message")
            # Bedrock has no tool role; tool results travel as user messages.
            messages.append(
                {
                    "role": "user",
                    "content": [{"toolResult": {"content": [{"text": content}]}}],
                }
            )
        else:
            raise TranslationError(f"unexpected role: {role}")
    result: dict[str, Any] = {"messages": messages}
    if system is not None:
        result["system"] = system
    return result


def openai_tools_to_bedrock(openai_request: Mapping[str, Any]) -> dict[str, Any]:
    """Convert the request's tools and tool choice into a Bedrock tool configuration."""
    tools = []
    for definition in openai_request.get("tools") or []:
        if not isinstance(definition, Mapping):
            raise TranslationError(f"unexpected tool type: {type(definition).__name__}")
        function = definition.get("function")
        function = function if isinstance(function, Mapping) else {}
        tools.append(
            {
                "toolSpec": {
                    "name": definition.get("type", ""),
                    "description": function.get("description", ""),
                    "inputSchema": {"json": function.get("parameters")},
                }
            }
        )
    config: dict[str, Any] = {"tools": tools}
    choice = openai_request.get("tool_choice")
    if choice is not None:
        if isinstance(choice, str):
            config["toolChoice"] = {"auto": {}} if choice == "auto" else {"any": {}}
        elif isinstance(choice, Mapping):
            config["toolChoice"] = {"tool": {"name": choice.get("type", "")}}
        else:
            raise TranslationError(f"unexpected type: {type(choice).__name__}")
    return config


def _openai_usage(usage: Mapping[str, Any]) -> dict[str, int]:
    return {
        "prompt_tokens": _count(usage.get("inputTokens")),
        "completion_tokens": _count(usage.get("outputTokens")),
        "total_tokens": _count(usage.get("totalTokens")),
    }


def convert_stream_event(event: Mapping[str, Any]) -> Optional[dict[str, Any]]:
    """Convert a Bedrock stream event into an OpenAI chunk, or None if it has no counterpart."""
    chunk: dict[str, Any] = {"object": CHUNK_OBJECT}
    usage = event.get("usage")
    role = event.get("role")
    delta = event.get("delta")
    if isinstance(usage, Mapping):
        chunk["usage"] = _openai_usage(usage)
    elif role is not None:
        chunk["choices"] = [{"index": 0, "delta": {"role": role, "content": ""}}]
    elif isinstance(delta, Mapping):
        chunk["choices"] = [{"index": 0, "delta": {"content": delta.get("text", "")}}]
    else:
        return None
    return chunk


class OpenAIToBedrockChatCompletion(Translator):
    """Translates OpenAI chat completions into Bedrock Converse calls and back."""

    def __init__(self) -> None:
        self.stream = False
        self.buffered = b""

    def request_body(
        self, body: Any
    ) -> tuple[Optional[HeaderMutation], Optional[BodyMutation], Optional[ProcessingMode]]:
        if not isinstance(body, Mapping):
            raise TranslationError(f"unexpected body type: {type(body).__name__}")
        override = None
        action = "converse"
        if body.get("stream"):
            self.stream = True
            override = ProcessingMode(
                response_header_mode=HeaderSendMode.SEND,
                response_body_mode=BodySendMode.STREAMED,
            )
            action = "converse-stream"
        header_mutation = HeaderMutation()
        header_mutation.set_header(":path", f"/model/{body.get('model', '')}/{action}")

        inference: dict[str, Any] = {}
        for source, target in _INFERENCE_FIELDS:
            value = body.get(source)
            if value is not None:
                inference[target] = value
        if isinstance(inference.get("stopSequences"), str):
            inference["stopSequences"] = [inference["stopSequences"]]

        request: dict[str, Any] = {"inferenceConfig": inference}
        request.update(openai_messages_to_bedrock(body))
        if body.get("tools"):
            request["toolConfig"] = openai_tools_to_bedrock(body)

        try:
            encoded = _dumps(request)
        except (TypeError, ValueError) as exc:
            raise TranslationError(f"failed to marshal body: {exc}") from exc
        set_content_length(header_mutation, encoded)
        return header_mutation, BodyMutation(body=encoded), override

    def response_headers(self, headers: Mapping[str, str]) -> Optional[HeaderMutation]:
        if not self.stream:
            return None
        content_type = headers.get("content-type", "")
        if content_type != EVENTSTREAM_CONTENT_TYPE:
            raise TranslationError(f"unexpected content-type for streaming: {content_type}")
        return HeaderMutation(set_headers=[HeaderValue(key="content-type", value=SSE_CONTENT_TYPE)])

    def response_body(
        self, body: bytes, end_of_stream: bool
    ) -> tuple[Optional[HeaderMutation], Optional[BodyMutation], int]:
        if self.stream:
            return self._stream_body(body, end_of_stream)
        try:
            text = bytes(body).decode("utf-8").lstrip()
            response, _ = json.JSONDecoder().raw_decode(text)
        except ValueError as exc:
            raise TranslationError(f"failed to unmarshal body: {exc}") from exc
        if not isinstance(response, Mapping):
            raise TranslationError("failed to unmarshal body: expected a JSON object")

        usage = response.get("usage")
        usage = usage if isinstance(usage, Mapping) else {}
        used = _uint32(_count(usage.get("totalTokens")))
        output = response.get("output")
        message = output.get("message") if isinstance(output, Mapping) else None
        message = message if isinstance(message, Mapping) else {}
        contents = message.get("content") or []
        stop_reason = response.get("stopReason")
        finish_reason = _FINISH_REASONS.get(stop_reason) if isinstance(stop_reason, str) else None

        choices = []
        for index, block in enumerate(contents):
            block = block if isinstance(block, Mapping) else {}
            choice: dict[str, Any] = {
                "index": index,
                "message": {"content": block.get("text"), "role": message.get("role")},
            }
            if finish_reason is not None:
                choice["finish_reason"] = finish_reason
            choices.append(choice)

        openai_response = {
            "object": COMPLETION_OBJECT,
            "choices": choices,
            "usage": _openai_usage(usage),
        }
        encoded = _dumps(openai_response)
        header_mutation = HeaderMutation()
        set_content_length(header_mutation, encoded)
        return header_mutation, BodyMutation(body=encoded), used

    def _stream_body(
        self, body: bytes, end_of_stream: bool
    ) -> tuple[Optional[HeaderMutation], Optional[BodyMutation], int]:
        self.buffered += bytes(body)
        used = 0
        out = bytearray()
        for event in self._extract_events():
            usage = event.get("usage")
            if isinstance(usage, Mapping):
                used = _uint32(_count(usage.get("totalTokens")))
            chunk = convert_stream_event(event)
            if chunk is None:
                continue
            out += b"data: " + _dumps(chunk) + b"\n\n"
        if end_of_stream:
            out += b"data: [DONE]\n"
        return None, BodyMutation(body=bytes(out)), used

    def _extract_events(self) -> list[Mapping[str, Any]]:
        """Decode the complete messages in the buffer, keeping what follows them."""
        events: list[Mapping[str, Any]] = []
        offset = 0
        while True:
            try:
                message, size = decode_message(self.buffered[offset:])
            except EventStreamError:
                break
            offset += size
            try:
                event = json.loads(message.payload)
            except ValueError:
                continue
            if isinstance(event, Mapping):
                events.append(event)
        self.buffered = self.buffered[offset:]
        return events


def new_openai_to_bedrock_translator(path: str) -> Translator:
    """Create the OpenAI-to-Bedrock translator for a request path."""
    if path == CHAT_COMPLETIONS_PATH:
        return OpenAIToBedrockChatCompletion()
    raise TranslationError(f"unsupported path: {path}")