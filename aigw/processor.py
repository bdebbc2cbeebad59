"""Processing of the messages that make up one HTTP exchange."""

from __future__ import annotations

import gzip
import json
import zlib
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any, Optional

from .backendauth import Handler
from .config import TokenUsageMetadata, VersionedAPISchema
from .factory import Factory
from .messages import (
    CommonResponse,
    HeaderMutation,
    HeaderValue,
    HttpBody,
    MessageKind,
    ProcessingResponse,
)
from .router import RequestBodyParser, Router
from .translator import Translator


class ProcessingError(Exception):
    """A message of the exchange cannot be processed."""


@dataclass
class ProcessorConfig:
    """Everything a processor needs, built from a loaded configuration."""

    body_parser: RequestBodyParser
    router: Router
    model_name_header_key: str = ""
    selected_backend_header_key: str = ""
    factories: dict[VersionedAPISchema, Factory] = field(default_factory=dict)
    backend_auth_handlers: dict[str, Handler] = field(default_factory=dict)
    token_usage_metadata: Optional[TokenUsageMetadata] = None


def _quoted_schema(schema: VersionedAPISchema) -> str:
    return f"{{{json.dumps(schema.schema)} {json.dumps(schema.version)}}}"


def headers_to_map(headers: Optional[Iterable[HeaderValue]]) -> dict[str, str]:
    """Turn a list of headers into a mapping; raw values that are not UTF-8 are dropped."""
    result: dict[str, str] = {}
    for header in headers or ():
        if header.value:
            result[header.key] = header.value
            continue
        try:
            result[header.key] = header.raw_value.decode("utf-8")
        except UnicodeDecodeError:
            pass
    return result


def build_token_usage_metadata(metadata: TokenUsageMetadata, usage: int) -> dict[str, Any]:
    """Build the dynamic metadata that publishes the used token count."""
    return {metadata.namespace: {metadata.key: float(usage)}}


class Processor:
    """Processes the request and response messages of a single stream."""

    def __init__(self, config: Optional[ProcessorConfig] = None) -> None:
        self.config = config
        self.request_headers: dict[str, str] = {}
        self.response_encoding = ""
        self.translator: Optional[Translator] = None

    def _require_config(self) -> ProcessorConfig:
        if self.config is None:
            raise ProcessingError("no configuration loaded")
        return self.config

    def process_request_headers(self, headers: Optional[Iterable[HeaderValue]]) -> ProcessingResponse:
        """Remember the request headers for routing."""
        self.request_headers = headers_to_map(headers)
        return ProcessingResponse(kind=MessageKind.REQUEST_HEADERS)

    def process_request_body(self, body: HttpBody) -> ProcessingResponse:
        """Route the request, translate its body and authenticate it for the backend."""
        config = self._require_config()
        path = self.request_headers.get(":path", "")
        try:
            model, parsed = config.body_parser(path, body)
        except Exception as exc:
            raise ProcessingError(f"failed to parse request body: {exc}") from exc

        self.request_headers[config.model_name_header_key] = model
        try:
            backend = config.router.calculate(self.request_headers)
        except Exception as exc:
            raise ProcessingError(f"failed to calculate route: {exc}") from exc

        factory = config.factories.get(backend.output_schema)
        if factory is None:
            raise ProcessingError(
                f"failed to find factory for output schema {_quoted_schema(backend.output_schema)}"
            )
        try:
            translator = factory(path)
        except Exception as exc:
            raise ProcessingError(f"failed to create translator: {exc}") from exc
        self.translator = translator

        try:
            header_mutation, body_mutation, override = translator.request_body(parsed)
        except Exception as exc:
            raise ProcessingError(f"failed to transform request: {exc}") from exc

        if header_mutation is None:
            header_mutation = HeaderMutation()
        header_mutation.set_header(config.model_name_header_key, model)
        header_mutation.set_header(config.selected_backend_header_key, backend.name)

        handler = config.backend_auth_handlers.get(backend.name)
        if handler is not None:
            try:
                handler.do(self.request_headers, header_mutation, body_mutation)
            except Exception as exc:
                raise ProcessingError(f"failed to do auth request: {exc}") from exc

        return ProcessingResponse(
            kind=MessageKind.REQUEST_BODY,
            response=CommonResponse(
                header_mutation=header_mutation,
                body_mutation=body_mutation,
                clear_route_cache=True,
            ),
            mode_override=override,
        )

    def process_response_headers(self, headers: Optional[Iterable[HeaderValue]]) -> ProcessingResponse:
        """Translate the response headers and note the response's content encoding."""
        header_map = headers_to_map(headers)
        encoding = header_map.get("content-encoding", "")
        if encoding:
            self.response_encoding = encoding
        # A response may arrive without its request having passed through this processor.
        if self.translator is None:
            return ProcessingResponse(kind=MessageKind.RESPONSE_HEADERS)
        try:
            header_mutation = self.translator.response_headers(header_map)
        except Exception as exc:
            raise ProcessingError(f"failed to transform response: {exc}") from exc
        return ProcessingResponse(
            kind=MessageKind.RESPONSE_HEADERS,
            response=CommonResponse(header_mutation=header_mutation),
        )

    def process_response_body(self, body: HttpBody) -> ProcessingResponse:
        """Translate the response body and publish the used token count."""
        data = body.body
        if self.response_encoding == "gzip":
            try:
                data = gzip.decompress(data)
            except (OSError, EOFError, zlib.error) as exc:
                raise ProcessingError(f"failed to decode gzip: {exc}") from exc
        if self.translator is None:
            return ProcessingResponse(kind=MessageKind.RESPONSE_BODY)
        try:
            header_mutation, body_mutation, used = self.translator.response_body(
                data, body.end_of_stream
            )
        except Exception as exc:
            raise ProcessingError(f"failed to transform response: {exc}") from exc

        response = ProcessingResponse(
            kind=MessageKind.RESPONSE_BODY,
            response=CommonResponse(header_mutation=header_mutation, body_mutation=body_mutation),
        )
        if self.config is not None and self.config.token_usage_metadata is not None:
            response.dynamic_metadata = build_token_usage_metadata(
                self.config.token_usage_metadata, used
            )
        return response