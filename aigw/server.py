"""The external processing server: runs one processor per stream."""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable
from typing import Any, Generic, Optional, Protocol, TypeVar

from .backendauth import Handler, new_handler
from .config import Config, VersionedAPISchema
from .factory import Factory, new_factory
from .messages import HttpBody, MessageKind, ProcessingRequest, ProcessingResponse
from .processor import ProcessingError, ProcessorConfig
from .router import NewCustomRouter, new_request_body_parser, new_router


class StatusCode(enum.IntEnum):
    """Status codes of a failed stream."""

    OK = 0
    CANCELLED = 1
    UNKNOWN = 2
    UNIMPLEMENTED = 12


class StatusError(Exception):
    """A stream ends with an error status."""

    def __init__(self, code: StatusCode, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


class StreamCancelled(Exception):
    """The peer cancelled the stream."""


class HealthStatus(enum.IntEnum):
    """Serving status reported by health checks."""

    UNKNOWN = 0
    SERVING = 1
    NOT_SERVING = 2
    SERVICE_UNKNOWN = 3


class _Processor(Protocol):
    def process_request_headers(self, headers: Any) -> ProcessingResponse: ...

    def process_request_body(self, body: HttpBody) -> ProcessingResponse: ...

    def process_response_headers(self, headers: Any) -> ProcessingResponse: ...

    def process_response_body(self, body: HttpBody) -> ProcessingResponse: ...


class _ProcessStream(Protocol):
    def done(self) -> bool: ...

    def recv(self) -> ProcessingRequest: ...

    def send(self, response: ProcessingResponse) -> None: ...


P = TypeVar("P", bound=_Processor)


class Server(Generic[P]):
    """Serves processing streams with processors built from the latest configuration."""

    def __init__(
        self,
        new_processor: Callable[[Optional[ProcessorConfig]], P],
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.new_processor = new_processor
        self.logger = logger if logger is not None else logging.getLogger(__name__)
        self.config: Optional[ProcessorConfig] = None
        self.new_custom_router: Optional[NewCustomRouter] = None

    def load_config(self, config: Config) -> None:
        """Build the processor configuration from ``config`` and make it current."""
        try:
            body_parser = new_request_body_parser(config.input_schema)
        except Exception as exc:
            raise ValueError(f"cannot create request body parser: {exc}") from exc
        try:
            router = new_router(config, self.new_custom_router)
        except Exception as exc:
            raise ValueError(f"cannot create router: {exc}") from exc

        factories: dict[VersionedAPISchema, Factory] = {}
        auth_handlers: dict[str, Handler] = {}
        for rule in config.rules:
            for backend in rule.backends:
                if backend.output_schema not in factories:
                    try:
                        factories[backend.output_schema] = new_factory(
                            config.input_schema, backend.output_schema
                        )
                    except Exception as exc:
                        raise ValueError(f"cannot create translator factory: {exc}") from exc
                if backend.auth is not None:
                    try:
                        auth_handlers[backend.name] = new_handler(backend.auth)
                    except Exception as exc:
                        raise ValueError(f"cannot create backend auth handler: {exc}") from exc

        self.config = ProcessorConfig(
            body_parser=body_parser,
            router=router,
            model_name_header_key=config.model_name_header_key,
            selected_backend_header_key=config.selected_backend_header_key,
            factories=factories,
            backend_auth_handlers=auth_handlers,
            token_usage_metadata=config.token_usage_metadata,
        )

    def process(self, stream: _ProcessStream) -> None:
        """Serve one stream with a new processor."""
        self.process_with(self.new_processor(self.config), stream)

    def process_with(self, processor: P, stream: _ProcessStream) -> None:
        """Serve a stream until it ends, is cancelled or fails."""
        while True:
            if stream.done():
                raise StatusError(StatusCode.CANCELLED, "context canceled")
            try:
                request = stream.recv()
            except (EOFError, StreamCancelled):
                return
            except StatusError as exc:
                if exc.code is StatusCode.CANCELLED:
                    return
                self.logger.error("cannot receive stream request: %s", exc)
                raise StatusError(
                    StatusCode.UNKNOWN, f"cannot receive stream request: {exc}"
                ) from exc
            except Exception as exc:
                self.logger.error("cannot receive stream request: %s", exc)
                raise StatusError(
                    StatusCode.UNKNOWN, f"cannot receive stream request: {exc}"
                ) from exc

            try:
                response = self.process_msg(processor, request)
            except Exception as exc:
                self.logger.error("cannot process request: %s", exc)
                raise StatusError(StatusCode.UNKNOWN, f"cannot process request: {exc}") from exc
            try:
                stream.send(response)
            except Exception as exc:
                self.logger.error("cannot send response: %s", exc)
                raise StatusError(StatusCode.UNKNOWN, f"cannot send response: {exc}") from exc

    def process_msg(self, processor: P, request: ProcessingRequest) -> ProcessingResponse:
        """Hand one message to the processor method for its phase."""
        kind = request.kind
        body = request.body if request.body is not None else HttpBody()
        if kind is MessageKind.REQUEST_HEADERS:
            handle, argument, what = processor.process_request_headers, request.headers, "request headers"
        elif kind is MessageKind.REQUEST_BODY:
            handle, argument, what = processor.process_request_body, body, "request body"
        elif kind is MessageKind.RESPONSE_HEADERS:
            handle, argument, what = processor.process_response_headers, request.headers, "response headers"
        elif kind is MessageKind.RESPONSE_BODY:
            handle, argument, what = processor.process_response_body, body, "response body"
        else:
            self.logger.error("unknown request type: %r", request)
            raise ProcessingError(f"unknown request type: {kind}")

        self.logger.debug("%s processing: %r", what, argument)
        try:
            response = handle(argument)
        except Exception as exc:
            raise ProcessingError(f"cannot process {what}: {exc}") from exc
        self.logger.debug("%s processed: %r", what, response)
        return response

    def check(self, request: Any = None) -> HealthStatus:
        """Report that the server is serving."""
        return HealthStatus.SERVING

    def watch(self, request: Any = None, stream: Any = None) -> None:
        """Streaming health checks are not supported."""
        raise StatusError(StatusCode.UNIMPLEMENTED, "Watch is not implemented")