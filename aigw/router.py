"""Selection of a backend for a request, and parsing of request bodies."""

from __future__ import annotations

import abc
import json
import random
import time
from collections.abc import Callable, Mapping
from typing import Any, Optional

from .config import APISCHEMA_OPENAI, Backend, Config, RouteRule, VersionedAPISchema
from .messages import HttpBody

CHAT_COMPLETIONS_PATH = "/v1/chat/completions"

RequestBodyParser = Callable[[str, HttpBody], "tuple[str, Any]"]


class RoutingError(Exception):
    """No backend can be chosen for a request."""


class Router(abc.ABC):
    """Chooses the backend a request is sent to."""

    @abc.abstractmethod
    def calculate(self, headers: Mapping[str, str]) -> Backend:
        """Return the backend for a request with the given headers."""


NewCustomRouter = Callable[[Router, Config], Router]


class DefaultRouter(Router):
    """Routes by exact header matches and picks a backend by weight."""

    def __init__(self, rules: list[RouteRule], rng: Optional[random.Random] = None) -> None:
        self._rules = rules
        self._rng = rng if rng is not None else random.Random(time.time_ns())

    def calculate(self, headers: Mapping[str, str]) -> Backend:
        """Return a backend of the last rule that has a matching header."""
        matched: RouteRule | None = None
        for rule in self._rules:
            if any(headers.get(match.name) == match.value for match in rule.headers):
                matched = rule
        if matched is None:
            raise RoutingError("no matching rule found")
        return self.select_backend(matched)

    def select_backend(self, rule: RouteRule) -> Backend:
        """Pick one of the rule's backends at random, in proportion to their weights."""
        if not rule.backends:
            raise RoutingError("rule has no backends")
        total = sum(b.weight for b in rule.backends)
        if total == 0:
            return rule.backends[0]
        selected = self._rng.randrange(total)
        for backend in rule.backends:
            if selected < backend.weight:
                return backend
            selected -= backend.weight
        return rule.backends[0]


def new_router(config: Config, new_custom_router: Optional[NewCustomRouter] = None) -> Router:
    """Create the router for a configuration, wrapped by a custom router if one is given."""
    default = DefaultRouter(config.rules)
    if new_custom_router is not None:
        return new_custom_router(default, config)
    return default


def parse_openai_body(path: str, body: HttpBody) -> tuple[str, dict[str, Any]]:
    """Parse an OpenAI request body; return the model name and the decoded request."""
    if path != CHAT_COMPLETIONS_PATH:
        raise ValueError(f"unsupported path: {path}")
    try:
        request = json.loads(body.body)
    except ValueError as exc:
        raise ValueError(f"failed to unmarshal body: {exc}") from exc
    if not isinstance(request, dict):
        raise ValueError("failed to unmarshal body: expected a JSON object")
    model = request.get("model")
    if model is None:
        model = ""
    if not isinstance(model, str):
        raise ValueError("failed to unmarshal body: model must be a string")
    return model, request


def new_request_body_parser(input_schema: VersionedAPISchema) -> RequestBodyParser:
    """Return the body parser for the client's API schema."""
    if input_schema.schema == APISCHEMA_OPENAI:
        return parse_openai_body
    raise ValueError(f"unsupported API schema: {input_schema}")