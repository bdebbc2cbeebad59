"""Configuration of the external processor."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import yaml

APISCHEMA_OPENAI = "OpenAI"
APISCHEMA_AWS_BEDROCK = "AWSBedrock"


@dataclass(frozen=True)
class VersionedAPISchema:
    """An API schema name with an optional version."""

    schema: str
    version: str = ""

    def __str__(self) -> str:
        return f"{{{self.schema} {self.version}}}"


@dataclass(frozen=True)
class HeaderMatch:
    """An exact match of a request header."""

    name: str
    value: str


@dataclass(frozen=True)
class AWSAuth:
    """Signing of backend requests with AWS credentials."""


@dataclass(frozen=True)
class BackendAuth:
    """How requests to a backend are authenticated."""

    aws: AWSAuth | None = None


@dataclass
class Backend:
    """A backend a request may be routed to."""

    name: str
    output_schema: VersionedAPISchema
    weight: int = 0
    auth: BackendAuth | None = None


@dataclass
class RouteRule:
    """Backends chosen when any of the header matches holds."""

    backends: list[Backend] = field(default_factory=list)
    headers: list[HeaderMatch] = field(default_factory=list)


@dataclass(frozen=True)
class TokenUsageMetadata:
    """Where the used token count is published in the dynamic metadata."""

    namespace: str
    key: str


def _mapping(data: Any, where: str) -> Mapping[str, Any]:
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ValueError(f"{where}: expected a mapping, got {type(data).__name__}")
    return data


def _sequence(data: Any, where: str) -> list[Any]:
    if data is None:
        return []
    if not isinstance(data, list):
        raise ValueError(f"{where}: expected a list, got {type(data).__name__}")
    return data


def _string(data: Mapping[str, Any], key: str, where: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"{where}.{key}: expected a string, got {type(value).__name__}")
    return value


def _integer(data: Mapping[str, Any], key: str, where: str) -> int:
    value = data.get(key)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{where}.{key}: expected an integer, got {type(value).__name__}")
    return value


def _schema(data: Any, where: str) -> VersionedAPISchema:
    data = _mapping(data, where)
    return VersionedAPISchema(
        schema=_string(data, "schema", where), version=_string(data, "version", where)
    )


def _auth(data: Any, where: str) -> BackendAuth | None:
    if data is None:
        return None
    data = _mapping(data, where)
    aws = None
    if data.get("aws") is not None:
        _mapping(data["aws"], f"{where}.aws")
        aws = AWSAuth()
    return BackendAuth(aws=aws)


def _backend(data: Any, where: str) -> Backend:
    data = _mapping(data, where)
    return Backend(
        name=_string(data, "name", where),
        output_schema=_schema(data.get("outputSchema"), f"{where}.outputSchema"),
        weight=_integer(data, "weight", where),
        auth=_auth(data.get("auth"), f"{where}.auth"),
    )


def _header_match(data: Any, where: str) -> HeaderMatch:
    data = _mapping(data, where)
    return HeaderMatch(name=_string(data, "name", where), value=_string(data, "value", where))


def _rule(data: Any, where: str) -> RouteRule:
    data = _mapping(data, where)
    backends = _sequence(data.get("backends"), f"{where}.backends")
    headers = _sequence(data.get("headers"), f"{where}.headers")
    return RouteRule(
        backends=[_backend(b, f"{where}.backends[{i}]") for i, b in enumerate(backends)],
        headers=[_header_match(h, f"{where}.headers[{i}]") for i, h in enumerate(headers)],
    )


@dataclass
class Config:
    """The whole configuration of the external processor."""

    input_schema: VersionedAPISchema = field(default_factory=lambda: VersionedAPISchema(""))
    model_name_header_key: str = ""
    selected_backend_header_key: str = ""
    rules: list[RouteRule] = field(default_factory=list)
    token_usage_metadata: TokenUsageMetadata | None = None

    @classmethod
    def from_dict(cls, data: Any) -> Config:
        """Build a configuration from its decoded document; unknown keys are ignored."""
        data = _mapping(data, "config")
        token_usage = None
        if data.get("tokenUsageMetadata") is not None:
            md = _mapping(data["tokenUsageMetadata"], "tokenUsageMetadata")
            token_usage = TokenUsageMetadata(
                namespace=_string(md, "namespace", "tokenUsageMetadata"),
                key=_string(md, "key", "tokenUsageMetadata"),
            )
        rules = _sequence(data.get("rules"), "rules")
        return cls(
            input_schema=_schema(data.get("inputSchema"), "inputSchema"),
            model_name_header_key=_string(data, "modelNameHeaderKey", "config"),
            selected_backend_header_key=_string(data, "selectedBackendHeaderKey", "config"),
            rules=[_rule(r, f"rules[{i}]") for i, r in enumerate(rules)],
            token_usage_metadata=token_usage,
        )


def load_config_yaml(path: str) -> Config:
    """Read a configuration from a YAML file."""
    with open(path, encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise ValueError(f"invalid config file {path}: {exc}") from exc
    return Config.from_dict(data)