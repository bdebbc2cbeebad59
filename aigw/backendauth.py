"""Authentication of requests sent to backends."""

from __future__ import annotations

import abc
import hashlib
import hmac
import os
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import parse_qsl, quote, urlsplit

from .config import AWSAuth, BackendAuth
from .messages import BodyMutation, HeaderMutation

_ALGORITHM = "AWS4-HMAC-SHA256"
_DEFAULT_PORTS = {"http": "80", "https": "443"}


class AuthError(Exception):
    """A request cannot be authenticated."""


@dataclass(frozen=True)
class AWSCredentials:
    """AWS access credentials."""

    access_key_id: str = ""
    secret_access_key: str = ""
    session_token: str = ""

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> AWSCredentials:
        """Read the credentials from the usual AWS environment variables."""
        env = os.environ if environ is None else environ
        return cls(
            access_key_id=env.get("AWS_ACCESS_KEY_ID") or env.get("AWS_ACCESS_KEY", ""),
            secret_access_key=env.get("AWS_SECRET_ACCESS_KEY") or env.get("AWS_SECRET_KEY", ""),
            session_token=env.get("AWS_SESSION_TOKEN", ""),
        )


def _hmac(key: bytes, message: str) -> bytes:
    return hmac.new(key, message.encode("utf-8"), hashlib.sha256).digest()


def _canonical_query(query: str) -> str:
    pairs = [
        (quote(k, safe="-_.~"), quote(v, safe="-_.~"))
        for k, v in parse_qsl(query, keep_blank_values=True)
    ]
    return "&".join(f"{k}={v}" for k, v in sorted(pairs))


def _host(scheme: str, netloc: str) -> str:
    host, sep, port = netloc.rpartition(":")
    if sep and port == _DEFAULT_PORTS.get(scheme) and not host.endswith("]") is False:
        return host
    if sep and port == _DEFAULT_PORTS.get(scheme):
        return host
    return netloc


def sign_request(
    method: str,
    url: str,
    headers: Mapping[str, str],
    payload_hash: str,
    credentials: AWSCredentials,
    service: str,
    region: str,
    when: datetime,
) -> dict[str, str]:
    """Sign a request with AWS Signature Version 4.

    ``headers`` are request headers to include in the signature. Returns the
    headers the signature adds to the request.
    """
    parts = urlsplit(url)
    if not parts.netloc:
        raise AuthError(f"invalid request URL: {url!r}")
    when = when.astimezone(timezone.utc) if when.tzinfo else when.replace(tzinfo=timezone.utc)
    amz_date = when.strftime("%Y%m%dT%H%M%SZ")
    date = when.strftime("%Y%m%d")

    signed = {name.lower(): " ".join(str(value).split()) for name, value in headers.items()}
    signed["host"] = _host(parts.scheme, parts.netloc)
    signed["x-amz-date"] = amz_date
    added = {"X-Amz-Date": amz_date}
    if credentials.session_token:
        signed["x-amz-security-token"] = credentials.session_token
        added["X-Amz-Security-Token"] = credentials.session_token

    names = sorted(signed)
    canonical_headers = "".join(f"{name}:{signed[name]}\n" for name in names)
    signed_headers = ";".join(names)
    canonical_request = "\n".join(
        [
            method,
            quote(parts.path or "/", safe="/~"),
            _canonical_query(parts.query),
            canonical_headers,
            signed_headers,
            payload_hash,
        ]
    )
    scope = f"{date}/{region}/{service}/aws4_request"
    string_to_sign = "\n".join(
        [
            _ALGORITHM,
            amz_date,
            scope,
            hashlib.sha256(canonical_request.encode("utf-8")).hexdigest(),
        ]
    )
    key = _hmac(f"AWS4{credentials.secret_access_key}".encode("utf-8"), date)
    for part in (region, service, "aws4_request"):
        key = _hmac(key, part)
    signature = hmac.new(key, string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()
    added["Authorization"] = (
        f"{_ALGORITHM} Credential={credentials.access_key_id}/{scope}, "
        f"SignedHeaders={signed_headers}, Signature={signature}"
    )
    return added


class Handler(abc.ABC):
    """Adds a backend's authentication to a translated request."""

    @abc.abstractmethod
    def do(
        self,
        request_headers: Mapping[str, str],
        header_mutation: HeaderMutation,
        body_mutation: Optional[BodyMutation],
    ) -> None:
        """Add authentication headers to ``header_mutation``."""


class AWSHandler(Handler):
    """Signs requests to AWS Bedrock with credentials from the environment."""

    region = "us-east-1"
    service = "bedrock"

    def __init__(self, auth: Optional[AWSAuth] = None, environ: Optional[Mapping[str, str]] = None) -> None:
        self.credentials = AWSCredentials.from_env(environ)

    def do(
        self,
        request_headers: Mapping[str, str],
        header_mutation: HeaderMutation,
        body_mutation: Optional[BodyMutation],
    ) -> None:
        """Sign the request whose path is set in ``header_mutation`` and body in ``body_mutation``."""
        method = request_headers.get(":method") or "GET"
        path = ""
        for header in header_mutation.set_headers:
            if header.key == ":path":
                try:
                    path = header.text()
                except UnicodeDecodeError as exc:
                    raise AuthError(f"cannot create request: {exc}") from exc
                break
        body = body_mutation.body if body_mutation is not None else b""
        url = f"https://bedrock-runtime.{self.region}.amazonaws.com{path}"
        signed_headers = {"Content-Length": str(len(body))} if body else {}
        try:
            added = sign_request(
                method,
                url,
                signed_headers,
                hashlib.sha256(body).hexdigest(),
                self.credentials,
                self.service,
                self.region,
                datetime.now(timezone.utc),
            )
        except AuthError as exc:
            raise AuthError(f"cannot sign request: {exc}") from exc
        for key, value in added.items():
            if key == "Authorization" or key.startswith("X-Amz-"):
                header_mutation.set_header(key, value)


def new_handler(config: BackendAuth) -> Handler:
    """Return the handler for a backend's authentication configuration."""
    if config.aws is not None:
        return AWSHandler(config.aws)
    raise AuthError("no backend auth handler found")