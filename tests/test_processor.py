import gzip

import pytest

from aigw.backendauth import Handler
from aigw.config import Backend, TokenUsageMetadata, VersionedAPISchema
from aigw.messages import (
    BodyMutation,
    HeaderMutation,
    HeaderValue,
    HttpBody,
    MessageKind,
)
from aigw.processor import (
    ProcessingError,
    Processor,
    ProcessorConfig,
    build_token_usage_metadata,
    headers_to_map,
)
from aigw.router import Router
from aigw.translator import Translator

SOME_SCHEMA = VersionedAPISchema("some-schema", "v10.0")


class MockTranslator(Translator):
    def __init__(self, *, header_mutation=None, body_mutation=None, override=None,
                 used_token=0, error=None):
        self.header_mutation = header_mutation
        self.body_mutation = body_mutation
        self.override = override
        self.used_token = used_token
        self.error = error
        self.request_bodies = []
        self.seen_headers = []
        self.response_bodies = []

    def request_body(self, body):
        self.request_bodies.append(body)
        if self.error:
            raise self.error
        return self.header_mutation, self.body_mutation, self.override

    def response_headers(self, headers):
        self.seen_headers.append(dict(headers))
        if self.error:
            raise self.error
        return self.header_mutation

    def response_body(self, body, end_of_stream):
        self.response_bodies.append(body)
        if self.error:
            raise self.error
        return self.header_mutation, self.body_mutation, self.used_token


class MockRouter(Router):
    def __init__(self, backend_name="", schema=SOME_SCHEMA, error=None):
        self.backend_name = backend_name
        self.schema = schema
        self.error = error
        self.seen_headers = []

    def calculate(self, headers):
        self.seen_headers.append(dict(headers))
        if self.error:
            raise self.error
        return Backend(name=self.backend_name, output_schema=self.schema)


class MockHandler(Handler):
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    def do(self, request_headers, header_mutation, body_mutation):
        self.calls.append((dict(request_headers), body_mutation))
        if self.error:
            raise self.error
        header_mutation.set_header("authorization", "Bearer token")


def make_parser(model="some-model", parsed=None, error=None, seen=None):
    def parse(path, body):
        if seen is not None:
            seen.append((path, body.body))
        if error:
            raise error
        return model, parsed

    return parse


def make_factory(translator=None, error=None, seen=None):
    def factory(path):
        if seen is not None:
            seen.append(path)
        if error:
            raise error
        return translator

    return factory


def make_config(**kwargs):
    kwargs.setdefault("body_parser", make_parser())
    kwargs.setdefault("router", MockRouter())
    return ProcessorConfig(**kwargs)


def test_process_request_headers():
    p = Processor()
    res = p.process_request_headers([HeaderValue(key="foo", value="bar")])
    assert res.kind is MessageKind.REQUEST_HEADERS
    assert p.request_headers == {"foo": "bar"}


def test_process_response_headers_error():
    p = Processor()
    p.translator = MockTranslator(error=RuntimeError("test error"))
    with pytest.raises(ProcessingError, match="test error"):
        p.process_response_headers(None)
    assert p.translator.seen_headers == [{}]


def test_process_response_headers_ok():
    mutation = HeaderMutation()
    mt = MockTranslator(header_mutation=mutation)
    p = Processor()
    p.translator = mt
    res = p.process_response_headers(
        [HeaderValue(key="foo", value="bar"), HeaderValue(key="dog", raw_value=b"cat")]
    )
    assert mt.seen_headers == [{"foo": "bar", "dog": "cat"}]
    assert res.kind is MessageKind.RESPONSE_HEADERS
    assert res.response.header_mutation is mutation


def test_process_response_headers_without_translator():
    p = Processor()
    res = p.process_response_headers([HeaderValue(key="content-encoding", value="gzip")])
    assert res.kind is MessageKind.RESPONSE_HEADERS
    assert res.response is None
    assert p.response_encoding == "gzip"


def test_process_response_body_error():
    p = Processor()
    p.translator = MockTranslator(error=RuntimeError("test error"))
    with pytest.raises(ProcessingError, match="test error"):
        p.process_response_body(HttpBody())


def test_process_response_body_ok():
    body_mut = BodyMutation()
    head_mut = HeaderMutation()
    mt = MockTranslator(body_mutation=body_mut, header_mutation=head_mut, used_token=123)
    config = make_config(
        token_usage_metadata=TokenUsageMetadata(namespace="ai_gateway_llm_ns", key="token_usage")
    )
    p = Processor(config)
    p.translator = mt
    res = p.process_response_body(HttpBody(body=b"some-body"))
    assert mt.response_bodies == [b"some-body"]
    assert res.response.body_mutation is body_mut
    assert res.response.header_mutation is head_mut
    assert res.dynamic_metadata["ai_gateway_llm_ns"]["token_usage"] == 123.0


def test_process_response_body_without_metadata():
    mt = MockTranslator(used_token=7)
    p = Processor(make_config())
    p.translator = mt
    res = p.process_response_body(HttpBody(body=b"x"))
    assert res.dynamic_metadata is None
    assert res.kind is MessageKind.RESPONSE_BODY


def test_process_response_body_gzip():
    mt = MockTranslator()
    p = Processor(make_config())
    p.translator = mt
    p.process_response_headers([HeaderValue(key="content-encoding", value="gzip")])
    p.process_response_body(HttpBody(body=gzip.compress(b"hello world")))
    assert mt.response_bodies == [b"hello world"]


def test_process_response_body_invalid_gzip():
    p = Processor(make_config())
    p.translator = MockTranslator()
    p.response_encoding = "gzip"
    with pytest.raises(ProcessingError, match="failed to decode gzip"):
        p.process_response_body(HttpBody(body=b"not gzip at all"))


def test_process_response_body_without_translator():
    p = Processor(make_config())
    res = p.process_response_body(HttpBody(body=b"x"))
    assert res.kind is MessageKind.RESPONSE_BODY
    assert res.response is None


def test_process_request_body_parser_error():
    p = Processor(make_config(body_parser=make_parser(error=ValueError("test error"))))
    with pytest.raises(ProcessingError, match="failed to parse request body: test error"):
        p.process_request_body(HttpBody())


def test_process_request_body_router_error():
    seen = []
    rt = MockRouter(error=RuntimeError("test error"))
    p = Processor(make_config(body_parser=make_parser(seen=seen), router=rt,
                              model_name_header_key="x-model"))
    p.request_headers = {":path": "/foo"}
    with pytest.raises(ProcessingError, match="failed to calculate route: test error"):
        p.process_request_body(HttpBody())
    assert seen == [("/foo", b"")]
    assert rt.seen_headers == [{":path": "/foo", "x-model": "some-model"}]


def test_process_request_body_translator_not_found():
    p = Processor(make_config(router=MockRouter(backend_name="some-backend")))
    p.request_headers = {":path": "/foo"}
    with pytest.raises(ProcessingError) as excinfo:
        p.process_request_body(HttpBody())
    assert 'failed to find factory for output schema {"some-schema" "v10.0"}' in str(excinfo.value)


def test_process_request_body_factory_error():
    seen = []
    p = Processor(make_config(
        router=MockRouter(backend_name="some-backend"),
        factories={SOME_SCHEMA: make_factory(error=RuntimeError("test error"), seen=seen)},
    ))
    p.request_headers = {":path": "/foo"}
    with pytest.raises(ProcessingError, match="failed to create translator: test error"):
        p.process_request_body(HttpBody())
    assert seen == ["/foo"]


def test_process_request_body_translator_error():
    mt = MockTranslator(error=RuntimeError("test error"))
    p = Processor(make_config(
        router=MockRouter(backend_name="some-backend"),
        factories={SOME_SCHEMA: make_factory(translator=mt)},
    ))
    p.request_headers = {":path": "/foo"}
    with pytest.raises(ProcessingError, match="failed to transform request: test error"):
        p.process_request_body(HttpBody())


def test_process_request_body_ok():
    some_body = "foooooooooooooo"
    header_mut = HeaderMutation()
    body_mut = BodyMutation()
    mt = MockTranslator(header_mutation=header_mut, body_mutation=body_mut)
    p = Processor(make_config(
        body_parser=make_parser(parsed=some_body),
        router=MockRouter(backend_name="some-backend"),
        factories={SOME_SCHEMA: make_factory(translator=mt)},
        selected_backend_header_key="x-ai-gateway-backend-key",
        model_name_header_key="x-ai-gateway-model-key",
    ))
    p.request_headers = {":path": "/foo"}
    resp = p.process_request_body(HttpBody())
    assert p.translator is mt
    assert mt.request_bodies == [some_body]
    assert resp.kind is MessageKind.REQUEST_BODY
    assert resp.response.header_mutation is header_mut
    assert resp.response.body_mutation is body_mut
    assert resp.response.clear_route_cache is True
    hdrs = header_mut.set_headers
    assert len(hdrs) == 2
    assert hdrs[0].key == "x-ai-gateway-model-key"
    assert hdrs[0].raw_value == b"some-model"
    assert hdrs[1].key == "x-ai-gateway-backend-key"
    assert hdrs[1].raw_value == b"some-backend"


def test_process_request_body_creates_header_mutation_and_runs_auth():
    handler = MockHandler()
    mt = MockTranslator()
    p = Processor(make_config(
        router=MockRouter(backend_name="some-backend"),
        factories={SOME_SCHEMA: make_factory(translator=mt)},
        backend_auth_handlers={"some-backend": handler},
        model_name_header_key="x-model",
        selected_backend_header_key="x-backend",
    ))
    p.request_headers = {":path": "/foo", ":method": "POST"}
    resp = p.process_request_body(HttpBody())
    keys = [h.key for h in resp.response.header_mutation.set_headers]
    assert keys == ["x-model", "x-backend", "authorization"]
    assert handler.calls[0][0][":method"] == "POST"


def test_process_request_body_auth_error():
    p = Processor(make_config(
        router=MockRouter(backend_name="some-backend"),
        factories={SOME_SCHEMA: make_factory(translator=MockTranslator())},
        backend_auth_handlers={"some-backend": MockHandler(error=RuntimeError("denied"))},
    ))
    p.request_headers = {":path": "/foo"}
    with pytest.raises(ProcessingError, match="failed to do auth request: denied"):
        p.process_request_body(HttpBody())


def test_process_request_body_without_config():
    with pytest.raises(ProcessingError, match="no configuration loaded"):
        Processor().process_request_body(HttpBody())


def test_headers_to_map():
    m = headers_to_map([
        HeaderValue(key="foo", value="bar"),
        HeaderValue(key="dog", raw_value=b"cat"),
    ])
    assert m == {"foo": "bar", "dog": "cat"}


def test_headers_to_map_drops_invalid_utf8():
    m = headers_to_map([HeaderValue(key="bad", raw_value=b"\xff\xfe"), HeaderValue(key="ok", value="v")])
    assert m == {"ok": "v"}


def test_build_token_usage_metadata():
    md = build_token_usage_metadata(TokenUsageMetadata(namespace="ns", key="key"), 42)
    assert md == {"ns": {"key": 42.0}}