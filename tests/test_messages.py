import pytest

from aigw.messages import (
    BodySendMode,
    CommonResponse,
    HeaderMutation,
    HeaderSendMode,
    HeaderValue,
    HttpBody,
    MessageKind,
    ProcessingMode,
    ProcessingRequest,
    ProcessingResponse,
)


def test_text_uses_value():
    assert HeaderValue(key="foo", value="bar").text() == "bar"


def test_text_falls_back_to_raw_value():
    assert HeaderValue(key="dog", raw_value=b"cat").text() == "cat"


def test_text_prefers_value_over_raw_value():
    assert HeaderValue(key="k", value="a", raw_value=b"b").text() == "a"


def test_text_rejects_invalid_utf8():
    with pytest.raises(UnicodeDecodeError):
        HeaderValue(key="k", raw_value=b"\xff\xfe").text()


def test_set_header_appends_raw_value():
    mutation = HeaderMutation()
    header = mutation.set_header("x-model-name", "some-model")
    assert mutation.set_headers == [HeaderValue(key="x-model-name", raw_value=b"some-model")]
    assert header is mutation.set_headers[0]
    assert header.text() == "some-model"


def test_set_header_keeps_order_and_accepts_bytes():
    mutation = HeaderMutation()
    mutation.set_header("a", "1")
    mutation.set_header("b", b"2")
    assert [h.key for h in mutation.set_headers] == ["a", "b"]
    assert mutation.set_headers[1].raw_value == b"2"


def test_mutations_do_not_share_lists():
    first = HeaderMutation()
    second = HeaderMutation()
    first.set_header("a", "1")
    assert second.set_headers == []


def test_processing_mode_override_differs_from_default():
    override = ProcessingMode(
        response_header_mode=HeaderSendMode.SEND,
        response_body_mode=BodySendMode.STREAMED,
    )
    assert override != ProcessingMode()
    assert override.request_body_mode == ProcessingMode().request_body_mode


def test_processing_request_without_kind():
    request = ProcessingRequest()
    assert request.kind is None
    assert request.headers == []
    assert request.body is None


def test_processing_response_structural_equality():
    body = HttpBody(body=b"x", end_of_stream=True)
    request = ProcessingRequest(kind=MessageKind.REQUEST_BODY, body=body)
    assert request.body.end_of_stream is True
    a = ProcessingResponse(
        kind=MessageKind.REQUEST_BODY,
        response=CommonResponse(header_mutation=HeaderMutation(), clear_route_cache=True),
    )
    b = ProcessingResponse(
        kind=MessageKind.REQUEST_BODY,
        response=CommonResponse(header_mutation=HeaderMutation(), clear_route_cache=True),
    )
    assert a == b
    assert a != ProcessingResponse(kind=MessageKind.RESPONSE_BODY)