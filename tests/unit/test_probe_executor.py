import hashlib
import json

import httpx
import pytest

from pivot.base.errors import BaselineCaptureFailedError, ErrorCode, ProbeExecutionError
from pivot.contracts.enums import InjectionPoint
from pivot.contracts.models import RequestDirectives, RequestOptions
from pivot.net import HttpProbeExecutor, build_request, detect_error_class

TARGET = "https://shop.example/search"


class Recorder:
    def __init__(self, responder=None):
        self.requests = []
        self.responder = responder or (lambda request: httpx.Response(200, text="ok"))

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responder(request)


class Sleeps:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def _executor(config, handler, sleep=None):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpProbeExecutor(client=client, config=config, sleep=sleep or Sleeps())


# ---------------------------------------------------------------------------
# Request building
# ---------------------------------------------------------------------------


def test_query_injection_uses_param_name():
    kwargs = build_request(TARGET, RequestOptions(param_name="term"), "1' OR '1'='1")
    assert kwargs["method"] == "GET"
    assert kwargs["params"] == {"term": "1' OR '1'='1"}


def test_clean_request_injects_nothing():
    kwargs = build_request(TARGET, RequestOptions(body="q={{payload}}", method="POST"), None)
    assert "params" not in kwargs
    assert kwargs["content"] == b"q="


def test_body_placeholder_receives_payload():
    kwargs = build_request(TARGET, RequestOptions(body='{"q": "{{payload}}"}', method="POST"), "abc")
    assert kwargs["content"] == b'{"q": "abc"}'


def test_raw_query_appends_to_existing_query():
    options = RequestOptions(injection_point=InjectionPoint.RAW_QUERY)
    kwargs = build_request(f"{TARGET}?page=1", options, "id=1&id=2")
    assert kwargs["url"] == f"{TARGET}?page=1&id=1&id=2"


def test_path_and_header_injection():
    path = build_request("https://shop.example/items/{id}", RequestOptions(injection_point=InjectionPoint.PATH, param_name="id"), "../etc")
    assert path["url"] == "https://shop.example/items/..%2Fetc"

    header = build_request(TARGET, RequestOptions(injection_point=InjectionPoint.HEADER, param_name="X-Search"), "<x>")
    assert header["headers"]["X-Search"] == "<x>"


def test_body_injection_respects_json_content_type():
    options = RequestOptions(
        method="POST",
        injection_point=InjectionPoint.BODY,
        headers={"Content-Type": "application/json"},
    )
    kwargs = build_request(TARGET, options, "x'")
    assert json.loads(kwargs["content"]) == {"q": "x'"}


def test_directives_override_method_headers_and_injection_point():
    directives = RequestDirectives(
        method="POST",
        headers={"X-HTTP-Method-Override": "GET"},
        content_type="application/xml",
        injection_point=InjectionPoint.BODY,
    )
    kwargs = build_request(TARGET, RequestOptions(), "<q>1</q>", directives, user_agent="ua/1")
    assert kwargs["method"] == "POST"
    assert kwargs["headers"]["X-HTTP-Method-Override"] == "GET"
    assert kwargs["headers"]["Content-Type"] == "application/xml"
    assert kwargs["headers"]["User-Agent"] == "ua/1"
    assert kwargs["content"] == b"<q>1</q>"


@pytest.mark.parametrize(
    "status,body,expected",
    [
        (200, "You have an error in your SQL syntax", "SQL_ERROR"),
        (500, "jinja2.exceptions.TemplateSyntaxError", "TEMPLATE_ERROR"),
        (403, "Request blocked by firewall", "WAF_BLOCK"),
        (403, "nope", "CLIENT_ERROR_403"),
        (429, "", "RATE_LIMIT"),
        (401, "", "AUTH_FAILURE"),
        (503, "", "SERVER_ERROR_503"),
        (302, "", "REDIRECT"),
        (200, "fine", None),
    ],
)
def test_detect_error_class(status, body, expected):
    assert detect_error_class(status, body) == expected


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


@pytest.mark.anyio
async def test_execute_fingerprints_response(config):
    body = "You have an error in your SQL syntax near 'x'"
    recorder = Recorder(
        lambda request: httpx.Response(
            500,
            text=body,
            headers={"Date": "Mon, 01 Jan 2024 00:00:00 GMT", "Server": "nginx", "X-Request-Id": "abc"},
        )
    )
    executor = _executor(config, recorder)
    try:
        fp = await executor.execute(TARGET, RequestOptions(), "x'")
    finally:
        await executor.aclose()

    assert fp.status_code == 500
    assert fp.error_class == "SQL_ERROR"
    assert fp.body_hash == hashlib.sha256(body.encode()).hexdigest()
    assert fp.body_length == len(body)
    assert fp.headers.get("server") == "nginx"
    assert "date" not in fp.headers
    assert "x-request-id" not in fp.headers
    assert len(fp.response_time_ms) == 1
    assert recorder.requests[0].url.params["q"] == "x'"


@pytest.mark.anyio
async def test_body_sample_is_truncated(config):
    executor = _executor(config, Recorder(lambda request: httpx.Response(200, text="a" * 5000)))
    fp = await executor.execute(TARGET, RequestOptions(), "x")
    assert len(fp.raw_body_sample) == config.probe.body_sample_chars
    assert fp.body_length == 5000


@pytest.mark.anyio
async def test_timeout_maps_to_probe_timeout(config):
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    executor = _executor(config, handler)
    with pytest.raises(ProbeExecutionError) as exc_info:
        await executor.execute(TARGET, RequestOptions(), "x")
    assert exc_info.value.code == ErrorCode.PROBE_TIMEOUT
    assert exc_info.value.retryable


@pytest.mark.anyio
async def test_transport_failure_maps_to_probe_error(config):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    executor = _executor(config, handler)
    with pytest.raises(ProbeExecutionError) as exc_info:
        await executor.execute(TARGET, RequestOptions(), "x")
    assert exc_info.value.code == ErrorCode.PROBE_TRANSPORT_FAILED


@pytest.mark.anyio
async def test_delay_and_concurrency_directives(config):
    recorder = Recorder()
    sleeps = Sleeps()
    executor = _executor(config, recorder, sleeps)

    fp = await executor.execute(TARGET, RequestOptions(), "x", RequestDirectives(delay_seconds=1.5, concurrency=3))

    assert sleeps.calls == [1.5]
    assert len(recorder.requests) == 3
    assert len(fp.response_time_ms) == 3


@pytest.mark.anyio
async def test_chunked_directive_streams_body(config):
    recorder = Recorder()
    executor = _executor(config, recorder)
    options = RequestOptions(method="POST", body="q={{payload}}")
    await executor.execute(TARGET, options, "abcdef", RequestDirectives(chunk_size=4))

    request = recorder.requests[0]
    assert request.content == b"q=abcdef"
    assert request.headers.get("transfer-encoding") == "chunked"


# ---------------------------------------------------------------------------
# Baseline capture
# ---------------------------------------------------------------------------


@pytest.mark.anyio
async def test_capture_baseline_skips_failed_samples(config):
    calls = {"n": 0}

    def handler(request):
        calls["n"] += 1
        if calls["n"] == 2:
            raise httpx.ConnectError("reset", request=request)
        return httpx.Response(200, text="home")

    sleeps = Sleeps()
    executor = _executor(config, handler, sleeps)
    fingerprints, stats = await executor.capture_baseline(TARGET, RequestOptions(), 3)

    assert len(fingerprints) == 2
    assert stats.sample_count == 2
    assert sleeps.calls == [config.baseline.request_delay_seconds] * 2


@pytest.mark.anyio
async def test_capture_baseline_fails_when_every_sample_fails(config):
    def handler(request):
        raise httpx.ConnectError("down", request=request)

    executor = _executor(config, handler)
    with pytest.raises(BaselineCaptureFailedError):
        await executor.capture_baseline(TARGET, RequestOptions(), 2)
