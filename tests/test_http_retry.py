import httpx
import pytest

from app.core.exceptions import UpstreamError, UpstreamTransientError
from app.modules.deployments.backends.http import RetryingClient, raise_for_upstream


def _client(statuses, sleeps, seen=None):
    remaining = list(statuses)

    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        return httpx.Response(remaining.pop(0), text="upstream says no")

    http_client = httpx.Client(transport=httpx.MockTransport(handler))
    return RetryingClient("https://api.test", "tok", client=http_client, sleep=sleeps.append)


def test_recovers_after_four_transient_failures():
    sleeps = []
    client = _client([503, 502, 503, 503, 200], sleeps)

    response = client.request("GET", "/v1/thing")

    assert response.status_code == 200
    assert sleeps == [3.0, 6.0, 9.0, 12.0]


def test_gives_up_after_five_transient_failures():
    sleeps = []
    seen = []
    client = _client([503] * 6, sleeps, seen)

    with pytest.raises(UpstreamTransientError) as exc_info:
        client.request("POST", "/v1/thing", json={"a": 1})

    assert len(seen) == 5
    assert exc_info.value.upstream_status == 503
    assert exc_info.value.status_code == 503


def test_client_errors_are_not_retried():
    sleeps = []
    seen = []
    client = _client([404, 200], sleeps, seen)

    response = client.request("GET", "/v1/missing")

    assert response.status_code == 404
    assert len(seen) == 1
    assert sleeps == []


def test_requests_carry_bearer_token_and_raw_content():
    seen = []
    client = _client([200], [], seen)

    client.request("PUT", "/v1/fs", content=b"\x1f\x8b", params={"path": "/tmp/a"})

    request = seen[0]
    assert request.headers["Authorization"] == "Bearer tok"
    assert request.headers["Content-Type"] == "application/octet-stream"
    assert request.url.params["path"] == "/tmp/a"
    assert request.content == b"\x1f\x8b"


def test_streamed_success_returns_without_reading_body():
    client = _client([200], [])

    response = client.request("POST", "/v1/start", stream=True)

    assert response.status_code == 200
    assert response.is_closed


def test_raise_for_upstream_includes_status_and_body():
    response = httpx.Response(400, text="bad name", request=httpx.Request("POST", "https://api.test/v1"))

    with pytest.raises(UpstreamError) as exc_info:
        raise_for_upstream(response, "create thing")

    assert "400" in exc_info.value.message
    assert "bad name" in exc_info.value.message
    assert exc_info.value.status_code == 502


@pytest.mark.parametrize("error", [httpx.ConnectError, httpx.ReadTimeout])
@pytest.mark.parametrize("stream", [False, True])
def test_transport_failures_become_upstream_errors(error, stream):
    sleeps = []
    seen = []

    def handler(request):
        seen.append(request)
        raise error("refused", request=request)

    http_client = httpx.Client(transport=httpx.MockTransport(handler))
    client = RetryingClient("https://api.test", "tok", client=http_client, sleep=sleeps.append)

    with pytest.raises(UpstreamError) as exc_info:
        client.request("GET", "/v1/sprites/a", stream=stream)

    assert not isinstance(exc_info.value, UpstreamTransientError)
    assert exc_info.value.status_code == 502
    assert "refused" in exc_info.value.message
    assert len(seen) == 1
    assert sleeps == []
