"""
Tests for the Klaviyo HTTP client: cursor extraction, error mapping, paging.
"""

import httpx
import pytest

from app.klaviyo_client import (
    KlaviyoClient,
    UpstreamAuthError,
    UpstreamError,
    UpstreamNotFoundError,
    UpstreamTransientError,
    error_for_response,
    extract_cursor,
)


def test_extract_cursor_reads_bracketed_param():
    url = "https://a.klaviyo.com/api/profiles/?page%5Bcursor%5D=bmV4dDo6aWQ6OjQz&page%5Bsize%5D=20"
    assert extract_cursor(url) == "bmV4dDo6aWQ6OjQz"


def test_extract_cursor_reads_underscore_param():
    assert extract_cursor("https://a.klaviyo.com/api/events?page_cursor=abc123") == "abc123"


@pytest.mark.parametrize("url", [None, "", "https://a.klaviyo.com/api/events", "https://a.klaviyo.com/api/events?page%5Bcursor%5D="])
def test_extract_cursor_without_cursor(url):
    assert extract_cursor(url) is None


@pytest.mark.parametrize("status, expected", [
    (401, UpstreamAuthError),
    (403, UpstreamAuthError),
    (404, UpstreamNotFoundError),
    (429, UpstreamTransientError),
    (503, UpstreamTransientError),
])
def test_error_for_response_maps_status(status, expected):
    resp = httpx.Response(status, json={"errors": [{"detail": "nope"}]})
    err = error_for_response(resp)
    assert isinstance(err, expected)
    assert err.status_code == status
    assert "nope" in str(err)


def test_error_for_response_plain_client_error():
    err = error_for_response(httpx.Response(400, text="bad filter"))
    assert type(err) is UpstreamError
    assert err.status_code == 400
    assert "bad filter" in str(err)


@pytest.mark.anyio
async def test_client_sends_auth_and_revision_headers():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["authorization"] = request.headers["Authorization"]
        seen["revision"] = request.headers["revision"]
        return httpx.Response(200, json={"data": []})

    client = KlaviyoClient("pk_test", "https://a.klaviyo.com/api/", "2025-04-15", transport=httpx.MockTransport(handler))
    await client.get("profiles")
    assert seen["authorization"] == "Klaviyo-API-Key pk_test"
    assert seen["revision"] == "2025-04-15"


@pytest.mark.anyio
async def test_client_raises_transient_on_network_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = KlaviyoClient("pk_test", "https://a.klaviyo.com/api", "2025-04-15", transport=httpx.MockTransport(handler))
    with pytest.raises(UpstreamTransientError):
        await client.get("metrics")


@pytest.mark.anyio
async def test_client_rejects_non_json_body():
    client = KlaviyoClient(
        "pk_test", "https://a.klaviyo.com/api", "2025-04-15",
        transport=httpx.MockTransport(lambda r: httpx.Response(200, text="<html>")),
    )
    with pytest.raises(UpstreamError, match="Malformed"):
        await client.get("metrics")


@pytest.mark.anyio
async def test_list_metrics_follows_cursor(fake_klaviyo):
    fake_klaviyo.add_account("pk_a", "PUB_A")
    for i in range(5):
        fake_klaviyo.add_metric("pk_a", f"M{i}", f"Metric {i}")
    fake_klaviyo.metrics_page_size = 2

    metrics = await fake_klaviyo.client_factory("pk_a").list_metrics()

    assert [m["id"] for m in metrics] == ["M0", "M1", "M2", "M3", "M4"]
    assert len(fake_klaviyo.requests_for("metrics")) == 3
