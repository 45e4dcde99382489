"""Tests for the Atlassian fetch primitive and endpoint helpers."""

import httpx
import pytest

from aktis.adapters.atlassian_api import AtlassianClient, call_with_retry
from aktis.adapters.auth import AuthState
from aktis.core.errors import (
    AuthExpired,
    NotAuthenticated,
    ParseError,
    RemoteError,
    TransportError,
)


def client_for(store, settings, bundle, handler):
    auth = AuthState(store, settings, transport=httpx.MockTransport(handler))
    auth.apply(bundle, persist=False)
    return AtlassianClient(auth)


def test_request_without_session(store, settings):
    client = AtlassianClient(AuthState(store, settings))
    with pytest.raises(NotAuthenticated):
        client.request("GET", "/rest/api/3/project")


def test_request_sends_browser_headers(collector, fake):
    collector.client.request("GET", "/rest/api/3/project")

    sent = fake.requests[-1]
    assert str(sent.url) == "https://example.atlassian.net/rest/api/3/project"
    assert sent.headers["user-agent"] == "pytest-agent/1.0"
    assert sent.headers["accept"] == "application/json, text/html"


@pytest.mark.parametrize("status", [401, 403])
def test_auth_failures_classified(store, settings, bundle, status):
    client = client_for(store, settings, bundle, lambda r: httpx.Response(status, text="denied"))
    with pytest.raises(AuthExpired) as exc:
        client.get_projects()
    assert exc.value.status == status


def test_other_status_is_remote_error(store, settings, bundle):
    client = client_for(
        store, settings, bundle, lambda r: httpx.Response(500, json={"message": "boom"})
    )
    with pytest.raises(RemoteError) as exc:
        client.get_projects()
    assert exc.value.status == 500
    assert "boom" in exc.value.body


def test_redirect_is_not_followed(store, settings, bundle):
    client = client_for(
        store, settings, bundle, lambda r: httpx.Response(302, headers={"location": "/login"})
    )
    with pytest.raises(RemoteError):
        client.get_projects()


def test_transport_failure(store, settings, bundle):
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    client = client_for(store, settings, bundle, handler)
    with pytest.raises(TransportError) as exc:
        client.get_projects()
    assert isinstance(exc.value.cause, httpx.ConnectTimeout)


def test_request_error_outside_transport_family(store, settings, bundle):
    def handler(request):
        raise httpx.TooManyRedirects("redirect loop", request=request)

    client = client_for(store, settings, bundle, handler)
    with pytest.raises(TransportError) as exc:
        client.get_projects()
    assert isinstance(exc.value.cause, httpx.TooManyRedirects)


def test_undecodable_body_is_parse_error(store, settings, bundle):
    def handler(request):
        return httpx.Response(
            200, headers={"Content-Encoding": "gzip"}, stream=httpx.ByteStream(b"not gzip")
        )

    client = client_for(store, settings, bundle, handler)
    with pytest.raises(ParseError):
        client.get_projects()


def test_invalid_json_is_parse_error(store, settings, bundle):
    client = client_for(store, settings, bundle, lambda r: httpx.Response(200, text="<html>login</html>"))
    with pytest.raises(ParseError) as exc:
        client.get_projects()
    assert "<html>login" in exc.value.snippet


def test_unexpected_shape_is_parse_error(store, settings, bundle):
    client = client_for(store, settings, bundle, lambda r: httpx.Response(200, json={"issues": "nope"}))
    with pytest.raises(ParseError):
        client.search_issues("ENG")


def test_search_issues_query(collector, fake):
    fake.add_project("ENG", issues=3)

    data = collector.client.search_issues("ENG", start_at=0, max_results=2)

    assert [i["key"] for i in data["issues"]] == ["ENG-1", "ENG-2"]
    assert data["isLast"] is False
    params = fake.requests[-1].url.params
    assert params["jql"] == 'project="ENG"'
    assert params["maxResults"] == "2"


def test_count_issues_reports_truncation(collector, fake):
    fake.add_project("ENG", issues=8)

    assert collector.client.count_issues("ENG", limit=5) == (5, False)
    assert collector.client.count_issues("ENG", limit=50) == (8, True)
    assert fake.requests[-1].url.params["fields"] == "-all"


def test_count_pages_reads_total(collector, fake):
    fake.add_space("DOC", pages=4)
    fake.page_totals["DOC"] = 9

    assert collector.client.count_pages("DOC") == 9
    assert fake.requests[-1].url.params["limit"] == "0"


def test_count_pages_without_total(store, settings, bundle):
    client = client_for(store, settings, bundle, lambda r: httpx.Response(200, json={"results": []}))
    with pytest.raises(ParseError):
        client.count_pages("DOC")


def test_get_pages_expands_body_and_space(collector, fake):
    fake.add_space("DOC", pages=2)

    data = collector.client.get_pages("DOC", start=0, limit=10)

    assert [p["id"] for p in data["results"]] == ["doc1", "doc2"]
    assert fake.requests[-1].url.params["expand"] == "body.storage,space"


def test_retry_only_on_transport_errors(settings, monkeypatch):
    monkeypatch.setattr("time.sleep", lambda seconds: None)
    retry_settings = settings.model_copy(update={"HTTP_RETRY_ATTEMPTS": 3})
    calls = []

    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise TransportError(OSError("reset"))
        return "ok"

    assert call_with_retry(retry_settings, flaky) == "ok"
    assert len(calls) == 3

    def expired():
        calls.append(1)
        raise AuthExpired(401)

    calls.clear()
    with pytest.raises(AuthExpired):
        call_with_retry(retry_settings, expired)
    assert len(calls) == 1
