"""Global test configuration for aktis tests."""

import logging
from typing import Any, Callable, Dict, List, Optional, Set
from urllib.parse import parse_qs

import httpx
import pytest
import structlog

from aktis.core.config import Settings
from aktis.core.models import CredentialBundle
from aktis.db.engine import CacheStore
from aktis.pipeline.runner import Collector

BASE_URL = "https://example.atlassian.net"


@pytest.fixture(scope="session", autouse=True)
def quiet_logging():
    """Keep structlog output to warnings and above during tests."""
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(logging.WARNING),
        cache_logger_on_first_use=False,
    )
    yield
    structlog.reset_defaults()


def make_issue(key: str, project: str) -> Dict[str, Any]:
    return {
        "id": key.split("-")[-1],
        "key": key,
        "fields": {"summary": f"Issue {key}", "project": {"key": project}},
    }


def make_page(page_id: str, space: str) -> Dict[str, Any]:
    return {
        "id": page_id,
        "type": "page",
        "title": f"Page {page_id}",
        "space": {"key": space},
        "body": {"storage": {"value": "<p>hi</p>"}},
    }


class FakeAtlassian:
    """In-memory Jira/Confluence remote served through httpx.MockTransport.

    Knobs:
        fail: container key or request path -> HTTP status to answer with
        broken: container keys whose requests raise a transport error
        garbled: container keys answered with a body that fails gzip decoding
        on_request: called with every request before it is answered
        repeat: container keys whose item search returns the first page forever
        endless: container keys whose item search never runs out
        page_totals: space key -> reported ``total`` (defaults to real size)
        omit_links: leave ``_links`` out of page listings
    """

    def __init__(self) -> None:
        self.projects: List[Dict[str, Any]] = []
        self.issues: Dict[str, List[Dict[str, Any]]] = {}
        self.spaces: List[Dict[str, Any]] = []
        self.pages: Dict[str, List[Dict[str, Any]]] = {}
        self.page_totals: Dict[str, int] = {}
        self.fail: Dict[str, int] = {}
        self.broken: Set[str] = set()
        self.garbled: Set[str] = set()
        self.on_request: Optional[Callable[[httpx.Request], None]] = None
        self.repeat: Set[str] = set()
        self.endless: Set[str] = set()
        self.omit_links = False
        self.requests: List[httpx.Request] = []

    # ---------- seeding ----------
    def add_project(self, key: str, issues: int = 0) -> None:
        self.projects.append({"id": str(len(self.projects) + 1000), "key": key, "name": f"{key} project"})
        self.issues[key] = [make_issue(f"{key}-{i + 1}", key) for i in range(issues)]

    def add_space(self, key: str, pages: int = 0) -> None:
        self.spaces.append({"id": len(self.spaces) + 2000, "key": key, "name": f"{key} space"})
        self.pages[key] = [make_page(f"{key.lower()}{i + 1}", key) for i in range(pages)]

    def remove_project(self, key: str) -> None:
        self.projects = [p for p in self.projects if p["key"] != key]
        self.issues.pop(key, None)

    def requests_to(self, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    # ---------- transport ----------
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        params = {k: v[-1] for k, v in parse_qs(request.url.query.decode()).items()}
        container = _container_of(params)
        if self.on_request is not None:
            self.on_request(request)

        if container in self.broken:
            raise httpx.ConnectError("connection refused", request=request)
        if container in self.garbled:
            return httpx.Response(
                200,
                headers={"Content-Encoding": "gzip"},
                stream=httpx.ByteStream(b"not gzip"),
            )
        for target in (container, path):
            if target and target in self.fail:
                status = self.fail[target]
                return httpx.Response(status, json={"errorMessages": [f"failed with {status}"]})

        if path == "/rest/api/3/project":
            return httpx.Response(200, json=self.projects)
        if path == "/rest/api/3/search/jql":
            return httpx.Response(200, json=self._search(container, params))
        if path == "/wiki/rest/api/space":
            start, limit = int(params.get("start", 0)), int(params.get("limit", 25))
            return httpx.Response(200, json={"results": self.spaces[start : start + limit]})
        if path == "/wiki/rest/api/content":
            return httpx.Response(200, json=self._content(container, params))
        return httpx.Response(404, text="not found")

    def _search(self, key: Optional[str], params: Dict[str, str]) -> Dict[str, Any]:
        start = int(params.get("startAt", 0))
        limit = int(params.get("maxResults", 50))
        issues = self.issues.get(key or "", [])

        if key in self.repeat:
            return {"issues": issues[:limit], "isLast": False}
        if key in self.endless:
            batch = [make_issue(f"{key}-{start + i + 1}", key) for i in range(limit)]
            return {"issues": batch, "isLast": False}

        batch = issues[start : start + limit]
        return {"issues": batch, "isLast": start + len(batch) >= len(issues)}

    def _content(self, key: Optional[str], params: Dict[str, str]) -> Dict[str, Any]:
        pages = self.pages.get(key or "", [])
        limit = int(params.get("limit", 25))
        if limit == 0:
            return {"results": [], "size": 0, "total": self.page_totals.get(key or "", len(pages))}

        start = int(params.get("start", 0))
        batch = pages[start : start + limit]
        data: Dict[str, Any] = {"results": batch, "start": start, "limit": limit, "size": len(batch)}
        if not self.omit_links:
            links: Dict[str, str] = {"base": BASE_URL + "/wiki"}
            if start + len(batch) < len(pages):
                links["next"] = f"/rest/api/content?spaceKey={key}&start={start + len(batch)}"
            data["_links"] = links
        return data


def _container_of(params: Dict[str, str]) -> Optional[str]:
    if "spaceKey" in params:
        return params["spaceKey"]
    jql = params.get("jql", "")
    if jql.startswith('project="'):
        return jql.split('"')[1]
    return None


@pytest.fixture
def settings(tmp_path):
    """Settings with no delays, a single attempt and small pages."""
    return Settings(
        _env_file=None,
        AKTIS_WORKDIR=str(tmp_path / "var"),
        DATABASE_PATH=str(tmp_path / "aktis.db"),
        HTTP_RETRY_ATTEMPTS=1,
        JIRA_PAGE_SIZE=10,
        JIRA_PAGE_DELAY_MS=0,
        CONFLUENCE_SPACE_PAGE_SIZE=2,
        CONFLUENCE_PAGE_SIZE=10,
        CONFLUENCE_PAGE_DELAY_MS=0,
        INDEX_PAGE_DELAY_MS=0,
        COUNT_DELAY_MS=0,
        MAX_PAGE_ITERATIONS=20,
    )


@pytest.fixture
def store(settings):
    s = CacheStore(settings.database_path())
    yield s
    s.close()


@pytest.fixture
def fake():
    return FakeAtlassian()


@pytest.fixture
def bundle():
    return CredentialBundle.model_validate(
        {
            "baseUrl": BASE_URL + "/",
            "userAgent": "pytest-agent/1.0",
            "cookies": [
                {"name": "tenant.session.token", "value": "s3cret", "domain": "example.atlassian.net"},
                {"name": "atlassian.xsrf.token", "value": "xsrf"},
            ],
            "tokens": {"cloudId": "cloud-1", "atlToken": "atl-1"},
            "timestamp": 1700000000,
        }
    )


@pytest.fixture
def unauthenticated(settings, store, fake):
    """Collector wired to the fake remote, with no credentials applied."""
    c = Collector(settings, store=store, transport=fake.transport())
    yield c
    c.auth.close()


@pytest.fixture
def collector(unauthenticated, bundle):
    """Collector wired to the fake remote with a session applied."""
    unauthenticated.auth.apply(bundle)
    return unauthenticated
