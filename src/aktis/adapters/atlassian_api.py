import json
from typing import Any, Callable, TypeVar
from urllib.parse import urlencode

import httpx
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..core.config import Settings
from ..core.errors import (
    AuthExpired,
    NotAuthenticated,
    ParseError,
    RemoteError,
    TransportError,
)
from ..core.logging import log
from .auth import AuthState, Session

JIRA_PREFIX = "/rest/api/3"
CONFLUENCE_PREFIX = "/wiki/rest/api"
ISSUE_FIELDS = "key,summary,status,issuetype,project"
PAGE_EXPAND = "body.storage,space"

T = TypeVar("T")


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    log.warning("http.retry", attempt=state.attempt_number, error=str(exc))


def retrying(settings: Settings) -> Retrying:
    """Caller-side retry policy: transport failures only."""
    return Retrying(
        retry=retry_if_exception_type(TransportError),
        stop=stop_after_attempt(settings.HTTP_RETRY_ATTEMPTS),
        wait=wait_exponential(min=1, max=settings.HTTP_RETRY_MAX_WAIT_SECONDS),
        before_sleep=_log_retry,
        reraise=True,
    )


def call_with_retry(settings: Settings, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    return retrying(settings)(fn, *args, **kwargs)


def jql_for_project(project_key: str) -> str:
    return f'project="{project_key}"'


class AtlassianClient:
    """Authenticated requests against the Jira and Confluence REST APIs.

    ``request`` is the single fetch primitive: one attempt, classified
    result. Endpoint helpers only build paths and decode payloads.
    """

    def __init__(self, auth: AuthState):
        self._auth = auth

    # ---------- fetch primitive ----------
    def request(self, method: str, path: str) -> bytes:
        with self._auth.lease() as session:
            if session is None:
                raise NotAuthenticated()
            return self._send(session, method, path)

    def _send(self, session: Session, method: str, path: str) -> bytes:
        url = session.base_url + path
        headers = {
            "User-Agent": session.user_agent,
            "Accept": "application/json, text/html",
            "Accept-Language": "en-US,en;q=0.9",
        }
        try:
            resp = session.client.request(method, url, headers=headers)
        except httpx.DecodingError as e:
            # Body arrived but its Content-Encoding could not be undone
            log.error("http.decode.failed", url=url, error=str(e))
            raise ParseError(f"undecodable response from {path}", str(e)) from e
        except httpx.RequestError as e:
            log.error("http.transport.failed", url=url, error=str(e))
            raise TransportError(e) from e

        if resp.status_code != 200:
            log.error(
                "http.request.failed",
                url=url,
                status=resp.status_code,
                body=resp.text[:500],
            )
            if resp.status_code in (401, 403):
                raise AuthExpired(resp.status_code)
            raise RemoteError(resp.status_code, resp.text)

        return resp.content

    def get_json(self, path: str) -> Any:
        data = self.request("GET", path)
        try:
            return json.loads(data)
        except ValueError as e:
            raise ParseError(f"invalid JSON from {path}", data) from e

    def _get_object(self, path: str, *list_fields: str) -> dict:
        data = self.get_json(path)
        if not isinstance(data, dict):
            raise ParseError(f"expected object from {path}", json.dumps(data))
        for name in list_fields:
            if not isinstance(data.get(name, []), list):
                raise ParseError(f"expected list in '{name}' from {path}", json.dumps(data))
        return data

    # ---------- Jira ----------
    def get_projects(self) -> list[dict]:
        path = f"{JIRA_PREFIX}/project"
        data = self.get_json(path)
        if not isinstance(data, list):
            raise ParseError(f"expected list from {path}", json.dumps(data))
        return data

    def search_issues(
        self,
        project_key: str,
        start_at: int = 0,
        max_results: int = 100,
        fields: str = ISSUE_FIELDS,
    ) -> dict:
        query = urlencode(
            {
                "jql": jql_for_project(project_key),
                "startAt": start_at,
                "maxResults": max_results,
                "fields": fields,
            }
        )
        return self._get_object(f"{JIRA_PREFIX}/search/jql?{query}", "issues")

    def count_issues(self, project_key: str, limit: int = 5000) -> tuple[int, bool]:
        """Issue count by result length, capped at ``limit``.

        The search/jql endpoint has no ``total``; the second value is False
        when the count was truncated at the cap.
        """
        query = urlencode(
            {"jql": jql_for_project(project_key), "maxResults": limit, "fields": "-all"}
        )
        data = self._get_object(f"{JIRA_PREFIX}/search/jql?{query}", "issues")
        return len(data.get("issues") or []), bool(data.get("isLast", True))

    # ---------- Confluence ----------
    def get_spaces(self, start: int = 0, limit: int = 25) -> list[dict]:
        query = urlencode({"start": start, "limit": limit})
        data = self._get_object(f"{CONFLUENCE_PREFIX}/space?{query}", "results")
        return data.get("results") or []

    def count_pages(self, space_key: str) -> int:
        query = urlencode({"spaceKey": space_key, "limit": 0})
        data = self._get_object(f"{CONFLUENCE_PREFIX}/content?{query}")
        total = data.get("total")
        if not isinstance(total, int) or total < 0:
            raise ParseError("missing 'total' in page count", json.dumps(data))
        return total

    def get_pages(self, space_key: str, start: int = 0, limit: int = 25) -> dict:
        query = urlencode(
            {"spaceKey": space_key, "start": start, "limit": limit, "expand": PAGE_EXPAND}
        )
        return self._get_object(f"{CONFLUENCE_PREFIX}/content?{query}", "results")
