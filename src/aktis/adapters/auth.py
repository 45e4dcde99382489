import json
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterator, Optional

import httpx
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from ..core.config import Settings
from ..core.logging import log
from ..core.models import CredentialBundle
from ..db.engine import AUTH, CacheStore

AUTH_KEY = "current"


@dataclass(frozen=True)
class Session:
    """Consistent view of the held credentials at one instant."""

    client: httpx.Client
    base_url: str
    user_agent: str


class AuthState:
    """Holds the browser-derived credential bundle and its HTTP client.

    ``apply`` swaps everything at once under a lock; readers take a
    ``session()`` snapshot so they never mix an old client with a new origin.
    The lock is never held across a network call.

    Requests hold the session through ``lease()``. A replaced session's
    client is closed as soon as its last lease is released, so requests
    already in flight finish on the client they started with.
    """

    def __init__(
        self,
        store: CacheStore,
        settings: Settings,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self._store = store
        self._settings = settings
        self._transport = transport
        self._lock = threading.Lock()
        self._session: Optional[Session] = None
        self._bundle: Optional[CredentialBundle] = None
        # id(session) -> open leases; replaced sessions wait in _retired
        self._leases: Dict[int, int] = {}
        self._retired: Dict[int, Session] = {}

    def _build_client(self, bundle: CredentialBundle) -> httpx.Client:
        cookies = httpx.Cookies()
        host = httpx.URL(bundle.base_url).host
        for cookie in bundle.cookies:
            cookies.set(
                cookie.name,
                cookie.value,
                domain=cookie.domain or host,
                path=cookie.path or "/",
            )
        return httpx.Client(
            cookies=cookies,
            timeout=self._settings.HTTP_TIMEOUT_SECONDS,
            transport=self._transport,
            follow_redirects=False,
        )

    def apply(self, bundle: CredentialBundle, persist: bool = True) -> None:
        """Replace all held state with ``bundle``.

        Raises ValueError for a bundle without a base URL; nothing is changed
        in that case. Failure to persist is logged and does not undo the swap.
        """
        base_url = (bundle.base_url or "").rstrip("/")
        if not base_url:
            raise ValueError("credential bundle has no baseUrl")
        bundle = bundle.model_copy(update={"base_url": base_url})

        client = self._build_client(bundle)
        with self._lock:
            previous = self._session
            self._session = Session(
                client=client, base_url=base_url, user_agent=bundle.user_agent
            )
            self._bundle = bundle
            idle = self._retire(previous)
        self._close_client(idle)

        if bundle.cloud_id is None:
            log.debug("auth.token.missing", token="cloudId")
        if bundle.atl_token is None:
            log.debug("auth.token.missing", token="atlToken")
        log.info("auth.updated", base_url=base_url, cookies=len(bundle.cookies))

        if persist:
            try:
                self._store.upsert(AUTH, AUTH_KEY, bundle.to_record())
            except SQLAlchemyError as e:
                log.error("auth.persist.failed", error=str(e))

    def load(self) -> bool:
        """Reapply a persisted bundle, if any. Returns True when applied."""
        record = self._store.get(AUTH, AUTH_KEY)
        if record is None:
            log.debug("auth.load.none")
            return False
        try:
            bundle = CredentialBundle.model_validate(record)
            self.apply(bundle, persist=False)
        except (ValidationError, ValueError) as e:
            log.warning("auth.load.failed", error=str(e))
            return False
        log.info("auth.load.applied", base_url=bundle.base_url)
        return True

    def is_authenticated(self) -> bool:
        with self._lock:
            return self._session is not None and bool(self._session.base_url)

    def session(self) -> Optional[Session]:
        with self._lock:
            return self._session

    def client(self) -> Optional[httpx.Client]:
        current = self.session()
        return current.client if current else None

    def base_url(self) -> str:
        current = self.session()
        return current.base_url if current else ""

    def user_agent(self) -> str:
        current = self.session()
        return current.user_agent if current else ""

    def bundle(self) -> Optional[CredentialBundle]:
        with self._lock:
            return self._bundle

    @contextmanager
    def lease(self) -> Iterator[Optional[Session]]:
        """Current session, kept open until the block exits."""
        with self._lock:
            current = self._session
            if current is not None:
                self._leases[id(current)] = self._leases.get(id(current), 0) + 1
        try:
            yield current
        finally:
            if current is not None:
                self._release(current)

    def _release(self, session: Session) -> None:
        key = id(session)
        with self._lock:
            self._leases[key] -= 1
            if self._leases[key]:
                return
            del self._leases[key]
            idle = self._retired.pop(key, None)
        self._close_client(idle)

    def _retire(self, session: Optional[Session]) -> Optional[Session]:
        """Called under the lock; returns the session if it can close now."""
        if session is None:
            return None
        if self._leases.get(id(session)):
            self._retired[id(session)] = session
            return None
        return session

    @staticmethod
    def _close_client(session: Optional[Session]) -> None:
        if session is not None:
            session.client.close()
            log.debug("auth.client.closed", base_url=session.base_url)

    def close(self) -> None:
        with self._lock:
            current, self._session, self._bundle = self._session, None, None
            idle = self._retire(current)
        self._close_client(idle)


def describe(bundle: Optional[CredentialBundle]) -> str:
    """Redacted one-line summary for operator output."""
    if bundle is None:
        return "not authenticated"
    return json.dumps(
        {
            "baseUrl": bundle.base_url,
            "userAgent": bundle.user_agent,
            "cookies": sorted(c.name for c in bundle.cookies),
            "tokens": sorted(bundle.tokens),
            "timestamp": bundle.timestamp,
        }
    )
