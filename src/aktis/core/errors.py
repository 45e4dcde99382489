"""Error taxonomy for remote fetches and synchronization.

Only ``TransportError`` is worth retrying; callers decide whether to.
``DataQualityWarning`` is never raised, it is collected on fetch results.
"""

from dataclasses import dataclass
from typing import Optional

SNIPPET_CHARS = 500


class CollectorError(Exception):
    """Base class for collector failures."""


class NotAuthenticated(CollectorError):
    def __init__(self) -> None:
        super().__init__("not authenticated, capture a browser session first")


class AuthExpired(CollectorError):
    """Remote session rejected the credentials (401/403)."""

    def __init__(self, status: int):
        self.status = status
        super().__init__(f"auth expired (status {status}), re-authenticate")


class RemoteError(CollectorError):
    """Non-2xx response other than an auth failure."""

    def __init__(self, status: int, body: str):
        self.status = status
        self.body = body
        super().__init__(f"HTTP {status}: {body[:SNIPPET_CHARS]}")


class TransportError(CollectorError):
    """Request failed before a response was received, e.g. DNS or timeout."""

    def __init__(self, cause: BaseException):
        self.cause = cause
        super().__init__(f"transport failure: {cause}")


class ParseError(CollectorError):
    """Payload did not have the expected shape."""

    def __init__(self, detail: str, raw: bytes | str = b""):
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        self.detail = detail
        self.snippet = raw[:SNIPPET_CHARS]
        super().__init__(f"{detail}: {self.snippet!r}")


@dataclass(frozen=True)
class DataQualityWarning:
    """Misrouted item or duplicate page observed during a fetch."""

    kind: str  # "misrouted" | "duplicate"
    container_key: str
    item_key: Optional[str] = None
    detail: str = ""
