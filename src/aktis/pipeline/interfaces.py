"""Capability interfaces the dispatch layer depends on.

Each container kind provides one of each; nothing probes for methods at
runtime.
"""

from typing import Any, Dict, List, Protocol

from ..core.models import FetchResult, SyncResult


class IndexSynchronizer(Protocol):
    partition: str

    def clear(self) -> None:
        """Drop the cached container index."""
        ...

    def sync(self) -> SyncResult:
        """Fetch all containers, count their children, store the index."""
        ...


class ItemPaginator(Protocol):
    partition: str

    def fetch_all(self, container_key: str) -> FetchResult:
        """Replace the cached items of one container with a fresh fetch."""
        ...

    def items_for(self, container_keys: List[str]) -> List[Dict[str, Any]]:
        """Cached items belonging to any of the given containers."""
        ...
