"""Composition root: one store, one auth holder, one synchronizer and one
paginator per container kind, plus the fan-out used by the dispatch layer.
"""

from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Iterable, List, Optional, Union

import httpx

from ..adapters.atlassian_api import AtlassianClient
from ..adapters.auth import AuthState
from ..core.config import Settings
from ..core.errors import CollectorError
from ..core.logging import log
from ..core.models import FetchResult, SyncResult
from ..db.engine import DATA_PARTITIONS, PARTITIONS, CacheStore
from ..obs.progress import ProgressFeed
from .interfaces import IndexSynchronizer, ItemPaginator
from .steps.confluence import PagePaginator, SpaceIndexSynchronizer
from .steps.jira import IssuePaginator, ProjectIndexSynchronizer

FanOutResult = Dict[str, Union[FetchResult, CollectorError]]


def unique_keys(keys: Iterable[str]) -> List[str]:
    """Drop blanks and repeats, keeping first-seen order."""
    seen: Dict[str, None] = {}
    for key in keys:
        key = (key or "").strip()
        if key:
            seen.setdefault(key, None)
    return list(seen)


class Collector:
    def __init__(
        self,
        settings: Settings,
        store: Optional[CacheStore] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.settings = settings
        self.store = store or CacheStore(settings.database_path(), PARTITIONS)
        self.progress = ProgressFeed(settings.PROGRESS_BUFFER)
        self.auth = AuthState(self.store, settings, transport=transport)
        self.client = AtlassianClient(self.auth)

        parts = (self.client, self.store, settings, self.progress)
        self.projects: IndexSynchronizer = ProjectIndexSynchronizer(*parts)
        self.spaces: IndexSynchronizer = SpaceIndexSynchronizer(*parts)
        self.issues: ItemPaginator = IssuePaginator(*parts)
        self.pages: ItemPaginator = PagePaginator(*parts)

    def start(self) -> bool:
        """Reapply persisted credentials before any fetch."""
        return self.auth.load()

    def fan_out(self, paginator: ItemPaginator, keys: Iterable[str]) -> FanOutResult:
        """Fetch items for every key concurrently, one worker per key.

        Failures are isolated per container and returned in place of a result.
        """
        keys = unique_keys(keys)
        results: FanOutResult = {}
        if not keys:
            return results

        def run_one(key: str) -> None:
            log.info("fanout.start", partition=paginator.partition, container=key)
            try:
                results[key] = paginator.fetch_all(key)
            except CollectorError as e:
                log.error("fanout.failed", partition=paginator.partition, container=key, error=str(e))
                results[key] = e
            else:
                log.info("fanout.done", partition=paginator.partition, container=key)

        with ThreadPoolExecutor(
            max_workers=len(keys), thread_name_prefix=f"fetch-{paginator.partition}"
        ) as executor:
            for future in [executor.submit(run_one, key) for key in keys]:
                future.result()

        log.info("fanout.complete", partition=paginator.partition, containers=len(keys))
        return results

    def refresh_projects(self) -> None:
        self.projects.sync()

    def refresh_spaces(self) -> None:
        self.spaces.sync()

    def sync_all(self) -> Dict[str, Union[SyncResult, CollectorError]]:
        """Project index, then space index, without clearing either.

        A project failure propagates and spaces are not attempted; a space
        failure is logged and returned in place of its result.
        """
        log.info("sync.all.start")
        results: Dict[str, Union[SyncResult, CollectorError]] = {
            "projects": self.projects.sync()
        }
        try:
            results["spaces"] = self.spaces.sync()
        except CollectorError as e:
            log.error("sync.all.spaces_failed", error=str(e))
            results["spaces"] = e
        log.info("sync.all.done")
        return results

    def fetch_issues(self, project_keys: Iterable[str]) -> FanOutResult:
        return self.fan_out(self.issues, project_keys)

    def fetch_pages(self, space_keys: Iterable[str]) -> FanOutResult:
        return self.fan_out(self.pages, space_keys)

    # ---------- cached data ----------
    def jira_data(self, project_keys: Optional[List[str]] = None) -> Dict[str, Any]:
        projects = self.store.get_all(self.projects.partition)
        if project_keys:
            issues = self.issues.items_for(project_keys)
        else:
            issues = self.store.get_all(self.issues.partition)
        return {"projects": projects, "issues": issues}

    def confluence_data(self, space_keys: Optional[List[str]] = None) -> Dict[str, Any]:
        spaces = self.store.get_all(self.spaces.partition)
        if space_keys:
            pages = self.pages.items_for(space_keys)
        else:
            pages = self.store.get_all(self.pages.partition)
        return {"spaces": spaces, "pages": pages}

    def clear_all(self) -> None:
        self.store.clear_all(DATA_PARTITIONS)
        self.progress.info("All data cleared")

    def status(self) -> Dict[str, Any]:
        return {
            "authenticated": self.auth.is_authenticated(),
            "baseUrl": self.auth.base_url() or None,
            "counts": {name: self.store.count(name) for name in DATA_PARTITIONS},
        }

    def close(self) -> None:
        self.auth.close()
        self.store.close()
