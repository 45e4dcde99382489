import json
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from ..adapters.atlassian_api import AtlassianClient, call_with_retry
from ..core.config import Settings
from ..core.errors import CollectorError, DataQualityWarning, ParseError
from ..core.logging import log
from ..core.models import ChildItem, FetchResult
from ..db.engine import CacheStore
from ..obs.progress import ProgressFeed


@dataclass
class ItemPage:
    items: List[Dict[str, Any]]
    is_last: Optional[bool] = None  # None when the endpoint has no such signal


class BaseItemPaginator:
    """Fetch every child item of one container, page by page.

    Previously stored items of the container are deleted first. Pages are
    requested sequentially in increasing offset order; the loop stops on an
    empty page, a page of nothing but already-seen keys, the remote last-page
    flag, a short page, or the iteration bound.
    """

    partition: str = ""
    container_partition: str = ""
    count_field: str = ""
    label: str = "item"
    # Overwrite the container's stored count with the fetched total
    tracks_count: bool = False

    def __init__(
        self,
        client: AtlassianClient,
        store: CacheStore,
        settings: Settings,
        progress: ProgressFeed,
    ):
        self.client = client
        self.store = store
        self.settings = settings
        self.progress = progress

    # ---------- subclass hooks ----------
    @property
    def page_size(self) -> int:
        raise NotImplementedError

    @property
    def page_delay(self) -> float:
        raise NotImplementedError

    def fetch_page(self, container_key: str, offset: int, limit: int) -> ItemPage:
        raise NotImplementedError

    @staticmethod
    def item_key(payload: Dict[str, Any]) -> Optional[str]:
        raise NotImplementedError

    @staticmethod
    def embedded_container_key(payload: Dict[str, Any]) -> Optional[str]:
        raise NotImplementedError

    # ---------- helpers ----------
    def owner_of(self, record: Dict[str, Any]) -> Optional[str]:
        """Container a stored record belongs to."""
        owner = record.get("containerKey")
        if isinstance(owner, str):
            return owner
        return self.embedded_container_key(record)

    def delete_existing(self, container_key: str) -> int:
        deleted = self.store.delete_matching(
            self.partition,
            lambda record: container_key
            in (record.get("containerKey"), self.embedded_container_key(record)),
        )
        log.info("items.deleted", partition=self.partition, container=container_key, deleted=deleted)
        return deleted

    def items_for(self, container_keys: List[str]) -> List[Dict[str, Any]]:
        wanted = set(container_keys)
        return [r for r in self.store.get_all(self.partition) if self.owner_of(r) in wanted]

    # ---------- algorithm ----------
    def fetch_all(self, container_key: str) -> FetchResult:
        self.delete_existing(container_key)
        self.progress.info(f"Fetching {self.label}s for {container_key}", container=container_key)

        result = FetchResult(container_key=container_key)
        seen: set[str] = set()
        offset = 0
        limit = self.page_size

        try:
            for iteration in range(self.settings.MAX_PAGE_ITERATIONS):
                log.info(
                    "items.page.request",
                    container=container_key,
                    offset=offset,
                    limit=limit,
                    iteration=iteration + 1,
                )
                page = call_with_retry(
                    self.settings, self.fetch_page, container_key, offset, limit
                )
                result.requests += 1

                if not page.items:
                    result.stop_reason = "empty"
                    break

                new_items, duplicates = self._accept(container_key, page.items, seen, result)

                if duplicates and not new_items:
                    log.info(
                        "items.page.all_duplicates",
                        container=container_key,
                        duplicates=duplicates,
                        total=result.stored,
                    )
                    result.stop_reason = "all_duplicates"
                    break

                self.store.upsert_many(
                    self.partition, [(item.key, item.to_record()) for item in new_items]
                )
                result.stored += len(new_items)
                log.info(
                    "items.page.stored",
                    container=container_key,
                    batch=len(page.items),
                    new=len(new_items),
                    duplicates=duplicates,
                    total=result.stored,
                )
                self.progress.info(
                    f"Stored {len(new_items)} new {self.label}s for {container_key} (total: {result.stored})",
                    container=container_key,
                    total=result.stored,
                )

                if page.is_last:
                    result.stop_reason = "is_last"
                    break
                if len(page.items) < limit:
                    result.stop_reason = "short_page"
                    break

                offset += len(page.items)
                if self.page_delay:
                    time.sleep(self.page_delay)
            else:
                result.stop_reason = "iteration_limit"
                log.warning(
                    "items.iteration_limit",
                    container=container_key,
                    iterations=self.settings.MAX_PAGE_ITERATIONS,
                    total=result.stored,
                )
        except CollectorError as e:
            log.error("items.fetch.failed", container=container_key, error=str(e))
            self.progress.error(f"Failed to fetch {self.label}s for {container_key}: {e}")
            raise

        if self.tracks_count:
            self._record_count(container_key, result.stored)

        log.info(
            "items.fetch.done",
            container=container_key,
            total=result.stored,
            duplicates=result.duplicates,
            misrouted=result.misrouted,
            stop_reason=result.stop_reason,
        )
        self.progress.success(
            f"Completed: {result.stored} {self.label}s for {container_key}",
            container=container_key,
            total=result.stored,
        )
        return result

    def _accept(
        self,
        container_key: str,
        payloads: List[Dict[str, Any]],
        seen: set[str],
        result: FetchResult,
    ) -> Tuple[List[ChildItem], int]:
        """New items of one page and the duplicate count; misrouting is recorded."""
        new_items: List[ChildItem] = []
        duplicates = 0
        for payload in payloads:
            if not isinstance(payload, dict):
                raise ParseError(f"{self.label} is not an object", json.dumps(payload))
            key = self.item_key(payload)
            if key is None:
                log.warning("items.missing_key", container=container_key)
                continue
            if key in seen:
                duplicates += 1
                continue
            seen.add(key)

            item = ChildItem(
                key=key,
                container_key=container_key,
                embedded_container_key=self.embedded_container_key(payload),
                payload=payload,
            )
            if item.misrouted:
                result.misrouted += 1
                result.warnings.append(
                    DataQualityWarning(
                        kind="misrouted",
                        container_key=container_key,
                        item_key=key,
                        detail=f"payload reports container {item.embedded_container_key}",
                    )
                )
                log.warning(
                    "items.misrouted",
                    requested=container_key,
                    actual=item.embedded_container_key,
                    item=key,
                )
            new_items.append(item)

        if duplicates:
            result.duplicates += duplicates
            result.warnings.append(
                DataQualityWarning(
                    kind="duplicate",
                    container_key=container_key,
                    detail=f"{duplicates} already-seen {self.label}s in page",
                )
            )
            log.warning("items.duplicates", container=container_key, duplicates=duplicates)
        return new_items, duplicates

    def _record_count(self, container_key: str, count: int) -> None:
        def patch(record: Dict[str, Any]) -> Dict[str, Any]:
            return {**record, self.count_field: count}

        try:
            updated = self.store.update(self.container_partition, container_key, patch)
        except SQLAlchemyError as e:
            log.warning("items.count.update_failed", container=container_key, error=str(e))
            return
        if updated:
            log.info("items.count.updated", container=container_key, count=count)
        else:
            log.debug("items.count.no_container", container=container_key)
