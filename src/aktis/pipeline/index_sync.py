import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import List

from ..adapters.atlassian_api import AtlassianClient, call_with_retry
from ..core.config import Settings
from ..core.errors import CollectorError
from ..core.logging import log
from ..core.models import COUNT_UNKNOWN, ContainerRecord, SyncResult
from ..db.engine import CacheStore
from ..obs.progress import ProgressFeed


class BaseIndexSynchronizer:
    """Refresh a container index (projects or spaces) with child counts.

    Subclasses provide the container list fetch and the per-container count.
    Counts run concurrently, one task per container; a failed count leaves
    ``COUNT_UNKNOWN`` for that container and the sync carries on. A failed
    list fetch aborts the whole sync.
    """

    partition: str = ""
    count_field: str = ""
    label: str = "container"
    count_noun: str = "items"

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
        self._lock = threading.Lock()

    # ---------- subclass hooks ----------
    def fetch_containers(self) -> List[ContainerRecord]:
        raise NotImplementedError

    def fetch_count(self, key: str) -> int:
        raise NotImplementedError

    # ---------- algorithm ----------
    def clear(self) -> None:
        self.store.clear(self.partition)
        self.progress.info(f"Cleared {self.label} index", partition=self.partition)

    def sync(self) -> SyncResult:
        log.info("index.sync.start", partition=self.partition)
        self.progress.info(f"Fetching {self.label}s...")

        try:
            containers = self.fetch_containers()
        except CollectorError as e:
            log.error("index.sync.list_failed", partition=self.partition, error=str(e))
            self.progress.error(f"Failed to fetch {self.label}s: {e}")
            raise

        self.progress.info(
            f"Found {len(containers)} {self.label}s, counting in parallel...",
            total=len(containers),
        )
        failed = self._count_all(containers)

        stored = self.store_index(containers)
        log.info(
            "index.sync.done",
            partition=self.partition,
            stored=stored,
            failed_counts=len(failed),
        )
        self.progress.success(f"Successfully synced {stored} {self.label}s")
        return SyncResult(stored=stored, failed_counts=sorted(failed))

    def _count_all(self, containers: List[ContainerRecord]) -> List[str]:
        failed: List[str] = []
        if not containers:
            return failed

        def count_one(index: int) -> None:
            with self._lock:
                key = containers[index].key
            try:
                count = call_with_retry(self.settings, self.fetch_count, key)
            except CollectorError as e:
                log.warning("index.count.failed", container=key, error=str(e))
                with self._lock:
                    containers[index].count = COUNT_UNKNOWN
                    failed.append(key)
            else:
                with self._lock:
                    containers[index].count = count
                log.info("index.count.ok", container=key, count=count)
            if self.settings.COUNT_DELAY_MS:
                time.sleep(self.settings.COUNT_DELAY_MS / 1000)

        # One worker per container, unbounded fan-out
        with ThreadPoolExecutor(
            max_workers=len(containers), thread_name_prefix=f"count-{self.partition}"
        ) as executor:
            futures = [executor.submit(count_one, i) for i in range(len(containers))]
            for future in futures:
                future.result()

        log.info("index.count.done", partition=self.partition, failed=len(failed))
        return failed

    def store_index(self, containers: List[ContainerRecord]) -> int:
        """Upsert every container under its key; absent keys are not pruned."""
        self.store.upsert_many(
            self.partition,
            [(c.key, c.to_record(self.count_field)) for c in containers],
        )
        for c in containers:
            shown = "unknown" if c.count == COUNT_UNKNOWN else str(c.count)
            self.progress.info(
                f"Stored {self.label}: {c.key} ({c.name or 'Unknown'}) - {shown} {self.count_noun}",
                key=c.key,
                count=c.count,
            )
        return len(containers)

    def load_index(self) -> List[ContainerRecord]:
        return [
            ContainerRecord.from_record(r, self.count_field)
            for r in self.store.get_all(self.partition)
            if "key" in r
        ]
