"""Confluence spaces and pages."""

import json
import time
from typing import Any, Dict, List, Optional

from ...adapters.atlassian_api import call_with_retry
from ...core.errors import ParseError
from ...core.logging import log
from ...core.models import ContainerRecord
from ...db.engine import PAGES, SPACES
from ..index_sync import BaseIndexSynchronizer
from ..paginator import BaseItemPaginator, ItemPage


def space_key_of(page: Dict[str, Any]) -> Optional[str]:
    space = page.get("space")
    if not isinstance(space, dict):
        return None
    key = space.get("key")
    return key if isinstance(key, str) else None


class SpaceIndexSynchronizer(BaseIndexSynchronizer):
    partition = SPACES
    count_field = "pageCount"
    label = "space"
    count_noun = "pages"

    def fetch_containers(self) -> List[ContainerRecord]:
        limit = self.settings.CONFLUENCE_SPACE_PAGE_SIZE
        containers: List[ContainerRecord] = []
        start = 0

        for _ in range(self.settings.MAX_PAGE_ITERATIONS):
            spaces = call_with_retry(self.settings, self.client.get_spaces, start, limit)
            if not spaces:
                break
            for space in spaces:
                if not isinstance(space, dict) or not space.get("key"):
                    raise ParseError("space without key", json.dumps(space))
                containers.append(ContainerRecord.from_payload(space))
            log.info("confluence.spaces.batch", count=len(spaces), total=len(containers))

            if len(spaces) < limit:
                break
            start += len(spaces)
            if self.settings.INDEX_PAGE_DELAY_MS:
                time.sleep(self.settings.INDEX_PAGE_DELAY_MS / 1000)
        else:
            log.warning("confluence.spaces.iteration_limit", total=len(containers))

        return containers

    def fetch_count(self, key: str) -> int:
        # The reported total is known to drift; a full page fetch corrects it
        return self.client.count_pages(key)


class PagePaginator(BaseItemPaginator):
    partition = PAGES
    container_partition = SPACES
    count_field = "pageCount"
    label = "page"
    tracks_count = True

    @property
    def page_size(self) -> int:
        return self.settings.CONFLUENCE_PAGE_SIZE

    @property
    def page_delay(self) -> float:
        return self.settings.CONFLUENCE_PAGE_DELAY_MS / 1000

    def fetch_page(self, container_key: str, offset: int, limit: int) -> ItemPage:
        data = self.client.get_pages(container_key, start=offset, limit=limit)
        links = data.get("_links")
        return ItemPage(
            items=data.get("results") or [],
            is_last=("next" not in links) if isinstance(links, dict) else None,
        )

    @staticmethod
    def item_key(payload: Dict[str, Any]) -> Optional[str]:
        page_id = payload.get("id")
        if page_id is None or page_id == "":
            return None
        return str(page_id)

    @staticmethod
    def embedded_container_key(payload: Dict[str, Any]) -> Optional[str]:
        return space_key_of(payload)
