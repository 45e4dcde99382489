"""Jira projects and issues."""

import json
from typing import Any, Dict, List, Optional

from ...adapters.atlassian_api import call_with_retry
from ...core.errors import ParseError
from ...core.logging import log
from ...core.models import ContainerRecord
from ...db.engine import ISSUES, PROJECTS
from ..index_sync import BaseIndexSynchronizer
from ..paginator import BaseItemPaginator, ItemPage


def project_key_of(issue: Dict[str, Any]) -> Optional[str]:
    fields = issue.get("fields")
    if not isinstance(fields, dict):
        return None
    project = fields.get("project")
    if not isinstance(project, dict):
        return None
    key = project.get("key")
    return key if isinstance(key, str) else None


class ProjectIndexSynchronizer(BaseIndexSynchronizer):
    partition = PROJECTS
    count_field = "issueCount"
    label = "project"
    count_noun = "issues"

    def fetch_containers(self) -> List[ContainerRecord]:
        # /project is a single unpaginated array
        projects = call_with_retry(self.settings, self.client.get_projects)
        containers = []
        for project in projects:
            if not isinstance(project, dict) or not project.get("key"):
                raise ParseError("project without key", json.dumps(project))
            containers.append(ContainerRecord.from_payload(project))
        log.info("jira.projects.fetched", count=len(containers))
        return containers

    def fetch_count(self, key: str) -> int:
        count, complete = self.client.count_issues(key, self.settings.JIRA_COUNT_LIMIT)
        if not complete:
            log.info(
                "jira.count.truncated",
                project=key,
                count=count,
                limit=self.settings.JIRA_COUNT_LIMIT,
            )
        return count


class IssuePaginator(BaseItemPaginator):
    partition = ISSUES
    container_partition = PROJECTS
    count_field = "issueCount"
    label = "issue"

    @property
    def page_size(self) -> int:
        return self.settings.JIRA_PAGE_SIZE

    @property
    def page_delay(self) -> float:
        return self.settings.JIRA_PAGE_DELAY_MS / 1000

    def fetch_page(self, container_key: str, offset: int, limit: int) -> ItemPage:
        data = self.client.search_issues(container_key, start_at=offset, max_results=limit)
        is_last = data.get("isLast")
        return ItemPage(
            items=data.get("issues") or [],
            is_last=is_last if isinstance(is_last, bool) else None,
        )

    @staticmethod
    def item_key(payload: Dict[str, Any]) -> Optional[str]:
        key = payload.get("key")
        return key if isinstance(key, str) and key else None

    @staticmethod
    def embedded_container_key(payload: Dict[str, Any]) -> Optional[str]:
        return project_key_of(payload)
