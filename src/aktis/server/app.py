"""HTTP dispatch layer.

Mutation endpoints validate synchronously, answer "started" and run the
actual fetch as a background task; progress is observed by polling the
data endpoints or ``/api/logs``.
"""

import math
from typing import Any, Callable, Dict, List, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .. import __version__
from ..core.errors import CollectorError
from ..core.logging import log
from ..core.models import CredentialBundle
from ..pipeline.runner import Collector, unique_keys

NOT_AUTHENTICATED = "Not authenticated. Please capture authentication first."


class ProjectKeysRequest(BaseModel):
    project_keys: List[str] = Field(default=[], alias="projectKeys")


class SpaceKeysRequest(BaseModel):
    space_keys: List[str] = Field(default=[], alias="spaceKeys")


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"status": "error", "message": message})


def _started(message: str) -> JSONResponse:
    return JSONResponse(status_code=202, content={"status": "started", "message": message})


def _paginate(records: List[Dict[str, Any]], page: int, page_size: int) -> Dict[str, Any]:
    total = len(records)
    start = page * page_size
    return {
        "data": records[start : start + page_size],
        "pagination": {
            "page": page,
            "pageSize": page_size,
            "totalItems": total,
            "totalPages": math.ceil(total / page_size) if total else 0,
        },
    }


def _run_logged(name: str, fn: Callable[..., Any], *args: Any) -> None:
    """Background task body; failures after "started" only reach the log."""
    try:
        fn(*args)
    except CollectorError as e:
        log.error("task.failed", task=name, error=str(e))
    except Exception:
        log.exception("task.crashed", task=name)


def create_app(collector: Collector) -> FastAPI:
    app = FastAPI(title="Aktis Collector", version=__version__)
    app.state.collector = collector

    @app.exception_handler(RequestValidationError)
    async def _invalid_request(request: Request, exc: RequestValidationError) -> JSONResponse:
        return _error(400, "Invalid request")

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return _error(exc.status_code, str(exc.detail))

    def require_auth() -> None:
        if not collector.auth.is_authenticated():
            raise StarletteHTTPException(status_code=401, detail=NOT_AUTHENTICATED)

    # ---------- auth ----------
    def _apply_auth(bundle: CredentialBundle) -> JSONResponse:
        try:
            collector.auth.apply(bundle)
        except ValueError as e:
            log.warning("api.auth.rejected", error=str(e))
            return _error(400, str(e))
        collector.progress.info(f"Authentication updated for {collector.auth.base_url()}")
        return JSONResponse(
            content={
                "status": "authenticated",
                "message": "Authentication captured successfully",
            }
        )

    @app.post("/api/auth")
    def auth_update(bundle: CredentialBundle) -> JSONResponse:
        return _apply_auth(bundle)

    @app.post("/api/receiver")
    def auth_receiver(bundle: CredentialBundle) -> JSONResponse:
        return _apply_auth(bundle)

    # ---------- index refresh ----------
    def _refresh(
        name: str, clear: Callable[[], None], sync: Callable[[], Any], tasks: BackgroundTasks
    ) -> JSONResponse:
        # Index is empty before the response is sent
        try:
            clear()
        except SQLAlchemyError as e:
            log.error("api.cache.clear_failed", task=name, error=str(e))
            return _error(500, f"Failed to clear {name} cache")
        tasks.add_task(_run_logged, f"{name}.refresh", sync)
        return _started(f"{name.capitalize()} cache refresh started")

    @app.post("/api/projects/refresh-cache", dependencies=[Depends(require_auth)])
    def refresh_projects(tasks: BackgroundTasks) -> JSONResponse:
        return _refresh("projects", collector.projects.clear, collector.projects.sync, tasks)

    @app.post("/api/spaces/refresh-cache", dependencies=[Depends(require_auth)])
    def refresh_spaces(tasks: BackgroundTasks) -> JSONResponse:
        return _refresh("spaces", collector.spaces.clear, collector.spaces.sync, tasks)

    # Non-clearing variants: entries missing from the remote stay cached
    @app.post("/api/projects/sync", dependencies=[Depends(require_auth)])
    def sync_projects(tasks: BackgroundTasks) -> JSONResponse:
        tasks.add_task(_run_logged, "projects.sync", collector.projects.sync)
        return _started("Project sync started")

    @app.post("/api/spaces/sync", dependencies=[Depends(require_auth)])
    def sync_spaces(tasks: BackgroundTasks) -> JSONResponse:
        tasks.add_task(_run_logged, "spaces.sync", collector.spaces.sync)
        return _started("Space sync started")

    @app.api_route("/api/scrape", methods=["GET", "POST"], dependencies=[Depends(require_auth)])
    def scrape(tasks: BackgroundTasks) -> JSONResponse:
        tasks.add_task(_run_logged, "scrape", collector.sync_all)
        return _started("Scraping triggered")

    # ---------- item fan-out ----------
    @app.post("/api/projects/get-issues", dependencies=[Depends(require_auth)])
    def get_issues(body: ProjectKeysRequest, tasks: BackgroundTasks) -> JSONResponse:
        keys = unique_keys(body.project_keys)
        if not keys:
            return _error(400, "No projects specified")
        tasks.add_task(_run_logged, "issues.fetch", collector.fetch_issues, keys)
        return _started("Fetching issues for selected projects")

    @app.post("/api/spaces/get-pages", dependencies=[Depends(require_auth)])
    def get_pages(body: SpaceKeysRequest, tasks: BackgroundTasks) -> JSONResponse:
        keys = unique_keys(body.space_keys)
        if not keys:
            return _error(400, "No spaces specified")
        tasks.add_task(_run_logged, "pages.fetch", collector.fetch_pages, keys)
        return _started("Fetching pages for selected spaces")

    # ---------- cached data ----------
    @app.post("/api/data/clear-all")
    def clear_all() -> JSONResponse:
        try:
            collector.clear_all()
        except SQLAlchemyError as e:
            log.error("api.clear_all.failed", error=str(e))
            return _error(500, "Failed to clear data")
        return JSONResponse(content={"status": "success", "message": "All data cleared successfully"})

    @app.get("/api/data/jira")
    def jira_data() -> Dict[str, Any]:
        return collector.jira_data()

    @app.get("/api/data/jira/issues")
    def jira_issues(project_key: Optional[List[str]] = Query(None, alias="projectKey")) -> Dict[str, Any]:
        return {"issues": collector.jira_data(project_key)["issues"]}

    @app.get("/api/data/confluence")
    def confluence_data() -> Dict[str, Any]:
        return collector.confluence_data()

    @app.get("/api/data/confluence/pages")
    def confluence_pages(space_key: Optional[List[str]] = Query(None, alias="spaceKey")) -> Dict[str, Any]:
        return {"pages": collector.confluence_data(space_key)["pages"]}

    # ---------- paginated listings ----------
    @app.get("/api/collector/projects")
    def collector_projects(
        page: int = Query(0, ge=0), page_size: int = Query(100, ge=1, le=1000, alias="pageSize")
    ) -> Dict[str, Any]:
        return _paginate(collector.store.get_all(collector.projects.partition), page, page_size)

    @app.get("/api/collector/spaces")
    def collector_spaces(
        page: int = Query(0, ge=0), page_size: int = Query(100, ge=1, le=1000, alias="pageSize")
    ) -> Dict[str, Any]:
        return _paginate(collector.store.get_all(collector.spaces.partition), page, page_size)

    @app.get("/api/collector/issues")
    def collector_issues(
        project_key: str = Query(..., alias="projectKey"),
        page: int = Query(0, ge=0),
        page_size: int = Query(50, ge=1, le=1000, alias="pageSize"),
    ) -> Dict[str, Any]:
        return _paginate(collector.issues.items_for([project_key]), page, page_size)

    @app.get("/api/collector/pages")
    def collector_pages(
        space_key: str = Query(..., alias="spaceKey"),
        page: int = Query(0, ge=0),
        page_size: int = Query(50, ge=1, le=1000, alias="pageSize"),
    ) -> Dict[str, Any]:
        return _paginate(collector.pages.items_for([space_key]), page, page_size)

    # ---------- service ----------
    @app.get("/api/logs")
    def recent_logs(since: int = Query(0, ge=0)) -> Dict[str, Any]:
        events = collector.progress.since(since)
        return {
            "events": [e.model_dump(mode="json") for e in events],
            "last": collector.progress.last_seq,
        }

    @app.get("/api/status")
    def status() -> Dict[str, Any]:
        return collector.status()

    @app.get("/api/health")
    def health() -> Dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/version")
    def version() -> Dict[str, str]:
        return {"version": __version__}

    return app
