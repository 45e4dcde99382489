import json
from pathlib import Path
from typing import List, Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from ..core.config import SETTINGS, Settings
from ..core.errors import CollectorError
from ..core.logging import log, setup_logging
from ..core.models import COUNT_UNKNOWN, CredentialBundle

app = typer.Typer(add_completion=False, help="Aktis collector CLI")

auth_app = typer.Typer(help="Credential commands")
sync_app = typer.Typer(help="Container index commands")
fetch_app = typer.Typer(help="Item fetch commands")
data_app = typer.Typer(help="Cached data commands")
paths_app = typer.Typer(help="Workspace path commands")
app.add_typer(auth_app, name="auth")
app.add_typer(sync_app, name="sync")
app.add_typer(fetch_app, name="fetch")
app.add_typer(data_app, name="data")
app.add_typer(paths_app, name="paths")

console = Console()

_settings: Settings = SETTINGS


@app.callback()
def _init(
    config_file: Optional[str] = typer.Option(
        None, "--config", help="Config file (.aktis.yaml / aktis.toml auto-discovered)"
    ),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override LOG_LEVEL"),
    log_format: Optional[str] = typer.Option(None, "--log-format", help="json|plain|auto"),
) -> None:
    global _settings
    try:
        _settings = Settings.load_config(
            config_file, LOG_LEVEL=log_level, LOG_FORMAT=log_format
        )
    except (ValidationError, FileNotFoundError, ValueError) as e:
        typer.echo(f"❌ Config error: {e}", err=True)
        raise typer.Exit(1) from e
    setup_logging(_settings.LOG_FORMAT, _settings.LOG_LEVEL)  # type: ignore[arg-type]


def _collector():
    from ..pipeline.runner import Collector

    collector = Collector(_settings)
    collector.start()
    return collector


def _require_auth(collector) -> None:
    if not collector.auth.is_authenticated():
        typer.echo("❌ Not authenticated. Run 'aktis auth load FILE' first.", err=True)
        collector.close()
        raise typer.Exit(1)


@app.command()
def version() -> None:
    from .. import __version__

    typer.echo(__version__)


@app.command()
def config(
    mask_secrets: bool = typer.Option(True, help="Mask secrets in output"),
) -> None:
    for k, v in _settings.model_dump().items():
        if mask_secrets and "TOKEN" in k:
            v = "***"
        typer.echo(f"{k}={v}")


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Override SERVER_HOST"),
    port: Optional[int] = typer.Option(None, "--port", help="Override SERVER_PORT"),
) -> None:
    """Run the HTTP dispatch layer."""
    import uvicorn

    from ..server.app import create_app

    collector = _collector()
    bind_host = host or _settings.SERVER_HOST
    bind_port = port or _settings.SERVER_PORT
    log.info("server.start", host=bind_host, port=bind_port, authenticated=collector.auth.is_authenticated())
    try:
        uvicorn.run(create_app(collector), host=bind_host, port=bind_port, log_config=None)
    finally:
        collector.close()


# ---------- auth ----------
@auth_app.command("load")
def auth_load(path: Path = typer.Argument(..., exists=True, readable=True, help="Bundle JSON")) -> None:
    """Apply and persist a credential bundle exported by the browser extension."""
    try:
        bundle = CredentialBundle.model_validate(json.loads(path.read_text()))
    except (ValueError, ValidationError) as e:
        typer.echo(f"❌ Invalid bundle: {e}", err=True)
        raise typer.Exit(1) from e

    collector = _collector()
    try:
        collector.auth.apply(bundle)
    except ValueError as e:
        typer.echo(f"❌ {e}", err=True)
        raise typer.Exit(1) from e
    finally:
        collector.close()
    typer.echo(f"✅ Authenticated for {bundle.base_url}")


@auth_app.command("show")
def auth_show() -> None:
    """Summarise the stored credential bundle (values redacted)."""
    from ..adapters.auth import describe

    collector = _collector()
    try:
        typer.echo(describe(collector.auth.bundle()))
    finally:
        collector.close()


# ---------- sync ----------
def _run_sync(kind: str) -> None:
    collector = _collector()
    _require_auth(collector)
    synchronizer = collector.projects if kind == "projects" else collector.spaces
    try:
        synchronizer.clear()
        result = synchronizer.sync()
    except CollectorError as e:
        typer.echo(f"❌ {kind} sync failed: {e}", err=True)
        raise typer.Exit(1) from e
    finally:
        collector.close()

    typer.echo(f"✅ Stored {result.stored} {kind}")
    if result.failed_counts:
        typer.echo(f"⚠️  Count unknown for: {', '.join(result.failed_counts)}")


@sync_app.command("projects")
def sync_projects() -> None:
    """Clear and rebuild the project index with issue counts."""
    _run_sync("projects")


@sync_app.command("spaces")
def sync_spaces() -> None:
    """Clear and rebuild the space index with page counts."""
    _run_sync("spaces")


@sync_app.command("all")
def sync_all() -> None:
    """Update both indexes in place; a space failure does not fail the run."""
    collector = _collector()
    _require_auth(collector)
    try:
        results = collector.sync_all()
    except CollectorError as e:
        typer.echo(f"❌ projects sync failed: {e}", err=True)
        raise typer.Exit(1) from e
    finally:
        collector.close()

    for kind, outcome in results.items():
        if isinstance(outcome, CollectorError):
            typer.echo(f"⚠️  {kind} sync failed: {outcome}", err=True)
            continue
        typer.echo(f"✅ Stored {outcome.stored} {kind}")
        if outcome.failed_counts:
            typer.echo(f"⚠️  Count unknown for: {', '.join(outcome.failed_counts)}")


# ---------- fetch ----------
def _run_fetch(kind: str, keys: List[str]) -> None:
    collector = _collector()
    _require_auth(collector)
    try:
        results = collector.fetch_issues(keys) if kind == "issues" else collector.fetch_pages(keys)
    finally:
        collector.close()

    failed = False
    for key, outcome in results.items():
        if isinstance(outcome, CollectorError):
            failed = True
            typer.echo(f"❌ {key}: {outcome}", err=True)
        else:
            extra = ""
            if outcome.duplicates or outcome.misrouted:
                extra = f" ({outcome.duplicates} duplicates, {outcome.misrouted} misrouted)"
            typer.echo(f"✅ {key}: {outcome.stored} {kind}{extra}")
    if failed:
        raise typer.Exit(1)


@fetch_app.command("issues")
def fetch_issues(keys: List[str] = typer.Argument(..., help="Project keys")) -> None:
    """Replace cached issues for the given projects."""
    _run_fetch("issues", keys)


@fetch_app.command("pages")
def fetch_pages(keys: List[str] = typer.Argument(..., help="Space keys")) -> None:
    """Replace cached pages for the given spaces."""
    _run_fetch("pages", keys)


# ---------- data ----------
@data_app.command("clear-all")
def data_clear_all(yes: bool = typer.Option(False, "--yes", help="Skip confirmation")) -> None:
    if not yes and not typer.confirm("Delete all cached projects, issues, spaces and pages?"):
        raise typer.Abort()
    collector = _collector()
    try:
        collector.clear_all()
    finally:
        collector.close()
    typer.echo("✅ All data cleared")


@data_app.command("show")
def data_show(product: str = typer.Argument(..., help="jira|confluence")) -> None:
    """Print the cached container index."""
    if product not in ("jira", "confluence"):
        typer.echo("❌ product must be 'jira' or 'confluence'", err=True)
        raise typer.Exit(2)

    collector = _collector()
    try:
        if product == "jira":
            containers, count_field = collector.store.get_all(collector.projects.partition), "issueCount"
            cached = collector.store.count(collector.issues.partition)
        else:
            containers, count_field = collector.store.get_all(collector.spaces.partition), "pageCount"
            cached = collector.store.count(collector.pages.partition)
    finally:
        collector.close()

    if not containers:
        typer.echo("No containers cached.")
        return

    table = Table(title=f"{product} index")
    table.add_column("KEY")
    table.add_column("NAME")
    table.add_column("COUNT", justify="right")
    for record in containers:
        count = record.get(count_field, COUNT_UNKNOWN)
        table.add_row(
            str(record.get("key", "")),
            str(record.get("name", "")),
            "unknown" if count == COUNT_UNKNOWN else str(count),
        )
    console.print(table)
    typer.echo(f"{len(containers)} containers, {cached} items cached")


# ---------- paths ----------
@paths_app.command()
def show() -> None:
    from ..core import paths

    typer.echo(f"workdir={paths.workdir(_settings)}")
    typer.echo(f"database={paths.database(_settings)}")
    typer.echo(f"logs={paths.logs(_settings)}")


@paths_app.command()
def ensure() -> None:
    from ..core import paths

    paths.ensure_all(_settings)
    typer.echo("✅ Workspace directories ready")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
