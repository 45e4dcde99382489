"""Tests for the aktis CLI."""

import json

import pytest
from typer.testing import CliRunner

from aktis import __version__
from aktis.cli import main as cli
from aktis.pipeline import runner

runner_cli = CliRunner()


@pytest.fixture(autouse=True)
def cli_env(tmp_path, monkeypatch, fake):
    """Point the CLI at a temp database and the fake remote."""
    monkeypatch.chdir(tmp_path)
    for name, value in {
        "DATABASE_PATH": str(tmp_path / "cli.db"),
        "AKTIS_WORKDIR": str(tmp_path / "var"),
        "HTTP_RETRY_ATTEMPTS": "1",
        "JIRA_PAGE_DELAY_MS": "0",
        "CONFLUENCE_PAGE_DELAY_MS": "0",
        "INDEX_PAGE_DELAY_MS": "0",
        "COUNT_DELAY_MS": "0",
    }.items():
        monkeypatch.setenv(name, value)

    monkeypatch.setattr(cli, "setup_logging", lambda *a, **k: None)
    original = runner.Collector
    monkeypatch.setattr(
        runner, "Collector", lambda settings: original(settings, transport=fake.transport())
    )


@pytest.fixture
def bundle_file(tmp_path, bundle):
    path = tmp_path / "bundle.json"
    path.write_text(json.dumps(bundle.to_record()))
    return path


def invoke(*args):
    return runner_cli.invoke(cli.app, list(args))


def test_version():
    result = invoke("version")
    assert result.exit_code == 0
    assert __version__ in result.output


def test_config_lists_settings():
    result = invoke("config")
    assert result.exit_code == 0
    assert "JIRA_PAGE_SIZE=100" in result.output
    assert "COUNT_DELAY_MS=0" in result.output


def test_auth_load_and_show(bundle_file):
    result = invoke("auth", "load", str(bundle_file))
    assert result.exit_code == 0, result.output
    assert "https://example.atlassian.net" in result.output

    shown = invoke("auth", "show")
    assert shown.exit_code == 0
    assert "tenant.session.token" in shown.output
    assert "s3cret" not in shown.output


def test_auth_show_without_bundle():
    result = invoke("auth", "show")
    assert "not authenticated" in result.output


def test_auth_load_rejects_bad_files(tmp_path):
    garbage = tmp_path / "garbage.json"
    garbage.write_text("{not json")
    assert invoke("auth", "load", str(garbage)).exit_code == 1

    no_origin = tmp_path / "no_origin.json"
    no_origin.write_text(json.dumps({"cookies": []}))
    assert invoke("auth", "load", str(no_origin)).exit_code == 1


def test_sync_requires_auth(fake):
    result = invoke("sync", "projects")
    assert result.exit_code == 1
    assert "Not authenticated" in result.output
    assert fake.requests == []


def test_sync_fetch_show_and_clear(bundle_file, fake):
    fake.add_project("ENG", issues=3)
    fake.add_project("BAD", issues=1)
    fake.fail["BAD"] = 500
    invoke("auth", "load", str(bundle_file))

    synced = invoke("sync", "projects")
    assert synced.exit_code == 0, synced.output
    assert "Stored 2 projects" in synced.output
    assert "Count unknown for: BAD" in synced.output

    shown = invoke("data", "show", "jira")
    assert "ENG" in shown.output
    assert "unknown" in shown.output

    fetched = invoke("fetch", "issues", "ENG")
    assert fetched.exit_code == 0
    assert "ENG: 3 issues" in fetched.output

    failed = invoke("fetch", "issues", "ENG", "BAD")
    assert failed.exit_code == 1
    assert "BAD" in failed.output

    cleared = invoke("data", "clear-all", "--yes")
    assert cleared.exit_code == 0
    assert "No containers cached." in invoke("data", "show", "jira").output


def test_sync_list_failure_exits_nonzero(bundle_file, fake):
    fake.fail["/wiki/rest/api/space"] = 502
    invoke("auth", "load", str(bundle_file))

    result = invoke("sync", "spaces")

    assert result.exit_code == 1
    assert "spaces sync failed" in result.output


def test_sync_all_reports_space_failure_as_warning(bundle_file, fake):
    fake.add_project("ENG", issues=3)
    fake.fail["/wiki/rest/api/space"] = 502
    invoke("auth", "load", str(bundle_file))

    result = invoke("sync", "all")

    assert result.exit_code == 0, result.output
    assert "Stored 1 projects" in result.output
    assert "spaces sync failed" in result.output


def test_sync_all_fails_on_project_listing(bundle_file, fake):
    fake.fail["/rest/api/3/project"] = 503
    invoke("auth", "load", str(bundle_file))

    result = invoke("sync", "all")

    assert result.exit_code == 1
    assert "projects sync failed" in result.output


def test_fetch_pages(bundle_file, fake):
    fake.add_space("DOC", pages=3)
    invoke("auth", "load", str(bundle_file))

    result = invoke("fetch", "pages", "DOC")

    assert result.exit_code == 0
    assert "DOC: 3 pages" in result.output


def test_data_show_rejects_unknown_product():
    assert invoke("data", "show", "bitbucket").exit_code == 2


def test_paths(tmp_path):
    result = invoke("paths", "show")
    assert str((tmp_path / "cli.db").resolve()) in result.output

    assert invoke("paths", "ensure").exit_code == 0
    assert (tmp_path / "var" / "logs").is_dir()
