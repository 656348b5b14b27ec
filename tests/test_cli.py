"""Unit tests for CLI commands."""

from pathlib import Path

import pytest
import typer
from typer.testing import CliRunner

from metagroupsync.cli import app
from metagroupsync.database import DatabaseManager
from metagroupsync.service import SyncService

runner = CliRunner()


@pytest.fixture
def site_db(tmp_path, test_settings, make_host) -> Path:
    """File database holding course 10 (group 5, users 1 and 2) and course 20."""
    path = tmp_path / "site.db"
    service = SyncService(db=DatabaseManager(path), settings=test_settings)
    service.initialize()
    host = make_host(service)
    host.course(10, "SRC")
    host.course(20, "TGT")
    host.group(10, 5, "Group A")
    host.enrol(10, 1, group_id=5)
    host.enrol(10, 2, group_id=5)
    service.close()
    return path


def invoke(*args: str):
    result = runner.invoke(app, list(args))
    if result.exit_code != 0:
        print(f"stdout: {result.stdout}")
        if result.exception:
            print(f"exception: {result.exception}")
    return result


class TestCLICommands:
    """Tests for CLI commands."""

    def test_cli_app_exists(self):
        """Test CLI app is defined."""
        assert isinstance(app, typer.Typer)

    def test_init_command(self, tmp_path):
        db_path = tmp_path / "new.db"

        result = invoke("init", "--database", str(db_path))

        assert result.exit_code == 0
        assert "Database ready" in result.stdout
        assert db_path.exists()

    def test_create_and_list(self, site_db):
        """Test a created link shows up in the listing with its members."""
        result = invoke("create", "20", "10", "5", "--database", str(site_db))

        assert result.exit_code == 0
        assert "Link" in result.stdout and "created" in result.stdout

        result = invoke("links", "--target", "20", "--database", str(site_db))

        assert result.exit_code == 0
        assert "10/5" in result.stdout
        assert "enabled" in result.stdout

    def test_create_invalid_link(self, site_db):
        result = invoke("create", "10", "10", "5", "--database", str(site_db))

        assert result.exit_code == 1
        assert "Invalid link" in result.stdout

    def test_links_empty(self, site_db):
        result = invoke("links", "--database", str(site_db))

        assert result.exit_code == 0
        assert "No links found" in result.stdout

    def test_sync_command(self, site_db):
        invoke("create", "20", "10", "5", "--no-sync", "--database", str(site_db))

        result = invoke("sync", "--course", "20", "--database", str(site_db))

        assert result.exit_code == 0
        assert "Reconciliation complete" in result.stdout

    def test_sync_disabled_exit_code(self, site_db, monkeypatch):
        from metagroupsync.config import settings

        monkeypatch.setattr(settings, "sync_enabled", False)

        result = invoke("sync", "--database", str(site_db))

        assert result.exit_code == 2

    def test_delete_command(self, site_db):
        invoke("create", "20", "10", "5", "--database", str(site_db))

        result = invoke("delete", "2", "--database", str(site_db))

        assert result.exit_code == 0
        assert "deleted" in result.stdout

    def test_delete_missing_link(self, site_db):
        result = invoke("delete", "999", "--database", str(site_db))

        assert result.exit_code == 1
        assert "does not exist" in result.stdout

    def test_cleanup_groups_dry_run(self, site_db):
        invoke("create", "20", "10", "5", "--database", str(site_db))

        result = invoke("cleanup-groups", "--course", "10", "--dry-run", "--database", str(site_db))

        assert result.exit_code == 0
        assert "0 group(s)" in result.stdout

    def test_recalculate_command(self, site_db):
        invoke("create", "20", "10", "5", "--database", str(site_db))

        result = invoke("recalculate", "--database", str(site_db))

        assert result.exit_code == 0
        assert "Recalculated 1 link(s)" in result.stdout

    def test_chain_command(self, site_db):
        invoke("create", "20", "10", "5", "--database", str(site_db))

        result = invoke("chain", "2", "--database", str(site_db))

        assert result.exit_code == 0
        assert "Group A" in result.stdout

    def test_status_command(self, site_db):
        result = invoke("status", "--database", str(site_db))

        assert result.exit_code == 0
        assert "Configuration" in result.stdout
        assert "Database Statistics" in result.stdout

    def test_metrics_command(self):
        result = invoke("metrics")

        assert result.exit_code == 0
        assert "reconcile_runs_total" in result.stdout
