"""
Unit Tests for the Command Line Interface
=========================================
"""

import pytest
from click.testing import CliRunner

from courier.cli import cli
from courier.database import connection as connection_module


@pytest.fixture
def runner(tmp_path, monkeypatch):
    monkeypatch.setenv("COURIER_DATABASE__PATH", str(tmp_path / "cli.db"))
    monkeypatch.setenv("COURIER_LOGGING__CONSOLE_LOGGING", "false")
    monkeypatch.setattr(connection_module, "_db_manager", None)
    yield CliRunner()
    if connection_module._db_manager is not None:
        connection_module._db_manager.close_all_connections()


class TestCli:

    def test_help_without_command(self, runner):
        result = runner.invoke(cli, [], obj={})
        assert result.exit_code == 0
        assert "crawl-once" in result.output

    def test_check_config(self, runner):
        result = runner.invoke(cli, ["check-config"], obj={})
        assert result.exit_code == 0
        assert "Configuration is valid" in result.output

    def test_init_db(self, runner, tmp_path):
        result = runner.invoke(cli, ["init-db"], obj={})
        assert result.exit_code == 0
        assert (tmp_path / "cli.db").exists()

    def test_add_and_list_sources(self, runner):
        added = runner.invoke(cli, ["add-source", "https://example.com/feed.xml"], obj={})
        assert added.exit_code == 0
        assert "Added source" in added.output

        listed = runner.invoke(cli, ["list-sources"], obj={})
        assert listed.exit_code == 0
        assert "Sources (1)" in listed.output

    def test_duplicate_source_rejected(self, runner):
        runner.invoke(cli, ["add-source", "https://example.com/feed.xml"], obj={})
        again = runner.invoke(cli, ["add-source", "https://example.com/feed.xml"], obj={})

        assert again.exit_code == 1
        assert "already registered" in again.output

    def test_invalid_source_url_rejected(self, runner):
        result = runner.invoke(cli, ["add-source", "ftp://example.com/feed"], obj={})
        assert result.exit_code == 1
