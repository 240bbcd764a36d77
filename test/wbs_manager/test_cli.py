"""
Test Suite for the Click CLI

Covers database initialization, YAML import, server metadata output,
logging configuration and the serve command with the stdio server mocked out.
"""

import json
import logging
from unittest.mock import patch

import pytest
import yaml
from click.testing import CliRunner

from wbs_manager.cli import JsonLineFormatter, configure_logging, main
from wbs_manager.database import WBSDatabase
from wbs_manager.task_repository import TaskRepository


@pytest.fixture(autouse=True)
def restore_root_logging():
    """The CLI reconfigures the root logger; put it back after each test."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def plan_file(tmp_path):
    path = tmp_path / "plan.yaml"
    path.write_text(yaml.safe_dump({
        "artifacts": [{"title": "Spec"}],
        "tasks": [{"title": "Design", "deliverables": ["Spec"], "children": [{"title": "Draft"}]}],
    }), encoding="utf-8")
    return path


class TestInitDb:

    def test_creates_database_under_data_dir(self, runner, tmp_path):
        result = runner.invoke(main, ["--data-dir", str(tmp_path), "init-db"])
        assert result.exit_code == 0, result.output
        assert "Database ready at" in result.output
        assert (tmp_path / "data" / "wbs.db").exists()

    def test_data_dir_from_environment(self, runner, tmp_path):
        result = runner.invoke(main, ["init-db"], env={"WBS_MCP_DATA_DIR": str(tmp_path)})
        assert result.exit_code == 0, result.output
        assert (tmp_path / "data" / "wbs.db").exists()

    def test_fresh_wipes_data(self, runner, tmp_path):
        db_path = tmp_path / "custom.db"
        with WBSDatabase(db_path) as database:
            TaskRepository(database).create_task("Old")

        result = runner.invoke(main, ["--db-path", str(db_path), "init-db", "--fresh"])
        assert result.exit_code == 0, result.output
        assert "Recreated empty database" in result.output
        with WBSDatabase(db_path) as database:
            assert TaskRepository(database).list_tasks() == []


class TestImportCommand:

    def test_import_file(self, runner, tmp_path, plan_file):
        result = runner.invoke(main, ["--data-dir", str(tmp_path), "import", str(plan_file)])
        assert result.exit_code == 0, result.output
        assert "Imported 2 tasks and 1 artifacts (0 existing artifacts reused)" in result.output

        with WBSDatabase(tmp_path / "data" / "wbs.db") as database:
            roots = TaskRepository(database).list_tasks()
        assert [t["title"] for t in roots] == ["Design"]

    def test_import_under_missing_parent_fails(self, runner, tmp_path, plan_file):
        result = runner.invoke(main, ["--data-dir", str(tmp_path), "import", str(plan_file), "--parent-id", "nope"])
        assert result.exit_code == 1
        assert "Import failed" in result.output

    def test_import_invalid_yaml(self, runner, tmp_path):
        broken = tmp_path / "broken.yaml"
        broken.write_text("tasks: [", encoding="utf-8")
        result = runner.invoke(main, ["--data-dir", str(tmp_path), "import", str(broken)])
        assert result.exit_code == 1
        assert "Invalid YAML format" in result.output

    def test_import_missing_file(self, runner, tmp_path):
        result = runner.invoke(main, ["--data-dir", str(tmp_path), "import", str(tmp_path / "nope.yaml")])
        assert result.exit_code == 2


class TestInfoAndServe:

    def test_info_prints_json(self, runner, tmp_path):
        result = runner.invoke(main, ["--data-dir", str(tmp_path), "info"])
        assert result.exit_code == 0, result.output
        info = json.loads(result.output)
        assert info["name"] == "WBS MCP Server"
        assert len(info["registered_tools"]) == 19

    def test_serve_runs_stdio_server(self, runner, tmp_path):
        with patch("wbs_manager.cli.run_stdio_server") as run:
            result = runner.invoke(main, ["--data-dir", str(tmp_path), "--log-level", "debug", "serve"])
        assert result.exit_code == 0, result.output
        run.assert_called_once()
        database = run.call_args[0][0]
        assert database.db_path == (tmp_path / "data" / "wbs.db").resolve()

    def test_serve_handles_interrupt(self, runner, tmp_path):
        with patch("wbs_manager.cli.run_stdio_server", side_effect=KeyboardInterrupt):
            result = runner.invoke(main, ["--data-dir", str(tmp_path), "serve"])
        assert result.exit_code == 0

    def test_version(self, runner):
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert "wbs-mcp" in result.output

    def test_invalid_log_level(self, runner, tmp_path):
        result = runner.invoke(main, ["--log-level", "loud", "info"])
        assert result.exit_code == 2


class TestLogging:

    def test_configure_logging_sets_level(self):
        configure_logging("warning")
        root = logging.getLogger()
        assert root.level == logging.WARNING
        assert len(root.handlers) == 1

    def test_json_formatter(self):
        record = logging.LogRecord("wbs_manager.test", logging.INFO, __file__, 1, "hello %s", ("world",), None)
        event = json.loads(JsonLineFormatter().format(record))
        assert event["level"] == "INFO"
        assert event["logger"] == "wbs_manager.test"
        assert event["message"] == "hello world"
        assert "exception" not in event
