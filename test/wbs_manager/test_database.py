"""
Tests for the WBS database layer.

Covers schema creation, connection PRAGMAs, data directory resolution and
re-entrant transaction semantics.
"""

import sqlite3
from pathlib import Path

import pytest

from wbs_manager.database import WBSDatabase, current_time_str, resolve_database_path

EXPECTED_TABLES = {
    "tasks",
    "artifacts",
    "task_artifacts",
    "task_completion_conditions",
    "dependencies",
    "dependency_artifacts",
    "task_history",
}


def _insert_artifact(cursor, artifact_id: str, title: str) -> None:
    now = current_time_str()
    cursor.execute(
        "INSERT INTO artifacts (id, title, version, created_at, updated_at) VALUES (?, ?, 1, ?, ?)",
        (artifact_id, title, now, now),
    )


def _artifact_ids(database):
    with database.cursor() as cursor:
        cursor.execute("SELECT id FROM artifacts ORDER BY id")
        return [row["id"] for row in cursor.fetchall()]


class TestDatabaseInitialization:
    """Schema and connection setup."""

    def test_schema_creation(self, database):
        """All tables exist after opening."""
        assert EXPECTED_TABLES <= set(database.table_names())

    def test_unique_order_indexes(self, database):
        """Order indexes are declared unique."""
        with database.cursor() as cursor:
            cursor.execute("SELECT name FROM sqlite_master WHERE type = 'index'")
            names = {row[0] for row in cursor.fetchall()}
        assert {
            "idx_task_artifacts_order",
            "idx_completion_conditions_order",
            "idx_dependencies_pair",
            "idx_dependency_artifacts_order",
        } <= names

    def test_pragmas(self, database):
        with database.cursor() as cursor:
            cursor.execute("PRAGMA foreign_keys")
            assert cursor.fetchone()[0] == 1
            cursor.execute("PRAGMA journal_mode")
            assert cursor.fetchone()[0].lower() == "wal"

    def test_directory_creation(self, tmp_path):
        """Missing parent directories are created."""
        db_path = tmp_path / "nested" / "deeper" / "wbs.db"
        with WBSDatabase(db_path) as db:
            assert db_path.exists()
            assert "tasks" in db.table_names()

    def test_reopen_is_idempotent(self, tmp_path):
        db_path = tmp_path / "wbs.db"
        with WBSDatabase(db_path) as db:
            with db.transaction() as cursor:
                _insert_artifact(cursor, "a1", "Spec")
        with WBSDatabase(db_path) as db:
            assert _artifact_ids(db) == ["a1"]

    def test_initialize_fresh_drops_data(self, database):
        with database.transaction() as cursor:
            _insert_artifact(cursor, "a1", "Spec")
        database.initialize_fresh()
        assert _artifact_ids(database) == []
        assert EXPECTED_TABLES <= set(database.table_names())

    def test_closed_database_rejects_work(self, tmp_path):
        db = WBSDatabase(tmp_path / "wbs.db")
        db.close()
        with pytest.raises(RuntimeError, match="closed"):
            with db.cursor():
                pass


class TestResolveDatabasePath:
    """Data directory precedence: argument, environment, working directory."""

    def test_explicit_directory(self, tmp_path, monkeypatch):
        monkeypatch.setenv("WBS_MCP_DATA_DIR", "/should/not/be/used")
        assert resolve_database_path(tmp_path) == tmp_path.resolve() / "data" / "wbs.db"

    def test_environment_variable(self, tmp_path, monkeypatch):
        monkeypatch.setenv("WBS_MCP_DATA_DIR", str(tmp_path))
        assert resolve_database_path() == tmp_path.resolve() / "data" / "wbs.db"

    def test_working_directory_fallback(self, tmp_path, monkeypatch):
        monkeypatch.delenv("WBS_MCP_DATA_DIR", raising=False)
        monkeypatch.chdir(tmp_path)
        assert resolve_database_path() == Path(tmp_path).resolve() / "data" / "wbs.db"

    def test_blank_environment_variable_ignored(self, tmp_path, monkeypatch):
        monkeypatch.setenv("WBS_MCP_DATA_DIR", "   ")
        monkeypatch.chdir(tmp_path)
        assert resolve_database_path() == Path(tmp_path).resolve() / "data" / "wbs.db"


class TestTransactions:
    """BEGIN IMMEDIATE at the outer level, savepoints when nested."""

    def test_commit(self, database):
        with database.transaction() as cursor:
            _insert_artifact(cursor, "a1", "Spec")
        assert _artifact_ids(database) == ["a1"]
        assert not database.in_transaction

    def test_rollback_on_exception(self, database):
        with pytest.raises(ValueError):
            with database.transaction() as cursor:
                _insert_artifact(cursor, "a1", "Spec")
                raise ValueError("boom")
        assert _artifact_ids(database) == []
        assert not database.in_transaction

    def test_nested_failure_rolls_back_inner_only(self, database):
        """A caught failure in a nested unit keeps the outer unit's work."""
        with database.transaction() as cursor:
            _insert_artifact(cursor, "outer", "Outer")
            try:
                with database.transaction() as inner:
                    _insert_artifact(inner, "inner", "Inner")
                    raise ValueError("inner failure")
            except ValueError:
                pass
        assert _artifact_ids(database) == ["outer"]

    def test_nested_failure_propagating_rolls_back_everything(self, database):
        with pytest.raises(ValueError):
            with database.transaction() as cursor:
                _insert_artifact(cursor, "outer", "Outer")
                with database.transaction() as inner:
                    _insert_artifact(inner, "inner", "Inner")
                    raise ValueError("inner failure")
        assert _artifact_ids(database) == []

    def test_constraint_violation_rolls_back(self, database):
        with pytest.raises(sqlite3.IntegrityError):
            with database.transaction() as cursor:
                _insert_artifact(cursor, "a1", "Same")
                _insert_artifact(cursor, "a2", "Same")
        assert _artifact_ids(database) == []
