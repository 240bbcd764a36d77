"""
WBS Database Layer

Provides the SQLite store shared by every repository. The connection runs in
autocommit mode with WAL journaling; multi-statement mutations go through
`transaction()`, which opens `BEGIN IMMEDIATE` at the outermost level and a
SAVEPOINT for nested units so repositories can compose without partially
committing.
"""

import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, List, Optional, Sequence, Union

logger = logging.getLogger(__name__)

DATA_DIR_ENV = "WBS_MCP_DATA_DIR"
DB_FILE_NAME = "wbs.db"

# Stays well below SQLite's bound-parameter limit for IN (...) clauses
MAX_IN_CLAUSE = 500


def resolve_database_path(data_dir: Optional[Union[str, Path]] = None) -> Path:
    """
    Resolve the database file location.

    Args:
        data_dir: Explicit data directory. Falls back to WBS_MCP_DATA_DIR,
            then to the current working directory.

    Returns:
        Path to `<data dir>/data/wbs.db`
    """
    base = data_dir
    if base is None:
        env_value = os.environ.get(DATA_DIR_ENV, "").strip()
        base = env_value or os.getcwd()
    return Path(base).resolve() / "data" / DB_FILE_NAME


def current_time_str() -> str:
    """UTC timestamp with microsecond precision, sortable as text."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def chunked(values: Sequence[str], size: int = MAX_IN_CLAUSE) -> Iterator[Sequence[str]]:
    for start in range(0, len(values), size):
        yield values[start:start + size]


def placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


class WBSDatabase:
    """
    SQLite store holding the work breakdown structure.

    Features:
    - WAL mode with a busy timeout for concurrent readers
    - Foreign keys enabled so link rows cannot outlive their owners
    - Re-entrant transactions (BEGIN IMMEDIATE + savepoints)
    - Idempotent schema creation on open
    """

    def __init__(self, db_path: Union[str, Path]):
        """
        Open (and create if needed) the database at db_path.

        Args:
            db_path: Path to SQLite database file, or ":memory:"
        """
        self.db_path = db_path if str(db_path) == ":memory:" else Path(db_path)
        self._connection_lock = threading.RLock()
        self._connection: Optional[sqlite3.Connection] = None
        self._tx_depth = 0

        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._initialize_database()

    def _initialize_database(self, drop_existing: bool = False) -> None:
        """Open the connection, apply PRAGMAs and create the schema.

        Args:
            drop_existing: If True, drops all existing tables first
        """
        try:
            self._connection = sqlite3.connect(
                str(self.db_path),
                isolation_level=None,  # Autocommit; transactions are explicit
                check_same_thread=False,
            )
            self._connection.row_factory = sqlite3.Row

            cursor = self._connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.execute("PRAGMA foreign_keys=ON")

            if drop_existing:
                self._drop_existing_tables()

            self._create_schema()
            logger.info(f"Opened WBS database at {self.db_path}")

        except sqlite3.Error as e:
            raise RuntimeError(f"Failed to initialize database at {self.db_path}: {e}") from e

    def _create_schema(self) -> None:
        """Create tables and indexes if they do not exist yet."""
        cursor = self._connection.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS tasks (
                id TEXT PRIMARY KEY,
                parent_id TEXT,
                title TEXT NOT NULL,
                description TEXT,
                assignee TEXT,
                status TEXT NOT NULL DEFAULT 'pending',
                estimate TEXT,
                version INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY (parent_id) REFERENCES tasks (id) ON DELETE CASCADE,
                CONSTRAINT status_vocabulary CHECK (status IN ('pending', 'in-progress', 'completed', 'blocked'))
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS artifacts (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL UNIQUE,
                uri TEXT,
                description TEXT,
                version INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS task_artifacts (
                id TEXT PRIMARY KEY,
                task_id TEXT NOT NULL,
                artifact_id TEXT NOT NULL,
                role TEXT NOT NULL,
                crud_operations TEXT,
                order_index INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY (task_id) REFERENCES tasks (id) ON DELETE CASCADE,
                FOREIGN KEY (artifact_id) REFERENCES artifacts (id) ON DELETE CASCADE,
                CONSTRAINT role_vocabulary CHECK (role IN ('deliverable', 'prerequisite'))
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS task_completion_conditions (
                id TEXT PRIMARY KEY,
                task_id TEXT NOT NULL,
                description TEXT NOT NULL,
                order_index INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY (task_id) REFERENCES tasks (id) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS dependencies (
                id TEXT PRIMARY KEY,
                dependee_task_id TEXT NOT NULL,
                dependency_task_id TEXT NOT NULL,
                created_at TEXT NOT NULL,
                FOREIGN KEY (dependee_task_id) REFERENCES tasks (id) ON DELETE CASCADE,
                FOREIGN KEY (dependency_task_id) REFERENCES tasks (id) ON DELETE CASCADE,
                CONSTRAINT no_self_edge CHECK (dependee_task_id <> dependency_task_id)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS dependency_artifacts (
                id TEXT PRIMARY KEY,
                dependency_id TEXT NOT NULL,
                artifact_id TEXT NOT NULL,
                order_index INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                FOREIGN KEY (dependency_id) REFERENCES dependencies (id) ON DELETE CASCADE,
                FOREIGN KEY (artifact_id) REFERENCES artifacts (id) ON DELETE CASCADE
            )
        """)

        # Audit trail survives task deletion, so no foreign key to tasks
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS task_history (
                id TEXT PRIMARY KEY,
                task_id TEXT NOT NULL,
                version INTEGER NOT NULL,
                action TEXT NOT NULL,
                parent_id TEXT,
                title TEXT,
                description TEXT,
                status TEXT,
                assignee TEXT,
                estimate TEXT,
                changed_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_tasks_parent_created
            ON tasks (parent_id, created_at)
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_tasks_status_created
            ON tasks (status, created_at)
        """)

        cursor.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_task_artifacts_order
            ON task_artifacts (task_id, role, order_index)
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_task_artifacts_artifact
            ON task_artifacts (artifact_id)
        """)

        cursor.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_completion_conditions_order
            ON task_completion_conditions (task_id, order_index)
        """)

        cursor.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_dependencies_pair
            ON dependencies (dependee_task_id, dependency_task_id)
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_dependencies_dependency
            ON dependencies (dependency_task_id)
        """)

        cursor.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_dependency_artifacts_order
            ON dependency_artifacts (dependency_id, order_index)
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_task_history_task_version
            ON task_history (task_id, version)
        """)

    def _drop_existing_tables(self) -> None:
        """Drop all tables, children first."""
        cursor = self._connection.cursor()
        cursor.execute("DROP TABLE IF EXISTS dependency_artifacts")
        cursor.execute("DROP TABLE IF EXISTS dependencies")
        cursor.execute("DROP TABLE IF EXISTS task_completion_conditions")
        cursor.execute("DROP TABLE IF EXISTS task_artifacts")
        cursor.execute("DROP TABLE IF EXISTS task_history")
        cursor.execute("DROP TABLE IF EXISTS artifacts")
        cursor.execute("DROP TABLE IF EXISTS tasks")

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Cursor]:
        """
        Context manager for explicit, re-entrant transaction control.

        The outermost call opens BEGIN IMMEDIATE so the write lock is taken
        before any read-then-write validation runs. Nested calls use a
        savepoint, so an inner failure rolls back only the inner unit unless
        the exception keeps propagating.
        """
        with self._connection_lock:
            if self._connection is None:
                raise RuntimeError("Database connection is closed")
            cursor = self._connection.cursor()
            depth = self._tx_depth
            savepoint = f"wbs_sp_{depth}"
            if depth == 0:
                cursor.execute("BEGIN IMMEDIATE")
            else:
                cursor.execute(f"SAVEPOINT {savepoint}")
            self._tx_depth += 1
            try:
                yield cursor
            except BaseException:
                self._tx_depth -= 1
                if depth == 0:
                    cursor.execute("ROLLBACK")
                else:
                    cursor.execute(f"ROLLBACK TO SAVEPOINT {savepoint}")
                    cursor.execute(f"RELEASE SAVEPOINT {savepoint}")
                raise
            else:
                self._tx_depth -= 1
                if depth == 0:
                    cursor.execute("COMMIT")
                else:
                    cursor.execute(f"RELEASE SAVEPOINT {savepoint}")

    @contextmanager
    def cursor(self) -> Iterator[sqlite3.Cursor]:
        """Cursor for read-only work under the connection lock."""
        with self._connection_lock:
            if self._connection is None:
                raise RuntimeError("Database connection is closed")
            yield self._connection.cursor()

    @property
    def in_transaction(self) -> bool:
        return self._tx_depth > 0

    def table_names(self) -> List[str]:
        with self.cursor() as cursor:
            cursor.execute("SELECT name FROM sqlite_master WHERE type = 'table' ORDER BY name")
            return [row[0] for row in cursor.fetchall()]

    def close(self):
        """Close database connection."""
        with self._connection_lock:
            if self._connection:
                self._connection.close()
                self._connection = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def initialize_fresh(self) -> None:
        """Drop every table and recreate the schema on a new connection."""
        if self._connection:
            self.close()
        self._initialize_database(drop_existing=True)
