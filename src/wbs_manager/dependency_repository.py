"""
Dependency Graph Manager

A dependency is a directed edge dependee -> dependency: the dependency task
waits on the dependee task. Every write re-checks the edge set for cycles with
a breadth-first traversal over downstream edges before anything is persisted.
"""

import logging
import sqlite3
import uuid
from collections import defaultdict, deque
from typing import Any, Dict, List, Optional, Sequence

from .artifact_repository import ArtifactRepository
from .database import MAX_IN_CLAUSE, WBSDatabase, chunked, current_time_str, placeholders
from .exceptions import NotFoundError, ValidationError

logger = logging.getLogger(__name__)


class DependencyRepository:
    """Create, update and query dependency edges while keeping the graph acyclic."""

    def __init__(self, database: WBSDatabase):
        self.db = database
        self.artifacts = ArtifactRepository(database)

    def _fetch(self, cursor: sqlite3.Cursor, record_id: str) -> Optional[sqlite3.Row]:
        cursor.execute("SELECT * FROM dependencies WHERE id = ?", (record_id,))
        return cursor.fetchone()

    def _artifact_ids_by_dependency(self, cursor: sqlite3.Cursor,
                                    record_ids: Sequence[str]) -> Dict[str, List[str]]:
        grouped: Dict[str, List[str]] = defaultdict(list)
        for chunk in chunked(list(record_ids)):
            cursor.execute(
                f"SELECT dependency_id, artifact_id FROM dependency_artifacts "
                f"WHERE dependency_id IN ({placeholders(len(chunk))}) "
                f"ORDER BY dependency_id, order_index",
                tuple(chunk),
            )
            for row in cursor.fetchall():
                grouped[row["dependency_id"]].append(row["artifact_id"])
        return grouped

    def _rows_to_dicts(self, cursor: sqlite3.Cursor, rows: Sequence[sqlite3.Row]) -> List[Dict[str, Any]]:
        artifact_ids = self._artifact_ids_by_dependency(cursor, [row["id"] for row in rows])
        return [
            {
                "id": row["id"],
                "dependeeTaskId": row["dependee_task_id"],
                "dependencyTaskId": row["dependency_task_id"],
                "artifactIds": artifact_ids.get(row["id"], []),
                "createdAt": row["created_at"],
            }
            for row in rows
        ]

    def _is_reachable(self, cursor: sqlite3.Cursor, start: str, target: str,
                      ignore_edge_id: Optional[str] = None) -> bool:
        """
        Breadth-first search along dependee -> dependency edges.

        Args:
            cursor: Cursor inside the validating transaction
            start: Task to start from
            target: Task being searched for
            ignore_edge_id: Edge excluded from the traversal (the one being replaced)

        Returns:
            True if target is reachable from start
        """
        visited = {start}
        queue = deque([start])
        while queue:
            node = queue.popleft()
            if node == target:
                return True
            cursor.execute(
                "SELECT dependency_task_id FROM dependencies WHERE dependee_task_id = ? AND id IS NOT ?",
                (node, ignore_edge_id),
            )
            for row in cursor.fetchall():
                downstream = row["dependency_task_id"]
                if downstream not in visited:
                    visited.add(downstream)
                    queue.append(downstream)
        return False

    def _validate_edge(self, cursor: sqlite3.Cursor, dependee_id: str, dependency_id: str,
                       ignore_edge_id: Optional[str] = None) -> None:
        if dependee_id == dependency_id:
            raise ValidationError("A task cannot depend on itself")

        for task_id in (dependee_id, dependency_id):
            cursor.execute("SELECT 1 FROM tasks WHERE id = ?", (task_id,))
            if cursor.fetchone() is None:
                raise NotFoundError("Task", task_id)

        cursor.execute("""
            SELECT id FROM dependencies
            WHERE dependee_task_id = ? AND dependency_task_id = ? AND id IS NOT ?
        """, (dependee_id, dependency_id, ignore_edge_id))
        if cursor.fetchone() is not None:
            raise ValidationError(f"Dependency already exists: {dependee_id} -> {dependency_id}")

        # The new edge closes a cycle iff the dependee is already downstream of the dependency
        if self._is_reachable(cursor, dependency_id, dependee_id, ignore_edge_id):
            raise ValidationError(
                f"Dependency {dependee_id} -> {dependency_id} would create a circular dependency"
            )

    def _validate_artifact_ids(self, cursor: sqlite3.Cursor, artifact_ids: Sequence[str]) -> None:
        if len(set(artifact_ids)) != len(artifact_ids):
            raise ValidationError("Dependency artifact list contains duplicate artifact ids")
        self.artifacts.ensure_artifacts_exist(cursor, artifact_ids)

    def _replace_artifacts(self, cursor: sqlite3.Cursor, record_id: str,
                           artifact_ids: Sequence[str]) -> None:
        cursor.execute("DELETE FROM dependency_artifacts WHERE dependency_id = ?", (record_id,))
        now = current_time_str()
        for index, artifact_id in enumerate(artifact_ids):
            cursor.execute("""
                INSERT INTO dependency_artifacts (id, dependency_id, artifact_id, order_index, created_at)
                VALUES (?, ?, ?, ?, ?)
            """, (str(uuid.uuid4()), record_id, artifact_id, index, now))

    def create_dependency(self, dependee_id: str, dependency_id: str,
                          artifact_ids: Optional[Sequence[str]] = None) -> Dict[str, Any]:
        """
        Add the edge dependee -> dependency.

        Args:
            dependee_id: Upstream task
            dependency_id: Downstream task that waits on the dependee
            artifact_ids: Ordered artifacts handed over along the edge

        Returns:
            The stored dependency

        Raises:
            ValidationError: Self-edge, duplicate pair, duplicate artifacts or cycle
            NotFoundError: Missing task or artifact
        """
        artifact_ids = list(artifact_ids or [])
        record_id = str(uuid.uuid4())
        with self.db.transaction() as cursor:
            self._validate_edge(cursor, dependee_id, dependency_id)
            self._validate_artifact_ids(cursor, artifact_ids)
            cursor.execute("""
                INSERT INTO dependencies (id, dependee_task_id, dependency_task_id, created_at)
                VALUES (?, ?, ?, ?)
            """, (record_id, dependee_id, dependency_id, current_time_str()))
            self._replace_artifacts(cursor, record_id, artifact_ids)
            created = self._rows_to_dicts(cursor, [self._fetch(cursor, record_id)])[0]

        logger.info(f"Created dependency {record_id}: {dependee_id} -> {dependency_id}")
        return created

    def update_dependency(self, record_id: str, dependee_id: Optional[str] = None,
                          dependency_id: Optional[str] = None,
                          artifact_ids: Optional[Sequence[str]] = None) -> Dict[str, Any]:
        """
        Re-point an edge and/or replace its artifact list.

        The replaced edge is ignored while validating the new endpoints.
        """
        with self.db.transaction() as cursor:
            row = self._fetch(cursor, record_id)
            if row is None:
                raise NotFoundError("Dependency", record_id)

            new_dependee = dependee_id or row["dependee_task_id"]
            new_dependency = dependency_id or row["dependency_task_id"]
            if (new_dependee, new_dependency) != (row["dependee_task_id"], row["dependency_task_id"]):
                self._validate_edge(cursor, new_dependee, new_dependency, ignore_edge_id=record_id)
                cursor.execute("""
                    UPDATE dependencies SET dependee_task_id = ?, dependency_task_id = ?
                    WHERE id = ?
                """, (new_dependee, new_dependency, record_id))

            if artifact_ids is not None:
                artifact_ids = list(artifact_ids)
                self._validate_artifact_ids(cursor, artifact_ids)
                self._replace_artifacts(cursor, record_id, artifact_ids)

            updated = self._rows_to_dicts(cursor, [self._fetch(cursor, record_id)])[0]

        logger.info(f"Updated dependency {record_id}: {new_dependee} -> {new_dependency}")
        return updated

    def delete_dependency(self, record_id: str) -> Dict[str, Any]:
        with self.db.transaction() as cursor:
            if self._fetch(cursor, record_id) is None:
                raise NotFoundError("Dependency", record_id)
            cursor.execute("DELETE FROM dependency_artifacts WHERE dependency_id = ?", (record_id,))
            cursor.execute("DELETE FROM dependencies WHERE id = ?", (record_id,))
        logger.info(f"Deleted dependency {record_id}")
        return {"id": record_id}

    def get_dependency(self, record_id: str) -> Dict[str, Any]:
        with self.db.cursor() as cursor:
            row = self._fetch(cursor, record_id)
            if row is None:
                raise NotFoundError("Dependency", record_id)
            return self._rows_to_dicts(cursor, [row])[0]

    def list_dependencies(self, task_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """All edges, or only those touching task_id on either side."""
        with self.db.cursor() as cursor:
            if task_id is None:
                cursor.execute("SELECT * FROM dependencies ORDER BY created_at, rowid")
            else:
                cursor.execute("""
                    SELECT * FROM dependencies
                    WHERE dependee_task_id = ? OR dependency_task_id = ?
                    ORDER BY created_at, rowid
                """, (task_id, task_id))
            return self._rows_to_dicts(cursor, cursor.fetchall())

    def _collect(self, task_id: str, own_column: str, other_column: str) -> List[Dict[str, Any]]:
        with self.db.cursor() as cursor:
            cursor.execute(f"""
                SELECT d.id, d.{other_column} AS task_id, t.title, t.status
                FROM dependencies d
                JOIN tasks t ON t.id = d.{other_column}
                WHERE d.{own_column} = ?
                ORDER BY d.created_at, d.rowid
            """, (task_id,))
            rows = cursor.fetchall()
            artifact_ids = self._artifact_ids_by_dependency(cursor, [row["id"] for row in rows])
            return [
                {
                    "dependencyRecordId": row["id"],
                    "taskId": row["task_id"],
                    "title": row["title"],
                    "status": row["status"],
                    "artifactIds": artifact_ids.get(row["id"], []),
                }
                for row in rows
            ]

    def collect_dependees(self, task_id: str) -> List[Dict[str, Any]]:
        """Upstream tasks this task waits on."""
        return self._collect(task_id, "dependency_task_id", "dependee_task_id")

    def collect_dependents(self, task_id: str) -> List[Dict[str, Any]]:
        """Downstream tasks waiting on this task."""
        return self._collect(task_id, "dependee_task_id", "dependency_task_id")

    def delete_for_tasks(self, cursor: sqlite3.Cursor, task_ids: Sequence[str]) -> int:
        """
        Remove every edge touching any of task_ids, with its artifact list.

        Runs on the caller's cursor so it joins the caller's transaction.

        Returns:
            Number of edges removed
        """
        removed = 0
        for chunk in chunked(list(task_ids), MAX_IN_CLAUSE // 2):
            marks = placeholders(len(chunk))
            cursor.execute(
                f"SELECT id FROM dependencies "
                f"WHERE dependee_task_id IN ({marks}) OR dependency_task_id IN ({marks})",
                (*chunk, *chunk),
            )
            edge_ids = [row["id"] for row in cursor.fetchall()]
            for edge_chunk in chunked(edge_ids):
                edge_marks = placeholders(len(edge_chunk))
                cursor.execute(
                    f"DELETE FROM dependency_artifacts WHERE dependency_id IN ({edge_marks})",
                    tuple(edge_chunk),
                )
                cursor.execute(
                    f"DELETE FROM dependencies WHERE id IN ({edge_marks})",
                    tuple(edge_chunk),
                )
            removed += len(edge_ids)
        return removed
