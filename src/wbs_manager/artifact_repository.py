"""
Artifact, Task-Artifact Assignment and Completion Condition Repositories

Artifacts are standalone records (unique title, optional URI) that tasks
reference as deliverables or prerequisites and that dependency edges carry.
Assignment lists and completion-condition lists are replaced as ordered units:
callers pass the full desired list and the repository diffs it against the
stored rows, keeping order indices contiguous from 0.
"""

import logging
import sqlite3
import uuid
from collections import defaultdict
from typing import Any, Dict, List, Optional, Sequence

from .database import WBSDatabase, current_time_str
from .exceptions import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

ARTIFACT_ROLES = ("deliverable", "prerequisite")


def _artifact_row_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "title": row["title"],
        "uri": row["uri"],
        "description": row["description"],
        "version": row["version"],
        "createdAt": row["created_at"],
        "updatedAt": row["updated_at"],
    }


def renumber_order(cursor: sqlite3.Cursor, table: str, scope: str, params: Sequence[Any]) -> int:
    """
    Compact order_index values within one scope back to 0..n-1.

    Rows are first parked on negative indices so the unique (scope, order_index)
    index never sees two rows on the same slot mid-update.

    Args:
        cursor: Cursor inside an open transaction
        table: Table holding an order_index column
        scope: SQL predicate selecting the list, e.g. "task_id = ? AND role = ?"
        params: Parameters for the scope predicate

    Returns:
        Number of rows in the renumbered list
    """
    cursor.execute(
        f"SELECT id FROM {table} WHERE {scope} ORDER BY order_index",
        tuple(params),
    )
    row_ids = [row["id"] for row in cursor.fetchall()]
    for index, row_id in enumerate(row_ids):
        cursor.execute(f"UPDATE {table} SET order_index = ? WHERE id = ?", (-(index + 1), row_id))
    for index, row_id in enumerate(row_ids):
        cursor.execute(f"UPDATE {table} SET order_index = ? WHERE id = ?", (index, row_id))
    return len(row_ids)


class ArtifactRepository:
    """CRUD for artifacts with optimistic version checks on update."""

    def __init__(self, database: WBSDatabase):
        self.db = database

    def _fetch(self, cursor: sqlite3.Cursor, artifact_id: str) -> Optional[sqlite3.Row]:
        cursor.execute("SELECT * FROM artifacts WHERE id = ?", (artifact_id,))
        return cursor.fetchone()

    def _ensure_unique_title(self, cursor: sqlite3.Cursor, title: str,
                             exclude_id: Optional[str] = None) -> None:
        cursor.execute(
            "SELECT id FROM artifacts WHERE title = ? AND id IS NOT ?",
            (title, exclude_id),
        )
        if cursor.fetchone() is not None:
            raise ValidationError(f"Artifact title already exists: {title}")

    def ensure_artifacts_exist(self, cursor: sqlite3.Cursor, artifact_ids: Sequence[str]) -> None:
        """Raise NotFoundError for the first id with no artifact row."""
        for artifact_id in artifact_ids:
            if self._fetch(cursor, artifact_id) is None:
                raise NotFoundError("Artifact", artifact_id)

    def create_artifact(self, title: str, uri: Optional[str] = None,
                        description: Optional[str] = None) -> Dict[str, Any]:
        """
        Create a new artifact.

        Args:
            title: Unique, non-blank title
            uri: Optional location of the artifact
            description: Optional free-form description

        Returns:
            The stored artifact
        """
        if not title or not title.strip():
            raise ValidationError("Artifact title is required")

        artifact_id = str(uuid.uuid4())
        now = current_time_str()
        with self.db.transaction() as cursor:
            self._ensure_unique_title(cursor, title)
            cursor.execute("""
                INSERT INTO artifacts (id, title, uri, description, version, created_at, updated_at)
                VALUES (?, ?, ?, ?, 1, ?, ?)
            """, (artifact_id, title, uri, description, now, now))
            row = self._fetch(cursor, artifact_id)

        logger.info(f"Created artifact {artifact_id} '{title}'")
        return _artifact_row_to_dict(row)

    def get_artifact(self, artifact_id: str) -> Dict[str, Any]:
        """Artifact plus the task assignments referencing it."""
        with self.db.cursor() as cursor:
            row = self._fetch(cursor, artifact_id)
            if row is None:
                raise NotFoundError("Artifact", artifact_id)
            artifact = _artifact_row_to_dict(row)
            cursor.execute("""
                SELECT ta.task_id, ta.role, ta.crud_operations, t.title AS task_title
                FROM task_artifacts ta
                JOIN tasks t ON t.id = ta.task_id
                WHERE ta.artifact_id = ?
                ORDER BY t.created_at, ta.role
            """, (artifact_id,))
            artifact["assignments"] = [
                {
                    "taskId": usage["task_id"],
                    "taskTitle": usage["task_title"],
                    "role": usage["role"],
                    "crudOperations": usage["crud_operations"],
                }
                for usage in cursor.fetchall()
            ]
        return artifact

    def list_artifacts(self) -> List[Dict[str, Any]]:
        with self.db.cursor() as cursor:
            cursor.execute("SELECT * FROM artifacts ORDER BY title")
            return [_artifact_row_to_dict(row) for row in cursor.fetchall()]

    def update_artifact(self, artifact_id: str, title: Optional[str] = None,
                        uri: Optional[str] = None, description: Optional[str] = None,
                        if_version: Optional[int] = None) -> Dict[str, Any]:
        """
        Update the supplied artifact fields and bump the version.

        Args:
            artifact_id: Artifact to update
            title: New title (must stay unique)
            uri: New URI
            description: New description
            if_version: Expected current version; a mismatch raises ConflictError

        Returns:
            The updated artifact
        """
        updates: Dict[str, Any] = {}
        if title is not None:
            if not title.strip():
                raise ValidationError("Artifact title cannot be blank")
            updates["title"] = title
        if uri is not None:
            updates["uri"] = uri
        if description is not None:
            updates["description"] = description

        with self.db.transaction() as cursor:
            row = self._fetch(cursor, artifact_id)
            if row is None:
                raise NotFoundError("Artifact", artifact_id)
            if if_version is not None and row["version"] != if_version:
                raise ConflictError("Artifact", if_version, row["version"])
            if not updates:
                raise ValidationError("No artifact fields supplied for update")
            if "title" in updates:
                self._ensure_unique_title(cursor, updates["title"], exclude_id=artifact_id)

            assignments = ", ".join(f"{column} = ?" for column in updates)
            cursor.execute(
                f"UPDATE artifacts SET {assignments}, version = version + 1, updated_at = ? "
                f"WHERE id = ? AND version = ?",
                (*updates.values(), current_time_str(), artifact_id, row["version"]),
            )
            if cursor.rowcount == 0:
                current = self._fetch(cursor, artifact_id)
                raise ConflictError("Artifact", row["version"], current["version"] if current else None)
            updated = self._fetch(cursor, artifact_id)

        logger.info(f"Updated artifact {artifact_id} to version {updated['version']}")
        return _artifact_row_to_dict(updated)

    def delete_artifact(self, artifact_id: str) -> Dict[str, Any]:
        """
        Delete an artifact and every link pointing at it.

        Assignment lists and dependency artifact lists that lose an entry are
        renumbered so their order stays contiguous.

        Returns:
            Dict with the deleted id and the affected task and dependency ids
        """
        with self.db.transaction() as cursor:
            if self._fetch(cursor, artifact_id) is None:
                raise NotFoundError("Artifact", artifact_id)

            cursor.execute(
                "SELECT DISTINCT task_id, role FROM task_artifacts WHERE artifact_id = ?",
                (artifact_id,),
            )
            affected_lists = [(row["task_id"], row["role"]) for row in cursor.fetchall()]
            cursor.execute(
                "SELECT DISTINCT dependency_id FROM dependency_artifacts WHERE artifact_id = ?",
                (artifact_id,),
            )
            affected_dependencies = [row["dependency_id"] for row in cursor.fetchall()]

            cursor.execute("DELETE FROM task_artifacts WHERE artifact_id = ?", (artifact_id,))
            cursor.execute("DELETE FROM dependency_artifacts WHERE artifact_id = ?", (artifact_id,))
            cursor.execute("DELETE FROM artifacts WHERE id = ?", (artifact_id,))

            for task_id, role in affected_lists:
                renumber_order(cursor, "task_artifacts", "task_id = ? AND role = ?", (task_id, role))
            for dependency_id in affected_dependencies:
                renumber_order(cursor, "dependency_artifacts", "dependency_id = ?", (dependency_id,))

        logger.info(
            f"Deleted artifact {artifact_id} "
            f"({len(affected_lists)} assignment lists, {len(affected_dependencies)} dependencies renumbered)"
        )
        return {
            "id": artifact_id,
            "affectedTaskIds": sorted({task_id for task_id, _ in affected_lists}),
            "affectedDependencyIds": affected_dependencies,
        }


class TaskArtifactRepository:
    """Ordered deliverable/prerequisite lists per task."""

    def __init__(self, database: WBSDatabase):
        self.db = database
        self.artifacts = ArtifactRepository(database)

    def get_assignments(self, task_id: str, role: str) -> List[Dict[str, Any]]:
        """Assignments for one role with artifact details, in order."""
        with self.db.cursor() as cursor:
            cursor.execute("""
                SELECT ta.id, ta.artifact_id, ta.crud_operations, ta.order_index,
                       a.title, a.uri, a.description
                FROM task_artifacts ta
                JOIN artifacts a ON a.id = ta.artifact_id
                WHERE ta.task_id = ? AND ta.role = ?
                ORDER BY ta.order_index
            """, (task_id, role))
            return [
                {
                    "id": row["id"],
                    "artifactId": row["artifact_id"],
                    "title": row["title"],
                    "uri": row["uri"],
                    "description": row["description"],
                    "crudOperations": row["crud_operations"],
                    "order": row["order_index"],
                }
                for row in cursor.fetchall()
            ]

    def sync_assignments(self, task_id: str, role: str,
                         desired: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """
        Replace one role's assignment list with the desired list.

        Args:
            task_id: Owning task
            role: "deliverable" or "prerequisite"
            desired: Items with "artifact_id" and optional "crud_operations"

        Returns:
            The stored list after the sync
        """
        if role not in ARTIFACT_ROLES:
            raise ValidationError(f"Invalid artifact role '{role}'. Valid roles: {', '.join(ARTIFACT_ROLES)}")

        artifact_ids = [item["artifact_id"] for item in desired]
        seen = set()
        for artifact_id in artifact_ids:
            if artifact_id in seen:
                raise ValidationError(f"Artifact {artifact_id} is listed more than once as a {role}")
            seen.add(artifact_id)

        with self.db.transaction() as cursor:
            self.artifacts.ensure_artifacts_exist(cursor, artifact_ids)

            cursor.execute(
                "SELECT id, artifact_id FROM task_artifacts WHERE task_id = ? AND role = ?",
                (task_id, role),
            )
            existing = {row["artifact_id"]: row["id"] for row in cursor.fetchall()}

            for artifact_id, row_id in existing.items():
                if artifact_id not in seen:
                    cursor.execute("DELETE FROM task_artifacts WHERE id = ?", (row_id,))

            kept = [existing[a] for a in artifact_ids if a in existing]
            for index, row_id in enumerate(kept):
                cursor.execute(
                    "UPDATE task_artifacts SET order_index = ? WHERE id = ?",
                    (-(index + 1), row_id),
                )

            now = current_time_str()
            for index, item in enumerate(desired):
                row_id = existing.get(item["artifact_id"])
                if row_id is not None:
                    cursor.execute("""
                        UPDATE task_artifacts
                        SET order_index = ?, crud_operations = ?, updated_at = ?
                        WHERE id = ?
                    """, (index, item.get("crud_operations"), now, row_id))
                else:
                    cursor.execute("""
                        INSERT INTO task_artifacts
                            (id, task_id, artifact_id, role, crud_operations, order_index, created_at, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """, (str(uuid.uuid4()), task_id, item["artifact_id"], role,
                          item.get("crud_operations"), index, now, now))

        return self.get_assignments(task_id, role)


class CompletionConditionRepository:
    """Ordered completion-condition lists per task."""

    def __init__(self, database: WBSDatabase):
        self.db = database

    def get_conditions(self, task_id: str) -> List[Dict[str, Any]]:
        with self.db.cursor() as cursor:
            cursor.execute("""
                SELECT id, description, order_index
                FROM task_completion_conditions
                WHERE task_id = ?
                ORDER BY order_index
            """, (task_id,))
            return [
                {"id": row["id"], "description": row["description"], "order": row["order_index"]}
                for row in cursor.fetchall()
            ]

    def sync_conditions(self, task_id: str,
                        desired: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """
        Replace the task's completion conditions with the desired list.

        Items carry "description" and optionally "id". A stored row is kept
        when its id matches, otherwise the first unclaimed row with the same
        description is reused. Blank descriptions are dropped.
        """
        wanted = []
        for item in desired:
            description = (item.get("description") or "").strip()
            if description:
                wanted.append({"id": item.get("id"), "description": description})

        with self.db.transaction() as cursor:
            cursor.execute(
                "SELECT id, description FROM task_completion_conditions WHERE task_id = ? ORDER BY order_index",
                (task_id,),
            )
            current = [(row["id"], row["description"]) for row in cursor.fetchall()]
            current_ids = {row_id for row_id, _ in current}

            by_description: Dict[str, List[str]] = defaultdict(list)
            for row_id, description in current:
                by_description[description].append(row_id)

            claimed = set()
            matches: List[Optional[str]] = []
            for item in wanted:
                match = None
                if item["id"] in current_ids and item["id"] not in claimed:
                    match = item["id"]
                else:
                    for candidate in by_description.get(item["description"], []):
                        if candidate not in claimed:
                            match = candidate
                            break
                if match is not None:
                    claimed.add(match)
                matches.append(match)

            for row_id in current_ids - claimed:
                cursor.execute("DELETE FROM task_completion_conditions WHERE id = ?", (row_id,))

            kept = [row_id for row_id in matches if row_id is not None]
            for index, row_id in enumerate(kept):
                cursor.execute(
                    "UPDATE task_completion_conditions SET order_index = ? WHERE id = ?",
                    (-(index + 1), row_id),
                )

            now = current_time_str()
            for index, (item, row_id) in enumerate(zip(wanted, matches)):
                if row_id is not None:
                    cursor.execute("""
                        UPDATE task_completion_conditions
                        SET order_index = ?, description = ?, updated_at = ?
                        WHERE id = ?
                    """, (index, item["description"], now, row_id))
                else:
                    cursor.execute("""
                        INSERT INTO task_completion_conditions
                            (id, task_id, description, order_index, created_at, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?)
                    """, (str(uuid.uuid4()), task_id, item["description"], index, now, now))

        return self.get_conditions(task_id)
