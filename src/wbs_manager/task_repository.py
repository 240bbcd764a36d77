"""
Task Repository

Owns the task hierarchy: creation, versioned updates, moves with ancestor
checks, subtree deletion, listing, bulk import, history and the agent-facing
"claim next task" / "request completion" workflow. Every mutation runs in one
store transaction and appends a row to task_history.
"""

import logging
import sqlite3
import uuid
from collections import deque
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .artifact_repository import CompletionConditionRepository, TaskArtifactRepository
from .database import WBSDatabase, chunked, current_time_str, placeholders
from .dependency_repository import DependencyRepository
from .exceptions import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

TASK_STATUSES = ("pending", "in-progress", "completed", "blocked")
SCALAR_FIELDS = ("title", "description", "assignee", "status", "estimate")
LIST_FIELDS = ("deliverables", "prerequisites", "completion_conditions")
# Scalar fields an explicit null clears; title and status always keep a value
CLEARABLE_FIELDS = ("description", "assignee", "estimate")


def _task_row_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
    task = {
        "id": row["id"],
        "parentId": row["parent_id"],
        "title": row["title"],
        "description": row["description"],
        "assignee": row["assignee"],
        "status": row["status"],
        "estimate": row["estimate"],
        "version": row["version"],
        "createdAt": row["created_at"],
        "updatedAt": row["updated_at"],
    }
    if "child_count" in row.keys():
        task["childCount"] = row["child_count"]
    return task


def _validate_status(status: Optional[str]) -> None:
    if status is not None and status not in TASK_STATUSES:
        raise ValidationError(f"Invalid status '{status}'. Valid options: {', '.join(TASK_STATUSES)}")


def _validate_title(title: Optional[str]) -> None:
    if title is None or not str(title).strip():
        raise ValidationError("Task title is required")


def _is_supplied(name: str, fields: Dict[str, Any]) -> bool:
    if name not in fields:
        return False
    return fields[name] is not None or name in CLEARABLE_FIELDS


class TaskRepository:
    """
    Repository for the task tree.

    Writes are guarded by optimistic concurrency: callers may pass the version
    they last read, and the UPDATE repeats the version in its WHERE clause so
    two writers on separate connections still see exactly one success.
    """

    def __init__(self, database: WBSDatabase):
        self.db = database
        self.assignments = TaskArtifactRepository(database)
        self.conditions = CompletionConditionRepository(database)
        self.dependencies = DependencyRepository(database)

    # -- helpers -------------------------------------------------------------

    def _fetch(self, cursor: sqlite3.Cursor, task_id: str) -> Optional[sqlite3.Row]:
        cursor.execute("SELECT * FROM tasks WHERE id = ?", (task_id,))
        return cursor.fetchone()

    def _require(self, cursor: sqlite3.Cursor, task_id: str, entity: str = "Task") -> sqlite3.Row:
        row = self._fetch(cursor, task_id)
        if row is None:
            raise NotFoundError(entity, task_id)
        return row

    def _append_history(self, cursor: sqlite3.Cursor, task_id: str, action: str,
                        snapshot: Optional[sqlite3.Row] = None, version: Optional[int] = None) -> None:
        """Append an audit row. Defaults to the task's current stored state."""
        if snapshot is None:
            snapshot = self._fetch(cursor, task_id)
        cursor.execute("""
            INSERT INTO task_history
                (id, task_id, version, action, parent_id, title, description, status,
                 assignee, estimate, changed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            str(uuid.uuid4()), task_id,
            version if version is not None else snapshot["version"],
            action, snapshot["parent_id"], snapshot["title"], snapshot["description"],
            snapshot["status"], snapshot["assignee"], snapshot["estimate"],
            current_time_str(),
        ))

    def _sync_lists(self, task_id: str, fields: Dict[str, Any]) -> None:
        if fields.get("deliverables") is not None:
            self.assignments.sync_assignments(task_id, "deliverable", fields["deliverables"])
        if fields.get("prerequisites") is not None:
            self.assignments.sync_assignments(task_id, "prerequisite", fields["prerequisites"])
        if fields.get("completion_conditions") is not None:
            self.conditions.sync_conditions(task_id, fields["completion_conditions"])

    def _apply_update(self, cursor: sqlite3.Cursor, row: sqlite3.Row,
                      fields: Dict[str, Any], action: str) -> None:
        """Write supplied fields with the version predicate and record history."""
        updates = {name: fields[name] for name in SCALAR_FIELDS if _is_supplied(name, fields)}
        set_clause = "".join(f"{column} = ?, " for column in updates)
        cursor.execute(
            f"UPDATE tasks SET {set_clause}version = version + 1, updated_at = ? "
            f"WHERE id = ? AND version = ?",
            (*updates.values(), current_time_str(), row["id"], row["version"]),
        )
        if cursor.rowcount == 0:
            current = self._fetch(cursor, row["id"])
            raise ConflictError("Task", row["version"], current["version"] if current else None)
        self._sync_lists(row["id"], fields)
        self._append_history(cursor, row["id"], action)

    # -- create / read ---------------------------------------------------------

    def create_task(self, title: str, parent_id: Optional[str] = None,
                    description: Optional[str] = None, assignee: Optional[str] = None,
                    status: Optional[str] = None, estimate: Optional[str] = None,
                    deliverables: Optional[Sequence[Dict[str, Any]]] = None,
                    prerequisites: Optional[Sequence[Dict[str, Any]]] = None,
                    completion_conditions: Optional[Sequence[Dict[str, Any]]] = None) -> Dict[str, Any]:
        """
        Create a task, optionally under a parent, with its ordered lists.

        Args:
            title: Non-blank title
            parent_id: Existing parent task, or None for a root task
            description: Free-form description
            assignee: Free-form assignee
            status: Initial status (default "pending")
            estimate: Free-form estimate, e.g. "3d"
            deliverables: Items with "artifact_id" and optional "crud_operations"
            prerequisites: Same shape as deliverables
            completion_conditions: Items with "description"

        Returns:
            Task detail as returned by get_task
        """
        _validate_title(title)
        status = status or "pending"
        _validate_status(status)

        task_id = str(uuid.uuid4())
        now = current_time_str()
        with self.db.transaction() as cursor:
            if parent_id is not None:
                self._require(cursor, parent_id, "Parent task")
            cursor.execute("""
                INSERT INTO tasks
                    (id, parent_id, title, description, assignee, status, estimate, version, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, 1, ?, ?)
            """, (task_id, parent_id, title, description, assignee, status, estimate, now, now))
            self._sync_lists(task_id, {
                "deliverables": deliverables,
                "prerequisites": prerequisites,
                "completion_conditions": completion_conditions,
            })
            self._append_history(cursor, task_id, "create")

        logger.info(f"Created task {task_id} '{title}'" + (f" under {parent_id}" if parent_id else ""))
        return self.get_task(task_id)

    def get_task(self, task_id: str) -> Dict[str, Any]:
        """
        Task with children, artifacts, completion conditions and dependencies.

        Raises:
            NotFoundError: If the task does not exist
        """
        with self.db.cursor() as cursor:
            row = self._require(cursor, task_id)
            task = _task_row_to_dict(row)
            cursor.execute("""
                SELECT id, title, status, version
                FROM tasks WHERE parent_id = ?
                ORDER BY created_at, rowid
            """, (task_id,))
            task["children"] = [dict(child) for child in cursor.fetchall()]
            task["childCount"] = len(task["children"])
            task["deliverables"] = self.assignments.get_assignments(task_id, "deliverable")
            task["prerequisites"] = self.assignments.get_assignments(task_id, "prerequisite")
            task["completionConditions"] = self.conditions.get_conditions(task_id)
            task["dependees"] = self.dependencies.collect_dependees(task_id)
            task["dependents"] = self.dependencies.collect_dependents(task_id)
        return task

    def list_tasks(self, parent_id: Optional[str] = None,
                   status: Optional[str] = None) -> List[Dict[str, Any]]:
        """Immediate children of parent_id (roots when None), oldest first."""
        _validate_status(status)
        query = """
            SELECT t.*,
                   (SELECT COUNT(*) FROM tasks c WHERE c.parent_id = t.id) AS child_count
            FROM tasks t
            WHERE t.parent_id IS ?
        """
        params: List[Any] = [parent_id]
        if status is not None:
            query += " AND t.status = ?"
            params.append(status)
        query += " ORDER BY t.created_at, t.rowid"

        with self.db.cursor() as cursor:
            cursor.execute(query, params)
            return [_task_row_to_dict(row) for row in cursor.fetchall()]

    def get_task_history(self, task_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        Audit rows for a task in version order, including deleted tasks.

        Args:
            task_id: Task whose history to read
            limit: Only the most recent `limit` rows when given
        """
        if limit is not None and limit <= 0:
            raise ValidationError("History limit must be positive")
        with self.db.cursor() as cursor:
            if limit is None:
                cursor.execute("""
                    SELECT * FROM task_history WHERE task_id = ?
                    ORDER BY version, changed_at
                """, (task_id,))
                rows = cursor.fetchall()
            else:
                cursor.execute("""
                    SELECT * FROM task_history WHERE task_id = ?
                    ORDER BY version DESC, changed_at DESC
                    LIMIT ?
                """, (task_id, limit))
                rows = list(reversed(cursor.fetchall()))
        return [
            {
                "id": row["id"],
                "taskId": row["task_id"],
                "version": row["version"],
                "action": row["action"],
                "parentId": row["parent_id"],
                "title": row["title"],
                "description": row["description"],
                "status": row["status"],
                "assignee": row["assignee"],
                "estimate": row["estimate"],
                "changedAt": row["changed_at"],
            }
            for row in rows
        ]

    # -- mutations -----------------------------------------------------------

    def update_task(self, task_id: str, fields: Dict[str, Any],
                    if_version: Optional[int] = None) -> Dict[str, Any]:
        """
        Merge supplied fields into a task.

        Omitted fields are unchanged. An explicit None clears description,
        assignee or estimate and is ignored for title, status and the lists.
        A supplied list replaces the stored list as a whole. A status-only
        update is recorded in history as a "status" action.

        Args:
            task_id: Task to update
            fields: Any of title, description, assignee, status, estimate,
                deliverables, prerequisites, completion_conditions
            if_version: Version the caller last read

        Returns:
            Updated task detail

        Raises:
            ConflictError: if_version does not match the stored version
        """
        supplied = {
            name: value for name, value in fields.items()
            if name in SCALAR_FIELDS + LIST_FIELDS and _is_supplied(name, fields)
        }
        if "title" in supplied:
            _validate_title(supplied["title"])
        _validate_status(supplied.get("status"))

        with self.db.transaction() as cursor:
            row = self._require(cursor, task_id)
            if if_version is not None and row["version"] != if_version:
                raise ConflictError("Task", if_version, row["version"])
            if not supplied:
                raise ValidationError("No task fields supplied for update")
            action = "status" if set(supplied) == {"status"} else "update"
            self._apply_update(cursor, row, supplied, action)

        logger.info(f"Updated task {task_id} ({', '.join(sorted(supplied))})")
        return self.get_task(task_id)

    def move_task(self, task_id: str, new_parent_id: Optional[str] = None,
                  if_version: Optional[int] = None) -> Dict[str, Any]:
        """
        Re-parent a task, rejecting moves that would create a cycle.

        The ancestor chain of new_parent_id is walked upward; meeting task_id
        on the way means the task would become its own ancestor. The walk is
        bounded by the number of stored tasks.
        """
        with self.db.transaction() as cursor:
            row = self._require(cursor, task_id)
            if if_version is not None and row["version"] != if_version:
                raise ConflictError("Task", if_version, row["version"])

            if new_parent_id == row["parent_id"]:
                logger.info(f"Task {task_id} already under {new_parent_id}; move skipped")
                noop = True
            else:
                noop = False
                if new_parent_id is not None:
                    self._require(cursor, new_parent_id, "Parent task")
                    self._check_not_descendant(cursor, task_id, new_parent_id)

                cursor.execute("""
                    UPDATE tasks SET parent_id = ?, version = version + 1, updated_at = ?
                    WHERE id = ? AND version = ?
                """, (new_parent_id, current_time_str(), task_id, row["version"]))
                if cursor.rowcount == 0:
                    current = self._fetch(cursor, task_id)
                    raise ConflictError("Task", row["version"], current["version"] if current else None)
                self._append_history(cursor, task_id, "move")

        if not noop:
            logger.info(f"Moved task {task_id} from {row['parent_id']} to {new_parent_id}")
        return self.get_task(task_id)

    def _check_not_descendant(self, cursor: sqlite3.Cursor, task_id: str, new_parent_id: str) -> None:
        cursor.execute("SELECT COUNT(*) FROM tasks")
        bound = cursor.fetchone()[0]
        node: Optional[str] = new_parent_id
        steps = 0
        while node is not None:
            if node == task_id:
                raise ValidationError("Cannot move a task under itself or one of its descendants")
            steps += 1
            if steps > bound:
                raise ValidationError(f"Ancestor chain of {new_parent_id} does not terminate")
            cursor.execute("SELECT parent_id FROM tasks WHERE id = ?", (node,))
            parent = cursor.fetchone()
            node = parent["parent_id"] if parent else None

    def delete_task(self, task_id: str) -> Dict[str, Any]:
        """
        Delete a task and its whole subtree.

        Collects the subtree with a breadth-first worklist, then removes
        dependency edges, artifact assignments and completion conditions
        touching the subtree before the tasks themselves. One "delete"
        history row is appended per removed task.

        Returns:
            Dict with the deleted ids (root first) and removed edge count
        """
        with self.db.transaction() as cursor:
            self._require(cursor, task_id)

            subtree: List[str] = []
            worklist = deque([task_id])
            while worklist:
                current = worklist.popleft()
                subtree.append(current)
                cursor.execute(
                    "SELECT id FROM tasks WHERE parent_id = ? ORDER BY created_at, rowid",
                    (current,),
                )
                worklist.extend(row["id"] for row in cursor.fetchall())

            for chunk in chunked(subtree):
                cursor.execute(f"SELECT * FROM tasks WHERE id IN ({placeholders(len(chunk))})", tuple(chunk))
                for snapshot in cursor.fetchall():
                    self._append_history(cursor, snapshot["id"], "delete",
                                         snapshot=snapshot, version=snapshot["version"] + 1)

            removed_edges = self.dependencies.delete_for_tasks(cursor, subtree)
            for chunk in chunked(subtree):
                marks = placeholders(len(chunk))
                cursor.execute(f"DELETE FROM task_artifacts WHERE task_id IN ({marks})", tuple(chunk))
                cursor.execute(f"DELETE FROM task_completion_conditions WHERE task_id IN ({marks})", tuple(chunk))
            # Leaves first so no row ever points at a deleted parent
            for chunk in chunked(list(reversed(subtree))):
                cursor.execute(f"DELETE FROM tasks WHERE id IN ({placeholders(len(chunk))})", tuple(chunk))

        logger.info(f"Deleted task {task_id} with {len(subtree) - 1} descendants and {removed_edges} dependencies")
        return {"deletedIds": subtree, "removedDependencies": removed_edges}

    # -- bulk import -----------------------------------------------------------

    def import_tasks(self, items: Sequence[Dict[str, Any]],
                     parent_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Create a forest of tasks in a single transaction.

        Items use create_task keyword names plus an optional "children" list.
        Any invalid item rolls back the whole import.

        Args:
            items: Top-level task items
            parent_id: Existing task to attach top-level items to

        Returns:
            Dict with created ids in creation order and the root ids
        """
        created: List[str] = []
        roots: List[str] = []
        with self.db.transaction():
            # Explicit stack keeps deep trees off the Python call stack
            stack: List[Tuple[Dict[str, Any], Optional[str], bool]] = [
                (item, item.get("parent_id") or parent_id, True) for item in reversed(items)
            ]
            while stack:
                item, item_parent, is_root = stack.pop()
                fields = {key: value for key, value in item.items() if key not in ("children", "parent_id")}
                task = self.create_task(parent_id=item_parent, **fields)
                created.append(task["id"])
                if is_root:
                    roots.append(task["id"])
                for child in reversed(item.get("children") or []):
                    stack.append((child, task["id"], False))

        logger.info(f"Imported {len(created)} tasks ({len(roots)} top-level)")
        return {"createdIds": created, "rootIds": roots, "count": len(created)}

    # -- agent workflow --------------------------------------------------------

    def claim_next_task(self) -> Optional[Dict[str, Any]]:
        """
        Pick the task an agent should work on next.

        Returns the oldest in-progress task when one exists. Otherwise takes the
        oldest pending leaf whose dependees are all completed and moves it to
        in-progress. Returns None when nothing is runnable.
        """
        with self.db.transaction() as cursor:
            cursor.execute("""
                SELECT * FROM tasks WHERE status = 'in-progress'
                ORDER BY updated_at, rowid LIMIT 1
            """)
            row = cursor.fetchone()
            if row is not None:
                task_id = row["id"]
            else:
                cursor.execute("""
                    SELECT t.* FROM tasks t
                    WHERE t.status = 'pending'
                      AND NOT EXISTS (SELECT 1 FROM tasks c WHERE c.parent_id = t.id)
                      AND NOT EXISTS (
                          SELECT 1 FROM dependencies d
                          JOIN tasks up ON up.id = d.dependee_task_id
                          WHERE d.dependency_task_id = t.id AND up.status <> 'completed'
                      )
                    ORDER BY t.created_at, t.rowid LIMIT 1
                """)
                row = cursor.fetchone()
                if row is None:
                    return None
                task_id = row["id"]
                self._apply_update(cursor, row, {"status": "in-progress"}, "status")
                logger.info(f"Task {task_id} claimed and set to in-progress")

        return self.get_task(task_id)

    def request_completion(self, task_id: str, audits: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Complete a task once every completion condition has a passing audit.

        Args:
            task_id: Task to complete
            audits: Items {"id": condition id, "ok": bool}

        Returns:
            Dict with "accepted", the outstanding conditions and, when
            accepted, the completed task
        """
        with self.db.transaction() as cursor:
            row = self._require(cursor, task_id)
            conditions = self.conditions.get_conditions(task_id)
            known = {condition["id"] for condition in conditions}
            verdicts: Dict[str, bool] = {}
            for audit in audits:
                if audit["id"] not in known:
                    raise ValidationError(f"Completion condition {audit['id']} does not belong to task {task_id}")
                verdicts[audit["id"]] = bool(audit.get("ok"))

            outstanding = [c for c in conditions if not verdicts.get(c["id"], False)]
            if outstanding:
                logger.info(f"Completion of task {task_id} refused: {len(outstanding)} conditions outstanding")
                return {"accepted": False, "taskId": task_id, "outstanding": outstanding}

            self._apply_update(cursor, row, {"status": "completed"}, "status")

        logger.info(f"Task {task_id} completed")
        return {"accepted": True, "taskId": task_id, "outstanding": [], "task": self.get_task(task_id)}
