"""
Bulk Task Importer

Imports a task forest (with nested children) and optional artifacts from a
YAML or JSON document in a single transaction. Task deliverables and
prerequisites may reference artifacts by title; titles are resolved to ids
before the tasks are validated.

Accepted document shapes:

    tasks:                      # or a bare list of tasks
      - title: Design
        deliverables: [Spec]    # artifact title or id
        children:
          - title: Draft
    artifacts:
      - title: Spec
        uri: docs/spec.md
"""

import copy
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import ValidationError as ArgumentValidationError

from .artifact_repository import ArtifactRepository
from .database import WBSDatabase
from .models import ImportTasksArgs
from .task_repository import TaskRepository

logger = logging.getLogger(__name__)


def _normalize_document(data: Any) -> Dict[str, Any]:
    if isinstance(data, list):
        return {"tasks": data, "artifacts": []}
    if not isinstance(data, dict):
        raise ValueError("Import document must be a list of tasks or a mapping with a 'tasks' list")
    tasks = data.get("tasks")
    if not isinstance(tasks, list):
        raise ValueError("Import document 'tasks' must be a list")
    artifacts = data.get("artifacts") or []
    if not isinstance(artifacts, list):
        raise ValueError("Import document 'artifacts' must be a list")
    return {"tasks": tasks, "artifacts": artifacts}


def _resolve_artifact_refs(tasks: List[Any], title_to_id: Dict[str, str]) -> None:
    """Replace artifact titles with ids in deliverables/prerequisites, in place."""
    stack = list(tasks)
    while stack:
        item = stack.pop()
        if not isinstance(item, dict):
            continue
        for key in ("deliverables", "prerequisites"):
            entries = item.get(key)
            if not isinstance(entries, list):
                continue
            for index, entry in enumerate(entries):
                if isinstance(entry, str) and entry in title_to_id:
                    entries[index] = title_to_id[entry]
                elif isinstance(entry, dict):
                    ref = entry.get("artifactId", entry.get("artifact_id"))
                    if isinstance(ref, str) and ref in title_to_id:
                        entry["artifactId"] = title_to_id[ref]
                        entry.pop("artifact_id", None)
        stack.extend(item.get("children") or [])


def import_tasks(db: WBSDatabase, data: Any, parent_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Import tasks and artifacts from an already parsed document.

    Artifacts whose title already exists are reused rather than duplicated.

    Args:
        db: WBSDatabase instance
        data: Parsed document (see module docstring)
        parent_id: Existing task to attach top-level tasks to

    Returns:
        Dict with import statistics and the created task ids

    Raises:
        ValueError: For malformed documents or invalid task fields
        WBSError: For references to missing tasks or artifacts
    """
    document = _normalize_document(copy.deepcopy(data))
    artifacts = ArtifactRepository(db)
    tasks = TaskRepository(db)
    stats = {"artifacts_created": 0, "artifacts_reused": 0, "tasks_created": 0,
             "task_ids": [], "root_ids": []}

    with db.transaction():
        title_to_id = {artifact["title"]: artifact["id"] for artifact in artifacts.list_artifacts()}
        for entry in document["artifacts"]:
            if not isinstance(entry, dict) or not entry.get("title"):
                raise ValueError(f"Artifact entries need a title: {entry!r}")
            if entry["title"] in title_to_id:
                stats["artifacts_reused"] += 1
                continue
            created = artifacts.create_artifact(
                entry["title"], uri=entry.get("uri"), description=entry.get("description")
            )
            title_to_id[created["title"]] = created["id"]
            stats["artifacts_created"] += 1

        _resolve_artifact_refs(document["tasks"], title_to_id)
        try:
            args = ImportTasksArgs.model_validate({"tasks": document["tasks"], "parentId": parent_id})
        except ArgumentValidationError as e:
            raise ValueError(f"Invalid task data: {e}") from e

        result = tasks.import_tasks(args.to_kwargs()["tasks"], parent_id=parent_id)
        stats["tasks_created"] = result["count"]
        stats["task_ids"] = result["createdIds"]
        stats["root_ids"] = result["rootIds"]

    logger.info(
        f"Imported {stats['tasks_created']} tasks, "
        f"{stats['artifacts_created']} new artifacts ({stats['artifacts_reused']} reused)"
    )
    return stats


def import_tasks_from_file(db: WBSDatabase, file_path: Union[str, Path],
                           parent_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Import tasks from a YAML (or JSON) file.

    Args:
        db: WBSDatabase instance
        file_path: Path to the document
        parent_id: Existing task to attach top-level tasks to

    Returns:
        Dict with import results
    """
    try:
        with open(file_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        raise FileNotFoundError(f"Import file not found: {file_path}")
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML format: {e}") from e

    return import_tasks(db, data, parent_id=parent_id)
