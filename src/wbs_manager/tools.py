"""
MCP Tools Implementation for the WBS server

Provides the tool catalog an MCP client (editor UI or LLM agent) uses to read
and edit the work breakdown structure. Each tool is a class with a pydantic
argument model; the dispatcher validates `arguments` against that model and
calls `apply()` with the parsed instance.

Key Features:
- BaseTool abstract class wiring the task, artifact and dependency repositories
- Task tools: create/get/update/list/delete/move/import/history
- Agent workflow tools: getNextTask, requestTaskCompletion
- Artifact and dependency tools
- Text responses: JSON payloads for reads, "✅"/"❌" status messages for writes
"""

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Type

from .artifact_repository import ArtifactRepository
from .database import WBSDatabase
from .dependency_repository import DependencyRepository
from .exceptions import ConflictError, WBSError
from .models import (
    CreateArtifactArgs,
    CreateDependencyArgs,
    CreateTaskArgs,
    DeleteArtifactArgs,
    DeleteDependencyArgs,
    DeleteTaskArgs,
    GetArtifactArgs,
    GetNextTaskArgs,
    GetTaskArgs,
    GetTaskHistoryArgs,
    ImportTasksArgs,
    ListArtifactsArgs,
    ListDependenciesArgs,
    ListTasksArgs,
    MoveTaskArgs,
    RequestTaskCompletionArgs,
    ToolArguments,
    UpdateArtifactArgs,
    UpdateDependencyArgs,
    UpdateTaskArgs,
)
from .task_repository import TaskRepository

logger = logging.getLogger(__name__)

SUCCESS_MARK = "✅"
FAILURE_MARK = "❌"


def tool_result(text: str) -> Dict[str, Any]:
    """Wrap tool text in the MCP tools/call result shape."""
    return {
        "content": [{"type": "text", "text": text}],
        "isError": text.startswith(FAILURE_MARK),
    }


def _dumps(payload: Any) -> str:
    return json.dumps(payload, indent=2, ensure_ascii=False)


class BaseTool(ABC):
    """
    Abstract base class for WBS tools.

    Subclasses set `name`, `description` and `args_model` and implement
    `apply()`. Repository errors (WBSError) are turned into failure text by
    `run_safely()`; anything else propagates to the dispatcher, which reports
    it as an internal error.
    """

    name: str = ""
    description: str = ""
    args_model: Type[ToolArguments] = ToolArguments
    failure_prefix: str = "Operation failed"

    def __init__(self, database: WBSDatabase):
        """
        Initialize tool with the shared database.

        Args:
            database: WBSDatabase instance for data operations
        """
        self.db = database
        self.tasks = TaskRepository(database)
        self.artifacts = ArtifactRepository(database)
        self.dependencies = DependencyRepository(database)

    @classmethod
    def input_schema(cls) -> Dict[str, Any]:
        """JSON schema of the camelCase arguments object."""
        schema = cls.args_model.model_json_schema(by_alias=True)
        schema.pop("title", None)
        schema.setdefault("properties", {})
        return schema

    @classmethod
    def definition(cls) -> Dict[str, Any]:
        """Catalog entry for tools/list."""
        return {
            "name": cls.name,
            "description": cls.description,
            "inputSchema": cls.input_schema(),
        }

    @abstractmethod
    async def apply(self, args: ToolArguments) -> str:
        """
        Apply the tool operation with validated arguments.

        Returns:
            Response text for the client
        """
        pass

    async def run_safely(self, args: ToolArguments) -> str:
        """Run apply() and translate domain errors into failure text."""
        try:
            return await self.apply(args)
        except ConflictError as e:
            logger.warning(f"{self.name}: version conflict: {e}")
            return self._format_error_response(str(e))
        except WBSError as e:
            logger.info(f"{self.name} rejected: {e}")
            return self._format_error_response(f"{self.failure_prefix}: {e}")

    def _format_success_response(self, message: str, payload: Any = None,
                                 entity_id: Optional[str] = None) -> str:
        """
        Format a successful write as marker, message, optional ID line and JSON.

        Args:
            message: Human readable summary
            payload: Optional data appended as pretty JSON
            entity_id: Optional id rendered as an "ID: <id>" line
        """
        parts = [f"{SUCCESS_MARK} {message}"]
        if entity_id is not None:
            parts.append(f"ID: {entity_id}")
        if payload is not None:
            parts.append(_dumps(payload))
        return "\n\n".join(parts)

    def _format_error_response(self, message: str) -> str:
        return f"{FAILURE_MARK} {message}"

    def _format_payload(self, payload: Any) -> str:
        return _dumps(payload)


class CreateTaskTool(BaseTool):
    """Create a task, optionally under a parent, with artifacts and completion conditions."""

    name = "createTask"
    description = (
        "Create a task in the work breakdown structure. Omit parentId for a root task. "
        "deliverables/prerequisites reference existing artifacts; completionConditions are "
        "checked by requestTaskCompletion."
    )
    args_model = CreateTaskArgs
    failure_prefix = "Failed to create task"

    async def apply(self, args: CreateTaskArgs) -> str:
        task = self.tasks.create_task(**args.to_kwargs())
        return self._format_success_response("Task created successfully!", task, entity_id=task["id"])


class GetTaskTool(BaseTool):
    name = "getTask"
    description = (
        "Get a task with its children, deliverables, prerequisites, completion conditions, "
        "dependees and dependents."
    )
    args_model = GetTaskArgs
    failure_prefix = "Failed to get task"

    async def apply(self, args: GetTaskArgs) -> str:
        return self._format_payload(self.tasks.get_task(args.task_id))


class UpdateTaskTool(BaseTool):
    """
    Update task fields with optimistic concurrency.

    Pass ifVersion with the version last read; if another writer got there
    first the update is rejected and nothing changes. Supplied lists replace
    the stored lists as a whole.
    """

    name = "updateTask"
    description = (
        "Update a task. Only supplied fields change; supplied lists replace the stored lists. "
        "Pass ifVersion to reject the write if the task was modified since it was read."
    )
    args_model = UpdateTaskArgs
    failure_prefix = "Failed to update task"

    async def apply(self, args: UpdateTaskArgs) -> str:
        fields = args.to_kwargs()
        task_id = fields.pop("task_id")
        if_version = fields.pop("if_version", None)
        task = self.tasks.update_task(task_id, fields, if_version=if_version)
        return self._format_success_response("Task updated successfully!", task, entity_id=task_id)


class ListTasksTool(BaseTool):
    name = "listTasks"
    description = "List the direct children of parentId (root tasks when omitted), oldest first."
    args_model = ListTasksArgs
    failure_prefix = "Failed to list tasks"

    async def apply(self, args: ListTasksArgs) -> str:
        tasks = self.tasks.list_tasks(parent_id=args.parent_id, status=args.status)
        logger.info(f"Listed {len(tasks)} tasks under {args.parent_id or 'root'}")
        return self._format_payload(tasks)


class DeleteTaskTool(BaseTool):
    name = "deleteTask"
    description = "Delete a task and its whole subtree, including dependencies touching the subtree."
    args_model = DeleteTaskArgs
    failure_prefix = "Failed to delete task"

    async def apply(self, args: DeleteTaskArgs) -> str:
        result = self.tasks.delete_task(args.task_id)
        return self._format_success_response("Task deleted successfully!", result, entity_id=args.task_id)


class MoveTaskTool(BaseTool):
    name = "moveTask"
    description = (
        "Move a task under newParentId (omit to make it a root). Moving a task under itself "
        "or one of its descendants is rejected."
    )
    args_model = MoveTaskArgs
    failure_prefix = "Failed to move task"

    async def apply(self, args: MoveTaskArgs) -> str:
        task = self.tasks.move_task(args.task_id, args.new_parent_id, if_version=args.if_version)
        return self._format_success_response("Task moved successfully!", task, entity_id=args.task_id)


class ImportTasksTool(BaseTool):
    name = "importTasks"
    description = (
        "Bulk-create tasks. Each item takes createTask fields plus nested children. "
        "The import is all-or-nothing."
    )
    args_model = ImportTasksArgs
    failure_prefix = "Failed to import tasks"

    async def apply(self, args: ImportTasksArgs) -> str:
        kwargs = args.to_kwargs()
        result = self.tasks.import_tasks(kwargs["tasks"], parent_id=kwargs.get("parent_id"))
        return self._format_success_response(f"Imported {result['count']} tasks successfully!", result)


class GetTaskHistoryTool(BaseTool):
    name = "getTaskHistory"
    description = "Audit trail of a task in version order. Deleted tasks keep their history."
    args_model = GetTaskHistoryArgs
    failure_prefix = "Failed to get task history"

    async def apply(self, args: GetTaskHistoryArgs) -> str:
        return self._format_payload(self.tasks.get_task_history(args.task_id, limit=args.limit))


class GetNextTaskTool(BaseTool):
    """
    Agent entry point: hands out the next task to work on.

    An in-progress task is returned first so an interrupted agent resumes its
    work. Otherwise the oldest runnable pending leaf is claimed.
    """

    name = "getNextTask"
    description = (
        "Return the task to work on next: the current in-progress task, or the oldest pending "
        "leaf task whose dependees are all completed (which is set to in-progress)."
    )
    args_model = GetNextTaskArgs
    failure_prefix = "Failed to get next task"

    async def apply(self, args: GetNextTaskArgs) -> str:
        task = self.tasks.claim_next_task()
        if task is None:
            return self._format_success_response("No runnable task found. All work is done or blocked.")
        return self._format_payload(task)


class RequestTaskCompletionTool(BaseTool):
    name = "requestTaskCompletion"
    description = (
        "Mark a task completed. audits must contain {id, ok: true} for every completion "
        "condition of the task; otherwise the outstanding conditions are returned."
    )
    args_model = RequestTaskCompletionArgs
    failure_prefix = "Failed to complete task"

    async def apply(self, args: RequestTaskCompletionArgs) -> str:
        audits = [audit.model_dump() for audit in args.audits]
        result = self.tasks.request_completion(args.task_id, audits)
        if not result["accepted"]:
            outstanding = ", ".join(c["description"] for c in result["outstanding"])
            return self._format_error_response(
                f"{self.failure_prefix}: completion conditions not satisfied: {outstanding}"
            )
        return self._format_success_response("Task completed successfully!", result["task"], entity_id=args.task_id)


class CreateArtifactTool(BaseTool):
    name = "createArtifact"
    description = "Create an artifact (a document, file or other work product) with a unique title."
    args_model = CreateArtifactArgs
    failure_prefix = "Failed to create artifact"

    async def apply(self, args: CreateArtifactArgs) -> str:
        artifact = self.artifacts.create_artifact(args.title, uri=args.uri, description=args.description)
        return self._format_success_response("Artifact created successfully!", artifact, entity_id=artifact["id"])


class GetArtifactTool(BaseTool):
    name = "getArtifact"
    description = "Get an artifact and the tasks it is assigned to."
    args_model = GetArtifactArgs
    failure_prefix = "Failed to get artifact"

    async def apply(self, args: GetArtifactArgs) -> str:
        return self._format_payload(self.artifacts.get_artifact(args.artifact_id))


class UpdateArtifactTool(BaseTool):
    name = "updateArtifact"
    description = "Update artifact fields. Pass ifVersion to reject stale writes."
    args_model = UpdateArtifactArgs
    failure_prefix = "Failed to update artifact"

    async def apply(self, args: UpdateArtifactArgs) -> str:
        artifact = self.artifacts.update_artifact(
            args.artifact_id,
            title=args.title,
            uri=args.uri,
            description=args.description,
            if_version=args.if_version,
        )
        return self._format_success_response("Artifact updated successfully!", artifact, entity_id=args.artifact_id)


class DeleteArtifactTool(BaseTool):
    name = "deleteArtifact"
    description = "Delete an artifact and remove it from every task and dependency that references it."
    args_model = DeleteArtifactArgs
    failure_prefix = "Failed to delete artifact"

    async def apply(self, args: DeleteArtifactArgs) -> str:
        result = self.artifacts.delete_artifact(args.artifact_id)
        return self._format_success_response("Artifact deleted successfully!", result, entity_id=args.artifact_id)


class ListArtifactsTool(BaseTool):
    name = "listArtifacts"
    description = "List all artifacts ordered by title."
    args_model = ListArtifactsArgs
    failure_prefix = "Failed to list artifacts"

    async def apply(self, args: ListArtifactsArgs) -> str:
        return self._format_payload(self.artifacts.list_artifacts())


class CreateDependencyTool(BaseTool):
    name = "createDependency"
    description = (
        "Create a dependency: the task dependencyId waits on the task dependeeId. "
        "Self-dependencies, duplicates and cycles are rejected."
    )
    args_model = CreateDependencyArgs
    failure_prefix = "Failed to create dependency"

    async def apply(self, args: CreateDependencyArgs) -> str:
        dependency = self.dependencies.create_dependency(
            args.dependee_id, args.dependency_id, artifact_ids=args.artifact_ids
        )
        return self._format_success_response("Dependency created successfully!", dependency, entity_id=dependency["id"])


class UpdateDependencyTool(BaseTool):
    name = "updateDependency"
    description = "Change the endpoints and/or artifact list of a dependency. Cycles are rejected."
    args_model = UpdateDependencyArgs
    failure_prefix = "Failed to update dependency"

    async def apply(self, args: UpdateDependencyArgs) -> str:
        dependency = self.dependencies.update_dependency(
            args.dependency_record_id,
            dependee_id=args.dependee_id,
            dependency_id=args.dependency_id,
            artifact_ids=args.artifact_ids,
        )
        return self._format_success_response(
            "Dependency updated successfully!", dependency, entity_id=args.dependency_record_id
        )


class DeleteDependencyTool(BaseTool):
    name = "deleteDependency"
    description = "Delete a dependency record."
    args_model = DeleteDependencyArgs
    failure_prefix = "Failed to delete dependency"

    async def apply(self, args: DeleteDependencyArgs) -> str:
        self.dependencies.delete_dependency(args.dependency_record_id)
        return self._format_success_response("Dependency deleted successfully!", entity_id=args.dependency_record_id)


class ListDependenciesTool(BaseTool):
    name = "listDependencies"
    description = "List dependency records, optionally only those touching taskId."
    args_model = ListDependenciesArgs
    failure_prefix = "Failed to list dependencies"

    async def apply(self, args: ListDependenciesArgs) -> str:
        return self._format_payload(self.dependencies.list_dependencies(task_id=args.task_id))


# Tool registry for MCP server integration
AVAILABLE_TOOLS: Dict[str, Type[BaseTool]] = {
    tool.name: tool
    for tool in (
        CreateTaskTool,
        GetTaskTool,
        UpdateTaskTool,
        ListTasksTool,
        DeleteTaskTool,
        MoveTaskTool,
        ImportTasksTool,
        GetTaskHistoryTool,
        GetNextTaskTool,
        RequestTaskCompletionTool,
        CreateArtifactTool,
        GetArtifactTool,
        UpdateArtifactTool,
        DeleteArtifactTool,
        ListArtifactsTool,
        CreateDependencyTool,
        UpdateDependencyTool,
        DeleteDependencyTool,
        ListDependenciesTool,
    )
}


def create_tool_instance(tool_name: str, database: WBSDatabase) -> BaseTool:
    """
    Factory function to create tool instances with dependencies.

    Args:
        tool_name: Name of the tool to create
        database: WBSDatabase instance for data operations

    Returns:
        Tool instance ready for use

    Raises:
        KeyError: If tool_name is not found in AVAILABLE_TOOLS
    """
    if tool_name not in AVAILABLE_TOOLS:
        raise KeyError(f"Unknown tool '{tool_name}'. Available tools: {list(AVAILABLE_TOOLS.keys())}")

    tool_class = AVAILABLE_TOOLS[tool_name]
    return tool_class(database)
