"""
Pydantic argument models for the WBS tool catalog.

Each tool validates its `arguments` object against one of these models at the
dispatcher boundary. Wire names are camelCase; the models expose snake_case
attributes and `to_kwargs()` hands repositories snake_case dictionaries.
The JSON schemas published by `tools/list` are generated from the same models.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class TaskStatus(str, Enum):
    """Task status vocabulary. Any value may follow any other."""

    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"


class ArtifactRole(str, Enum):
    DELIVERABLE = "deliverable"
    PREREQUISITE = "prerequisite"


class ToolArguments(BaseModel):
    """Base for tool argument models: camelCase aliases, snake_case attributes."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=True,
    )

    def to_kwargs(self) -> Dict[str, Any]:
        """Only the fields the caller actually sent, keyed by attribute name."""
        return self.model_dump(exclude_unset=True)


def _require_text(value: Optional[str]) -> Optional[str]:
    if value is not None and not value.strip():
        raise ValueError("must not be blank")
    return value


class ArtifactAssignmentInput(ToolArguments):
    artifact_id: str = Field(..., min_length=1, description="Artifact ID")
    crud_operations: Optional[str] = Field(
        None, description="Optional CRUD tag describing how the task touches the artifact, e.g. 'CU'"
    )


class CompletionConditionInput(ToolArguments):
    description: str = Field(..., description="Condition text; blank entries are dropped")
    id: Optional[str] = Field(None, description="Existing condition ID to keep")


class TaskFieldsMixin(ToolArguments):
    """Writable task fields shared by create, update and import."""

    description: Optional[str] = Field(None, description="Task description")
    assignee: Optional[str] = Field(None, description="Person or agent responsible")
    status: Optional[TaskStatus] = Field(None, description="Task status")
    estimate: Optional[str] = Field(None, description="Free-form estimate, e.g. '3d'")
    deliverables: Optional[List[ArtifactAssignmentInput]] = Field(
        None, description="Full ordered list of artifacts this task produces"
    )
    prerequisites: Optional[List[ArtifactAssignmentInput]] = Field(
        None, description="Full ordered list of artifacts this task needs"
    )
    completion_conditions: Optional[List[CompletionConditionInput]] = Field(
        None, description="Full ordered list of completion conditions"
    )

    @field_validator("deliverables", "prerequisites", mode="before")
    @classmethod
    def accept_bare_artifact_ids(cls, v):
        """Allow plain artifact id strings in place of assignment objects."""
        if isinstance(v, list):
            return [{"artifactId": item} if isinstance(item, str) else item for item in v]
        return v

    @field_validator("completion_conditions", mode="before")
    @classmethod
    def accept_bare_conditions(cls, v):
        """Allow plain strings in place of condition objects."""
        if isinstance(v, list):
            return [{"description": item} if isinstance(item, str) else item for item in v]
        return v

    @field_validator("title", check_fields=False)
    @classmethod
    def title_not_blank(cls, v):
        return _require_text(v)


class CreateTaskArgs(TaskFieldsMixin):
    title: str = Field(..., min_length=1, description="Task title")
    parent_id: Optional[str] = Field(None, description="Parent task ID; omit for a root task")


class GetTaskArgs(ToolArguments):
    task_id: str = Field(..., min_length=1, description="Task ID")


class UpdateTaskArgs(TaskFieldsMixin):
    task_id: str = Field(..., min_length=1, description="Task ID")
    title: Optional[str] = Field(None, description="New title")
    if_version: Optional[int] = Field(
        None, ge=1, description="Version last read by the caller; stale versions are rejected"
    )


class ListTasksArgs(ToolArguments):
    parent_id: Optional[str] = Field(None, description="Parent task ID; omit to list root tasks")
    status: Optional[TaskStatus] = Field(None, description="Only tasks with this status")


class DeleteTaskArgs(ToolArguments):
    task_id: str = Field(..., min_length=1, description="Task ID; its whole subtree is deleted")


class MoveTaskArgs(ToolArguments):
    task_id: str = Field(..., min_length=1, description="Task ID")
    new_parent_id: Optional[str] = Field(None, description="New parent task ID; omit to make it a root")
    if_version: Optional[int] = Field(None, ge=1, description="Version last read by the caller")


class ImportTaskItem(TaskFieldsMixin):
    """One task in a bulk import, with nested children."""

    title: str = Field(..., min_length=1, description="Task title")
    parent_id: Optional[str] = Field(None, description="Existing parent for a top-level item")
    children: Optional[List["ImportTaskItem"]] = Field(None, description="Nested sub-tasks")


class ImportTasksArgs(ToolArguments):
    tasks: List[ImportTaskItem] = Field(..., min_length=1, description="Tasks to create")
    parent_id: Optional[str] = Field(None, description="Existing task to attach top-level items to")


class GetTaskHistoryArgs(ToolArguments):
    task_id: str = Field(..., min_length=1, description="Task ID (deleted tasks keep their history)")
    limit: Optional[int] = Field(None, ge=1, description="Return only the most recent entries")


class GetNextTaskArgs(ToolArguments):
    pass


class CompletionAudit(ToolArguments):
    id: str = Field(..., description="Completion condition ID")
    ok: bool = Field(..., description="Whether the condition is satisfied")


class RequestTaskCompletionArgs(ToolArguments):
    task_id: str = Field(..., min_length=1, description="Task ID")
    audits: List[CompletionAudit] = Field(
        default_factory=list, description="One audit per completion condition"
    )


class CreateArtifactArgs(ToolArguments):
    title: str = Field(..., min_length=1, description="Unique artifact title")
    uri: Optional[str] = Field(None, description="Where the artifact lives")
    description: Optional[str] = Field(None, description="Artifact description")

    @field_validator("title")
    @classmethod
    def title_not_blank(cls, v):
        return _require_text(v)


class GetArtifactArgs(ToolArguments):
    artifact_id: str = Field(..., min_length=1, description="Artifact ID")


class UpdateArtifactArgs(ToolArguments):
    artifact_id: str = Field(..., min_length=1, description="Artifact ID")
    title: Optional[str] = Field(None, description="New unique title")
    uri: Optional[str] = Field(None, description="New URI")
    description: Optional[str] = Field(None, description="New description")
    if_version: Optional[int] = Field(None, ge=1, description="Version last read by the caller")

    @field_validator("title")
    @classmethod
    def title_not_blank(cls, v):
        return _require_text(v)


class DeleteArtifactArgs(ToolArguments):
    artifact_id: str = Field(..., min_length=1, description="Artifact ID")


class ListArtifactsArgs(ToolArguments):
    pass


class CreateDependencyArgs(ToolArguments):
    dependee_id: str = Field(..., min_length=1, description="Upstream task ID")
    dependency_id: str = Field(..., min_length=1, description="Downstream task ID that waits on the dependee")
    artifact_ids: Optional[List[str]] = Field(None, description="Ordered artifacts handed over along the edge")


class UpdateDependencyArgs(ToolArguments):
    dependency_record_id: str = Field(..., min_length=1, description="Dependency record ID")
    dependee_id: Optional[str] = Field(None, description="New upstream task ID")
    dependency_id: Optional[str] = Field(None, description="New downstream task ID")
    artifact_ids: Optional[List[str]] = Field(None, description="Replacement artifact list")


class DeleteDependencyArgs(ToolArguments):
    dependency_record_id: str = Field(..., min_length=1, description="Dependency record ID")


class ListDependenciesArgs(ToolArguments):
    task_id: Optional[str] = Field(None, description="Only edges touching this task")


ImportTaskItem.model_rebuild()
