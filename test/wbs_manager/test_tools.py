"""
Test Suite for the WBS tool catalog

Covers the BaseTool response helpers, the tool registry, camelCase input
schemas and each tool family against a real database.
"""

import json
from unittest.mock import MagicMock

import pytest

from wbs_manager.database import WBSDatabase
from wbs_manager.exceptions import ValidationError
from wbs_manager.models import CreateTaskArgs, GetTaskArgs, ToolArguments
from wbs_manager.tools import (
    AVAILABLE_TOOLS,
    BaseTool,
    CreateTaskTool,
    create_tool_instance,
    tool_result,
)


def _json_tail(text: str):
    """Parse the JSON block that follows the status line(s)."""
    return json.loads(text[text.index("{"):])


async def _call(database, name, **arguments):
    tool = create_tool_instance(name, database)
    return await tool.run_safely(tool.args_model.model_validate(arguments))


class TestBaseTool:
    """BaseTool helpers and error translation."""

    class ConcreteTestTool(BaseTool):
        name = "concrete"
        failure_prefix = "Failed to concrete"

        def __init__(self, database, error=None):
            super().__init__(database)
            self.error = error

        async def apply(self, args: ToolArguments) -> str:
            if self.error is not None:
                raise self.error
            return "test_result"

    @pytest.fixture
    def mock_database(self):
        return MagicMock(spec=WBSDatabase)

    def test_initialization(self, mock_database):
        tool = self.ConcreteTestTool(mock_database)
        assert tool.db is mock_database
        assert tool.tasks.db is mock_database

    def test_format_success_response(self, mock_database):
        tool = self.ConcreteTestTool(mock_database)
        text = tool._format_success_response("Task created successfully!", {"id": "t1"}, entity_id="t1")
        status, id_line, body = text.split("\n\n", 2)
        assert status == "✅ Task created successfully!"
        assert id_line == "ID: t1"
        assert json.loads(body) == {"id": "t1"}

    def test_format_error_response(self, mock_database):
        tool = self.ConcreteTestTool(mock_database)
        assert tool._format_error_response("boom") == "❌ boom"

    @pytest.mark.asyncio
    async def test_domain_error_becomes_failure_text(self, mock_database):
        tool = self.ConcreteTestTool(mock_database, error=ValidationError("bad input"))
        assert await tool.run_safely(ToolArguments()) == "❌ Failed to concrete: bad input"

    @pytest.mark.asyncio
    async def test_other_errors_propagate(self, mock_database):
        tool = self.ConcreteTestTool(mock_database, error=RuntimeError("disk gone"))
        with pytest.raises(RuntimeError):
            await tool.run_safely(ToolArguments())

    def test_tool_result_flags_failures(self):
        assert tool_result("✅ ok")["isError"] is False
        assert tool_result("❌ no")["isError"] is True
        assert tool_result('{"a": 1}')["content"] == [{"type": "text", "text": '{"a": 1}'}]


class TestRegistry:

    def test_all_tools_registered(self):
        assert set(AVAILABLE_TOOLS) == {
            "createTask", "getTask", "updateTask", "listTasks", "deleteTask", "moveTask",
            "importTasks", "getTaskHistory", "getNextTask", "requestTaskCompletion",
            "createArtifact", "getArtifact", "updateArtifact", "deleteArtifact", "listArtifacts",
            "createDependency", "updateDependency", "deleteDependency", "listDependencies",
        }

    def test_create_tool_instance(self, database):
        tool = create_tool_instance("createTask", database)
        assert isinstance(tool, CreateTaskTool)
        assert tool.db is database

    def test_unknown_tool(self, database):
        with pytest.raises(KeyError, match="Unknown tool"):
            create_tool_instance("launchRocket", database)

    def test_input_schema_uses_camel_case(self):
        schema = AVAILABLE_TOOLS["updateTask"].input_schema()
        assert schema["type"] == "object"
        assert {"taskId", "ifVersion", "completionConditions"} <= set(schema["properties"])
        assert schema["required"] == ["taskId"]

    def test_empty_schema_has_properties(self):
        schema = AVAILABLE_TOOLS["getNextTask"].definition()["inputSchema"]
        assert schema["properties"] == {}


class TestArgumentModels:

    def test_camel_case_aliases(self):
        args = CreateTaskArgs.model_validate({"title": "T", "parentId": "p1"})
        assert args.parent_id == "p1"
        assert args.to_kwargs() == {"title": "T", "parent_id": "p1"}

    def test_bare_strings_accepted_for_lists(self):
        args = CreateTaskArgs.model_validate({
            "title": "T",
            "deliverables": ["a1"],
            "completionConditions": ["tests pass"],
        })
        kwargs = args.to_kwargs()
        assert kwargs["deliverables"] == [{"artifact_id": "a1"}]
        assert kwargs["completion_conditions"] == [{"description": "tests pass"}]

    def test_blank_title_rejected(self):
        with pytest.raises(Exception):
            CreateTaskArgs.model_validate({"title": "   "})

    def test_missing_required_field(self):
        with pytest.raises(Exception):
            GetTaskArgs.model_validate({})


class TestTaskTools:

    @pytest.mark.asyncio
    async def test_create_and_get(self, database):
        text = await _call(database, "createTask", title="Design", completionConditions=["reviewed"])
        assert text.startswith("✅ Task created successfully!")
        created = _json_tail(text)
        assert f"ID: {created['id']}" in text

        detail = json.loads(await _call(database, "getTask", taskId=created["id"]))
        assert detail["title"] == "Design"
        assert detail["completionConditions"][0]["description"] == "reviewed"

    @pytest.mark.asyncio
    async def test_stale_update_reports_conflict(self, database):
        created = _json_tail(await _call(database, "createTask", title="Draft"))
        await _call(database, "updateTask", taskId=created["id"], title="First", ifVersion=1)

        text = await _call(database, "updateTask", taskId=created["id"], title="Second", ifVersion=1)
        assert text.startswith("❌")
        assert "modified by another user" in text

        detail = json.loads(await _call(database, "getTask", taskId=created["id"]))
        assert (detail["title"], detail["version"]) == ("First", 2)

    @pytest.mark.asyncio
    async def test_null_clears_description(self, database):
        created = _json_tail(await _call(database, "createTask", title="Draft", description="Old notes", assignee="ann"))
        text = await _call(database, "updateTask", taskId=created["id"], description=None, title=None)
        assert text.startswith("✅ Task updated successfully!")

        detail = json.loads(await _call(database, "getTask", taskId=created["id"]))
        assert (detail["title"], detail["description"], detail["assignee"]) == ("Draft", None, "ann")

    @pytest.mark.asyncio
    async def test_not_found_is_failure_text(self, database):
        text = await _call(database, "getTask", taskId="missing")
        assert text == "❌ Failed to get task: Task not found: missing"

    @pytest.mark.asyncio
    async def test_list_and_move(self, database):
        parent = _json_tail(await _call(database, "createTask", title="Parent"))
        child = _json_tail(await _call(database, "createTask", title="Child"))

        moved = await _call(database, "moveTask", taskId=child["id"], newParentId=parent["id"])
        assert moved.startswith("✅ Task moved successfully!")

        roots = json.loads(await _call(database, "listTasks"))
        assert [t["title"] for t in roots] == ["Parent"]
        children = json.loads(await _call(database, "listTasks", parentId=parent["id"]))
        assert [t["title"] for t in children] == ["Child"]

    @pytest.mark.asyncio
    async def test_import_and_delete(self, database):
        text = await _call(database, "importTasks", tasks=[
            {"title": "Root", "children": [{"title": "Leaf A"}, {"title": "Leaf B"}]},
        ])
        assert text.startswith("✅ Imported 3 tasks successfully!")
        result = _json_tail(text)

        deleted = _json_tail(await _call(database, "deleteTask", taskId=result["rootIds"][0]))
        assert len(deleted["deletedIds"]) == 3
        assert json.loads(await _call(database, "listTasks")) == []

    @pytest.mark.asyncio
    async def test_history(self, database):
        created = _json_tail(await _call(database, "createTask", title="T"))
        await _call(database, "updateTask", taskId=created["id"], status="in-progress")
        history = json.loads(await _call(database, "getTaskHistory", taskId=created["id"]))
        assert [entry["action"] for entry in history] == ["create", "status"]


class TestAgentWorkflowTools:

    @pytest.mark.asyncio
    async def test_next_task_and_completion(self, database):
        created = _json_tail(await _call(database, "createTask", title="Work", completionConditions=["done"]))

        claimed = json.loads(await _call(database, "getNextTask"))
        assert claimed["id"] == created["id"]
        assert claimed["status"] == "in-progress"

        refused = await _call(database, "requestTaskCompletion", taskId=created["id"], audits=[])
        assert refused.startswith("❌ Failed to complete task: completion conditions not satisfied: done")

        condition_id = claimed["completionConditions"][0]["id"]
        accepted = await _call(
            database, "requestTaskCompletion",
            taskId=created["id"], audits=[{"id": condition_id, "ok": True}],
        )
        assert accepted.startswith("✅ Task completed successfully!")
        assert _json_tail(accepted)["status"] == "completed"

    @pytest.mark.asyncio
    async def test_nothing_runnable(self, database):
        text = await _call(database, "getNextTask")
        assert text.startswith("✅ No runnable task found")


class TestArtifactAndDependencyTools:

    @pytest.mark.asyncio
    async def test_artifact_lifecycle(self, database):
        created = _json_tail(await _call(database, "createArtifact", title="Spec", uri="docs/spec.md"))
        updated = await _call(database, "updateArtifact", artifactId=created["id"], uri="v2.md", ifVersion=1)
        assert _json_tail(updated)["version"] == 2

        stale = await _call(database, "updateArtifact", artifactId=created["id"], uri="v3.md", ifVersion=1)
        assert "modified by another user" in stale

        listed = json.loads(await _call(database, "listArtifacts"))
        assert [a["uri"] for a in listed] == ["v2.md"]

        deleted = await _call(database, "deleteArtifact", artifactId=created["id"])
        assert deleted.startswith("✅ Artifact deleted successfully!")

    @pytest.mark.asyncio
    async def test_dependency_cycle_reported(self, database):
        a = _json_tail(await _call(database, "createTask", title="A"))["id"]
        b = _json_tail(await _call(database, "createTask", title="B"))["id"]

        created = await _call(database, "createDependency", dependeeId=a, dependencyId=b)
        assert created.startswith("✅ Dependency created successfully!")

        cycle = await _call(database, "createDependency", dependeeId=b, dependencyId=a)
        assert cycle.startswith("❌ Failed to create dependency:")
        assert "circular" in cycle

        edges = json.loads(await _call(database, "listDependencies", taskId=a))
        assert len(edges) == 1
        removed = await _call(database, "deleteDependency", dependencyRecordId=edges[0]["id"])
        assert removed == f"✅ Dependency deleted successfully!\n\nID: {edges[0]['id']}"
