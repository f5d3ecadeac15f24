"""Tests for tools/registry.py."""

from __future__ import annotations

import pytest

from runloop.ai.tools import (
    DuplicateToolError,
    SafetyLevel,
    SimpleTool,
    ToolNotFoundError,
    ToolRegistry,
    ToolSpec,
)

_PATH_SCHEMA = {
    "type": "object",
    "properties": {"path": {"type": "string"}, "content": {"type": "string"}},
    "required": ["path"],
    "additionalProperties": False,
}


def make_registry() -> ToolRegistry:
    registry = ToolRegistry()
    registry.register_function(
        spec=ToolSpec(name="read_file", description="Read a file", parameters=_PATH_SCHEMA),
        handler=lambda args: f"contents of {args['path']}",
    )

    async def write(args):
        return {"written": args["path"]}

    registry.register_function(
        spec=ToolSpec(
            name="write_file",
            description="Write a file",
            parameters=_PATH_SCHEMA,
            safety_level=SafetyLevel.WRITE,
        ),
        handler=write,
    )
    return registry


def test_register_rejects_duplicates_unless_overridden() -> None:
    registry = make_registry()
    spec = ToolSpec(name="read_file", description="again")

    with pytest.raises(DuplicateToolError):
        registry.register_function(spec, lambda args: None)

    registry.register_function(spec, lambda args: "new", allow_override=True)
    assert registry.get_spec("read_file") == spec


def test_invalid_schema_is_rejected_at_registration() -> None:
    registry = ToolRegistry()

    with pytest.raises(ValueError, match="invalid parameter schema"):
        registry.register_function(
            ToolSpec(name="bad", description="", parameters={"type": "not-a-type"}),
            lambda args: None,
        )


def test_validate_arguments_reports_first_violation() -> None:
    registry = make_registry()

    assert registry.validate_arguments("read_file", {"path": "a.txt"}) is None
    assert "path" in (registry.validate_arguments("read_file", {}) or "")
    assert registry.validate_arguments("read_file", {"path": 3}) is not None
    with pytest.raises(ToolNotFoundError):
        registry.validate_arguments("missing", {})


@pytest.mark.asyncio
async def test_invoke_sync_and_async_handlers() -> None:
    registry = make_registry()

    assert await registry.invoke("read_file", {"path": "a.txt"}) == "contents of a.txt"
    assert await registry.invoke("write_file", {"path": "b.txt"}) == {"written": "b.txt"}
    with pytest.raises(ToolNotFoundError):
        await registry.invoke("missing", {})


@pytest.mark.asyncio
async def test_disabled_tools_are_hidden() -> None:
    registry = make_registry()
    registry.disable("write_file")

    assert not registry.has("write_file")
    assert [tool["function"]["name"] for tool in registry.get_openai_tools()] == ["read_file"]
    with pytest.raises(ToolNotFoundError):
        await registry.invoke("write_file", {"path": "x"})

    registry.enable("write_file")
    assert registry.has("write_file")


def test_openai_tools_can_be_filtered() -> None:
    registry = make_registry()

    tools = registry.get_openai_tools(filter_names=["write_file"])

    assert tools == [
        {
            "type": "function",
            "function": {"name": "write_file", "description": "Write a file", "parameters": _PATH_SCHEMA},
        }
    ]


def test_unregister_where_matches_metadata() -> None:
    registry = ToolRegistry()
    registry.register(SimpleTool(ToolSpec(name="mcp__db__query", description=""), lambda args: None), metadata={"server": "db"})
    registry.register(SimpleTool(ToolSpec(name="local", description=""), lambda args: None))

    assert registry.unregister_where(server="db") == ["mcp__db__query"]
    assert "mcp__db__query" not in registry
    assert len(registry) == 1


def test_spec_without_parameters_gets_empty_object_schema() -> None:
    definition = ToolSpec(name="ping", description="Ping").to_openai_tool()

    assert definition["function"]["parameters"] == {"type": "object", "properties": {}}


def test_safety_levels_are_ordered() -> None:
    assert SafetyLevel.READ_ONLY.rank < SafetyLevel.WRITE.rank < SafetyLevel.DESTRUCTIVE.rank
