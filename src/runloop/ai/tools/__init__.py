"""Tool system: specs, safety levels and the registry.

Example:
    from runloop.ai.tools import SafetyLevel, ToolRegistry, ToolSpec

    registry = ToolRegistry()
    registry.register_function(
        spec=ToolSpec(name="write_file", description="Write a file", safety_level=SafetyLevel.WRITE),
        handler=write_file,
    )
"""

from .types import (
    AsyncToolHandler,
    SafetyLevel,
    SimpleTool,
    Tool,
    ToolHandler,
    ToolSpec,
)

from .registry import (
    DuplicateToolError,
    ToolNotFoundError,
    ToolRegistration,
    ToolRegistry,
)

__all__ = [
    # types.py
    "AsyncToolHandler",
    "SafetyLevel",
    "SimpleTool",
    "Tool",
    "ToolHandler",
    "ToolSpec",
    # registry.py
    "DuplicateToolError",
    "ToolNotFoundError",
    "ToolRegistration",
    "ToolRegistry",
]
