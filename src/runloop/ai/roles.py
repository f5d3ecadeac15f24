"""Agent roles: one loop, different prompts and tool allowances.

A role is plain data.  :class:`~runloop.ai.orchestration.agent_loop.AgentLoop`
renders the role's prompt template into the system prompt and offers the
model only the tools the role allows.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

__all__ = [
    "AgentRole",
    "GENERAL",
    "TESTING",
    "DOCUMENTATION",
    "REFACTORING",
    "ANALYSIS",
    "DEBUG",
    "BUILTIN_ROLES",
    "get_role",
]


class _Defaults(dict):
    """Leaves unknown ``{placeholders}`` in the template untouched."""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


@dataclass(slots=True, frozen=True)
class AgentRole:
    """Named prompt template plus optional tool and round limits.

    Attributes:
        name: Identifier used in logs and lookups.
        prompt_template: ``str.format`` template; unknown fields are left as-is.
        allowed_tools: Tool names the role may call; ``None`` allows all.
        max_tool_rounds: Overrides the loop's round limit when set.
    """

    name: str
    prompt_template: str
    allowed_tools: tuple[str, ...] | None = None
    max_tool_rounds: int | None = None

    def render(self, context: Mapping[str, Any] | None = None, **extra: Any) -> str:
        values = _Defaults({"role": self.name})
        if context:
            values.update(context)
        values.update(extra)
        return self.prompt_template.format_map(values).strip()

    def allows(self, tool_name: str) -> bool:
        return self.allowed_tools is None or tool_name in self.allowed_tools


def _base_section() -> str:
    return """You are a careful software engineering agent working inside {workspace}.
Use the available tools to inspect before you change anything.
Never claim an action succeeded unless a tool result confirms it.
When a tool fails, read the error, adjust the arguments, and try again at most once."""


GENERAL = AgentRole(
    name="general",
    prompt_template=_base_section()
    + """

Complete the user's request end to end and finish with a short summary of what changed.""",
)

TESTING = AgentRole(
    name="testing",
    prompt_template=_base_section()
    + """

You write and run tests.  Prefer small focused test cases, run them after every
edit, and report failures verbatim.""",
    max_tool_rounds=20,
)

DOCUMENTATION = AgentRole(
    name="documentation",
    prompt_template=_base_section()
    + """

You write documentation.  Do not modify source code; only documentation files.""",
    allowed_tools=("read_file", "write_file", "edit_file", "search"),
    max_tool_rounds=15,
)

REFACTORING = AgentRole(
    name="refactoring",
    prompt_template=_base_section()
    + """

You refactor without changing behaviour.  Keep every public signature intact
unless the user explicitly asks otherwise.""",
    max_tool_rounds=25,
)

ANALYSIS = AgentRole(
    name="analysis",
    prompt_template=_base_section()
    + """

You analyse code and answer questions about it.  You never modify files.""",
    allowed_tools=("read_file", "search", "list_files"),
    max_tool_rounds=15,
)

DEBUG = AgentRole(
    name="debug",
    prompt_template=_base_section()
    + """

You debug failures.  Reproduce the problem first, then fix the root cause and
show the command that proves the fix.""",
    max_tool_rounds=30,
)

BUILTIN_ROLES: dict[str, AgentRole] = {
    role.name: role for role in (GENERAL, TESTING, DOCUMENTATION, REFACTORING, ANALYSIS, DEBUG)
}


def get_role(name: str) -> AgentRole:
    try:
        return BUILTIN_ROLES[name]
    except KeyError:
        raise KeyError(f"Unknown agent role: {name}") from None
