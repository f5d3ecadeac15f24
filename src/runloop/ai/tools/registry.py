"""Tool registry: registration, lookup, schema validation and invocation."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError, best_match

from .types import AsyncToolHandler, SimpleTool, Tool, ToolHandler, ToolSpec

__all__ = [
    "ToolRegistry",
    "ToolRegistration",
    "DuplicateToolError",
    "ToolNotFoundError",
]

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Exceptions
# -----------------------------------------------------------------------------


class DuplicateToolError(Exception):
    """A tool with this name is already registered."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' is already registered")


class ToolNotFoundError(Exception):
    """No enabled tool is registered under this name."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' not found")


# -----------------------------------------------------------------------------
# Registrations
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class ToolRegistration:
    """One registry slot.

    ``metadata`` is free-form; tool-server tools carry ``server`` so they can
    be dropped together with ``unregister_where(server=...)``. ``validator``
    is compiled once from the spec's parameter schema.
    """

    name: str
    tool: Tool
    spec: ToolSpec
    enabled: bool = True
    metadata: dict[str, Any] = field(default_factory=dict)
    validator: Draft202012Validator | None = None


# -----------------------------------------------------------------------------
# Registry
# -----------------------------------------------------------------------------


class ToolRegistry:
    """Name-keyed tools shared by the executor and the tool-server manager.

    Disabled tools stay registered but are invisible to lookups, to
    :meth:`invoke` and to the definitions offered to the model.
    """

    def __init__(self) -> None:
        self._tools: dict[str, ToolRegistration] = {}

    def register(
        self,
        tool: Tool,
        *,
        enabled: bool = True,
        allow_override: bool = False,
        metadata: Mapping[str, Any] | None = None,
    ) -> ToolRegistration:
        """Add ``tool`` under its own name.

        Raises:
            DuplicateToolError: The name is taken and ``allow_override`` is false.
            ValueError: The parameter schema is not a valid JSON Schema.
        """
        name = tool.name
        if name in self._tools and not allow_override:
            raise DuplicateToolError(name)

        registration = ToolRegistration(
            name=name,
            tool=tool,
            spec=tool.spec,
            enabled=enabled,
            metadata=dict(metadata) if metadata else {},
            validator=_build_validator(tool.spec),
        )
        self._tools[name] = registration
        LOGGER.debug("Registered tool: %s (%s)", name, tool.spec.safety_level.value)
        return registration

    def register_function(
        self,
        spec: ToolSpec,
        handler: ToolHandler | AsyncToolHandler,
        *,
        enabled: bool = True,
        allow_override: bool = False,
        metadata: Mapping[str, Any] | None = None,
    ) -> ToolRegistration:
        return self.register(
            SimpleTool(spec=spec, handler=handler),
            enabled=enabled,
            allow_override=allow_override,
            metadata=metadata,
        )

    def unregister(self, name: str) -> bool:
        if self._tools.pop(name, None) is None:
            return False
        LOGGER.debug("Unregistered tool: %s", name)
        return True

    def unregister_where(self, **metadata: Any) -> list[str]:
        """Drop every tool whose metadata matches all of ``metadata``; returns their names."""
        removed = [
            name
            for name, registration in self._tools.items()
            if all(registration.metadata.get(key) == value for key, value in metadata.items())
        ]
        for name in removed:
            del self._tools[name]
        if removed:
            LOGGER.debug("Unregistered %d tool(s) matching %s", len(removed), metadata)
        return removed

    def get(self, name: str) -> Tool | None:
        registration = self._active(name)
        return registration.tool if registration is not None else None

    def get_spec(self, name: str) -> ToolSpec | None:
        registration = self._active(name)
        return registration.spec if registration is not None else None

    def has(self, name: str) -> bool:
        return self._active(name) is not None

    def list_tools(self, *, include_disabled: bool = False) -> list[ToolSpec]:
        return [
            registration.spec
            for registration in self._tools.values()
            if registration.enabled or include_disabled
        ]

    def get_openai_tools(
        self,
        *,
        filter_names: Sequence[str] | None = None,
    ) -> list[dict[str, Any]]:
        """Function definitions for the enabled tools, optionally limited to ``filter_names``."""
        allowed = set(filter_names) if filter_names is not None else None
        return [
            registration.spec.to_openai_tool()
            for registration in self._tools.values()
            if registration.enabled and (allowed is None or registration.name in allowed)
        ]

    def validate_arguments(self, name: str, arguments: Mapping[str, Any]) -> str | None:
        """Return a description of the first schema violation, or ``None``.

        Raises:
            ToolNotFoundError: Unknown or disabled tool.
        """
        registration = self._active(name)
        if registration is None:
            raise ToolNotFoundError(name)
        if registration.validator is None:
            return None
        error = best_match(registration.validator.iter_errors(dict(arguments)))
        if error is None:
            return None
        location = "/".join(str(part) for part in error.absolute_path)
        return f"{location}: {error.message}" if location else error.message

    async def invoke(self, name: str, arguments: Mapping[str, Any]) -> Any:
        """Run the named tool and return its raw output.

        Raises:
            ToolNotFoundError: Unknown or disabled tool.
        """
        tool = self.get(name)
        if tool is None:
            raise ToolNotFoundError(name)
        return await tool.execute(arguments)

    def enable(self, name: str) -> bool:
        return self._set_enabled(name, True)

    def disable(self, name: str) -> bool:
        return self._set_enabled(name, False)

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def _active(self, name: str) -> ToolRegistration | None:
        registration = self._tools.get(name)
        if registration is None or not registration.enabled:
            return None
        return registration

    def _set_enabled(self, name: str, enabled: bool) -> bool:
        registration = self._tools.get(name)
        if registration is None:
            return False
        registration.enabled = enabled
        LOGGER.debug("Tool %s %s", name, "enabled" if enabled else "disabled")
        return True


def _build_validator(spec: ToolSpec) -> Draft202012Validator | None:
    if not spec.parameters:
        return None
    schema = dict(spec.parameters)
    try:
        Draft202012Validator.check_schema(schema)
    except SchemaError as exc:
        raise ValueError(f"Tool '{spec.name}' has an invalid parameter schema: {exc.message}") from exc
    return Draft202012Validator(schema)
