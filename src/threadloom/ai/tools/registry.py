"""Tool registry: the capability table keyed by tool name.

Each registration pairs the schema the model sees with a factory that builds
a :class:`~threadloom.ai.tools.base.Tool` for one request. The registry also
turns raw tool calls from the model into validated requests.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Collection, Iterable, Mapping, Sequence

from jsonschema import Draft7Validator, ValidationError

from ...core.content import MalformedToolRequest, ToolRequest
from .base import Tool, ToolContext

__all__ = [
    "ToolSpec",
    "ToolFactory",
    "ToolRegistration",
    "ToolRegistry",
    "DuplicateToolError",
    "ToolNotFoundError",
    "SPAWN_SUBAGENT",
    "SPAWN_FOREACH",
    "WAIT_FOR_SUBAGENTS",
    "YIELD_TO_PARENT",
    "COMPACT_THREAD",
    "CHAT_ONLY_TOOLS",
]

LOGGER = logging.getLogger(__name__)

SPAWN_SUBAGENT = "spawn_subagent"
SPAWN_FOREACH = "spawn_foreach"
WAIT_FOR_SUBAGENTS = "wait_for_subagents"
YIELD_TO_PARENT = "yield_to_parent"
COMPACT_THREAD = "compact_thread"

# Tools a subagent only gets when its allow-list names them explicitly.
CHAT_ONLY_TOOLS: frozenset[str] = frozenset(
    {SPAWN_SUBAGENT, SPAWN_FOREACH, WAIT_FOR_SUBAGENTS, COMPACT_THREAD}
)

ToolFactory = Callable[[ToolRequest, ToolContext], Tool]

_EMPTY_SCHEMA: Mapping[str, Any] = {"type": "object", "properties": {}}


class DuplicateToolError(Exception):
    """Raised when attempting to register a tool with a name that already exists."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' is already registered")


class ToolNotFoundError(Exception):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' not found")


@dataclass(slots=True, frozen=True)
class ToolSpec:
    """Interface of a tool as advertised to the model.

    Attributes:
        name: Unique identifier for the tool.
        description: What the tool does, written for the model.
        parameters: JSON Schema for the tool's input object.
    """

    name: str
    description: str
    parameters: Mapping[str, Any] = field(default_factory=dict)

    @property
    def input_schema(self) -> Mapping[str, Any]:
        return self.parameters or _EMPTY_SCHEMA

    def to_openai_tool(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": dict(self.input_schema),
            },
        }


@dataclass(slots=True)
class ToolRegistration:
    name: str
    spec: ToolSpec
    factory: ToolFactory
    validator: Draft7Validator
    metadata: dict[str, Any] = field(default_factory=dict)


class ToolRegistry:
    """Registry mapping tool names to their spec and factory.

    Example:
        registry = ToolRegistry()
        registry.register(spec, lambda request, context: MyTool(request, context))
        registry.register_function(
            ToolSpec(name="greet", description="Greet someone"),
            lambda args: f"Hello, {args['name']}!",
        )
    """

    def __init__(self) -> None:
        self._tools: dict[str, ToolRegistration] = {}

    def register(
        self,
        spec: ToolSpec,
        factory: ToolFactory,
        *,
        allow_override: bool = False,
        metadata: Mapping[str, Any] | None = None,
    ) -> ToolRegistration:
        """Register *factory* under ``spec.name``.

        Raises:
            DuplicateToolError: If the name is taken and ``allow_override`` is False.
            jsonschema.SchemaError: If ``spec.parameters`` is not a valid schema.
        """

        if spec.name in self._tools and not allow_override:
            raise DuplicateToolError(spec.name)
        Draft7Validator.check_schema(spec.input_schema)
        registration = ToolRegistration(
            name=spec.name,
            spec=spec,
            factory=factory,
            validator=Draft7Validator(spec.input_schema),
            metadata=dict(metadata) if metadata else {},
        )
        self._tools[spec.name] = registration
        LOGGER.debug("Registered tool: %s", spec.name)
        return registration

    def register_function(
        self,
        spec: ToolSpec,
        handler: Callable[[Mapping[str, Any]], Any],
        *,
        requires_approval: bool = False,
        allow_override: bool = False,
    ) -> ToolRegistration:
        """Register a plain sync or async callable as a tool."""

        from .function_tool import FunctionTool

        def factory(request: ToolRequest, context: ToolContext) -> Tool:
            return FunctionTool(request, context, handler=handler, requires_approval=requires_approval)

        return self.register(
            spec,
            factory,
            allow_override=allow_override,
            metadata={"requires_approval": requires_approval},
        )

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def get(self, name: str) -> ToolRegistration | None:
        return self._tools.get(name)

    def get_required(self, name: str) -> ToolRegistration:
        registration = self._tools.get(name)
        if registration is None:
            raise ToolNotFoundError(name)
        return registration

    def has(self, name: str) -> bool:
        return name in self._tools

    def names(self) -> list[str]:
        return list(self._tools)

    def list_specs(self, names: Iterable[str] | None = None) -> list[ToolSpec]:
        """Return specs in registration order, restricted to *names* when given."""

        wanted = None if names is None else set(names)
        return [
            registration.spec
            for registration in self._tools.values()
            if wanted is None or registration.name in wanted
        ]

    def resolve_tool_names(self, allowed: Sequence[str] | None, *, subagent: bool) -> tuple[str, ...]:
        """Return the tool names a thread may call.

        Top-level threads get every registered tool except the parent yield.
        Subagents get their allow-list, or every tool outside
        :data:`CHAT_ONLY_TOOLS` when none was given, and always the yield.
        A subagent never gets the compaction tool: its parent tracks it by id,
        and a successor thread would carry a different one.
        """

        registered = self.names()
        if allowed is None:
            excluded = CHAT_ONLY_TOOLS if subagent else frozenset()
            names = [name for name in registered if name not in excluded and name != YIELD_TO_PARENT]
        else:
            names = [name for name in dict.fromkeys(allowed) if name in self._tools and name != YIELD_TO_PARENT]
            unknown = sorted(set(allowed) - set(registered))
            if unknown:
                LOGGER.warning("Ignoring unknown tools in allow-list: %s", ", ".join(unknown))
        if subagent:
            names = [name for name in names if name != COMPACT_THREAD]
        if subagent and YIELD_TO_PARENT in self._tools:
            names.append(YIELD_TO_PARENT)
        return tuple(names)

    def parse_request(
        self,
        *,
        request_id: str | None,
        tool_name: str,
        raw_input: str | Mapping[str, Any] | None,
        allowed: Collection[str] | None = None,
    ) -> ToolRequest | MalformedToolRequest:
        """Validate a raw tool call from the model.

        Unknown or disallowed tools, unparseable JSON and schema violations
        all produce a :class:`MalformedToolRequest` carrying the reason.
        """

        raw_text = raw_input if isinstance(raw_input, str) else json.dumps(raw_input or {})

        def malformed(error: str) -> MalformedToolRequest:
            return MalformedToolRequest(raw_request=raw_text, error=error, id=request_id or None, tool_name=tool_name)

        registration = self._tools.get(tool_name)
        if registration is None:
            return malformed(f"Unknown tool '{tool_name}'")
        if allowed is not None and tool_name not in allowed:
            return malformed(f"Tool '{tool_name}' is not available in this thread")
        if not request_id:
            return malformed("Tool request is missing an id")

        if isinstance(raw_input, Mapping):
            payload: Any = dict(raw_input)
        else:
            try:
                payload = json.loads(raw_text) if raw_text.strip() else {}
            except json.JSONDecodeError as exc:
                return malformed(f"Invalid JSON input: {exc.msg} at position {exc.pos}")
        if not isinstance(payload, dict):
            return malformed("Tool input must be a JSON object")

        errors = sorted(registration.validator.iter_errors(payload), key=lambda error: [str(part) for part in error.path])
        if errors:
            return malformed("; ".join(_format_validation_error(error) for error in errors))
        return ToolRequest(id=request_id, tool_name=tool_name, input=payload)


def _format_validation_error(error: ValidationError) -> str:
    path = ".".join(str(part) for part in error.path)
    if path:
        return f"{path}: {error.message}"
    return error.message
