"""
Tool System - Capabilities the agent can invoke.

A Tool is an opaque capability with a definition (name, description,
JSON schema, concurrency metadata), a converter between text and typed
input/output, and a ``run(context, input)`` method. Concrete tools live
outside the engine; this module only defines the contract, a registry to
look tools up by name, and a helper that turns a plain function into a
tool.

Argument binding is explicit: a DataclassConverter binds a name-keyed
argument map onto a dataclass declared by the tool, checking required
and unknown fields up front. The executor never inspects functions at
call time.
"""

import dataclasses
import json
import logging
import types
import typing
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from stepagent.errors import ToolArgumentError
from stepagent.history import ToolCallTracker

logger = logging.getLogger(__name__)

_JSON_TYPES: dict[Any, str] = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
    list: "array",
    dict: "object",
}


@dataclass
class ToolDefinition:
    """
    Static description of a tool.

    concurrency_safe tools may run in parallel with any other call. Tools
    that are not concurrency safe are serialised by the ToolExecutor and
    force a batch containing them to run sequentially.
    """
    name: str
    description: str = ""
    parameters: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    concurrency_safe: bool = False
    read_only: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_openai_schema(self) -> dict[str, Any]:
        """Convert to OpenAI tool format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


@dataclass
class ToolContext:
    """Per-call context handed to a tool."""
    registry: "ToolRegistry | None" = None
    tracker: ToolCallTracker = field(default_factory=ToolCallTracker)
    abort_signal: Any = None
    call_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def for_call(self, call_id: str) -> "ToolContext":
        """Copy of this context bound to one call id."""
        return dataclasses.replace(self, call_id=call_id, metadata=dict(self.metadata))


class ToolConverter:
    """
    Converts between raw tool input/output and the tool's typed values.

    The default converter accepts JSON text or an argument dict and hands
    the tool a dict; output is rendered as text, JSON-encoding anything
    that is not already a string.
    """

    def convert_input(self, tool_name: str, raw: Any) -> Any:
        if raw is None or raw == "":
            return {}
        if isinstance(raw, str):
            try:
                value = json.loads(raw)
            except json.JSONDecodeError as e:
                raise ToolArgumentError(tool_name, f"input is not valid JSON: {e}") from e
        else:
            value = raw
        if not isinstance(value, dict):
            raise ToolArgumentError(tool_name, f"expected an object, got {type(value).__name__}")
        return value

    def convert_output(self, tool_name: str, output: Any) -> str:
        if isinstance(output, str):
            return output
        try:
            return json.dumps(output, default=_json_default)
        except (TypeError, ValueError) as e:
            raise ToolArgumentError(tool_name, f"output is not serialisable: {e}") from e


def _json_default(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    return str(value)


class DataclassConverter(ToolConverter):
    """Binds an argument map onto a dataclass input type."""

    def __init__(self, input_type: type):
        if not dataclasses.is_dataclass(input_type):
            raise TypeError(f"{input_type!r} is not a dataclass")
        self.input_type = input_type
        self._fields = {f.name: f for f in dataclasses.fields(input_type)}

    def convert_input(self, tool_name: str, raw: Any) -> Any:
        if isinstance(raw, self.input_type):
            return raw
        arguments = super().convert_input(tool_name, raw)

        unknown = sorted(set(arguments) - set(self._fields))
        if unknown:
            raise ToolArgumentError(tool_name, f"unknown argument(s): {', '.join(unknown)}")

        missing = [
            name for name, f in self._fields.items()
            if name not in arguments
            and f.default is dataclasses.MISSING
            and f.default_factory is dataclasses.MISSING
        ]
        if missing:
            raise ToolArgumentError(tool_name, f"missing required argument(s): {', '.join(missing)}")

        try:
            return self.input_type(**arguments)
        except (TypeError, ValueError) as e:
            raise ToolArgumentError(tool_name, str(e)) from e

    def schema(self) -> dict[str, Any]:
        """JSON schema derived from the dataclass fields."""
        hints = typing.get_type_hints(self.input_type)
        properties: dict[str, Any] = {}
        required: list[str] = []
        for name, f in self._fields.items():
            properties[name] = {"type": _json_type(hints.get(name, str))}
            if "description" in f.metadata:
                properties[name]["description"] = f.metadata["description"]
            if f.default is dataclasses.MISSING and f.default_factory is dataclasses.MISSING:
                required.append(name)
        schema: dict[str, Any] = {"type": "object", "properties": properties}
        if required:
            schema["required"] = required
        return schema


def _json_type(annotation: Any) -> str:
    origin = typing.get_origin(annotation)
    if origin in (typing.Union, types.UnionType):
        args = [a for a in typing.get_args(annotation) if a is not type(None)]
        return _json_type(args[0]) if args else "string"
    if origin is not None:
        annotation = origin
    return _JSON_TYPES.get(annotation, "string")


class Tool:
    """Base class for tools. Subclasses implement ``run``."""

    def __init__(self, definition: ToolDefinition, converter: ToolConverter | None = None):
        self.definition = definition
        self.converter = converter or ToolConverter()

    @property
    def name(self) -> str:
        return self.definition.name

    @property
    def concurrency_safe(self) -> bool:
        return self.definition.concurrency_safe

    def run(self, context: ToolContext, input: Any) -> Any:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"


class ToolHandler(Protocol):
    """Protocol for function tool handlers."""
    def __call__(self, *args: Any, **kwargs: Any) -> Any: ...


class FunctionTool(Tool):
    """
    A tool backed by a plain function.

    Dict input is passed as keyword arguments; bound dataclass input is
    passed positionally. With ``takes_context`` the ToolContext is passed
    first.
    """

    def __init__(
        self,
        definition: ToolDefinition,
        handler: ToolHandler,
        converter: ToolConverter | None = None,
        takes_context: bool = False,
    ):
        super().__init__(definition, converter)
        self.handler = handler
        self.takes_context = takes_context

    def run(self, context: ToolContext, input: Any) -> Any:
        args: tuple[Any, ...] = (context,) if self.takes_context else ()
        if isinstance(input, dict):
            return self.handler(*args, **input)
        return self.handler(*args, input)


def function_tool(
    name: str | None = None,
    description: str = "",
    input_type: type | None = None,
    parameters: dict[str, Any] | None = None,
    concurrency_safe: bool = False,
    read_only: bool = False,
    takes_context: bool = False,
) -> Callable[[ToolHandler], FunctionTool]:
    """
    Decorator turning a function into a FunctionTool.

    With ``input_type`` the arguments are bound onto that dataclass and
    the schema is derived from its fields.
    """
    def decorator(fn: ToolHandler) -> FunctionTool:
        converter: ToolConverter
        schema = parameters
        if input_type is not None:
            converter = DataclassConverter(input_type)
            schema = schema or converter.schema()
        else:
            converter = ToolConverter()
        definition = ToolDefinition(
            name=name or getattr(fn, "__name__", "tool"),
            description=description or (getattr(fn, "__doc__", None) or "").strip(),
            parameters=schema or {"type": "object", "properties": {}},
            concurrency_safe=concurrency_safe,
            read_only=read_only,
        )
        return FunctionTool(definition, fn, converter, takes_context=takes_context)

    return decorator


class ToolRegistry:
    """
    Registry of available tools.

    Registries are constructed explicitly and passed to the agents and
    executors that need them; there is no process-wide default.
    """

    def __init__(self, tools: list[Tool] | None = None) -> None:
        self._tools: dict[str, Tool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        """Register a tool."""
        if tool.name in self._tools:
            logger.warning(f"Overwriting existing tool: {tool.name}")
        self._tools[tool.name] = tool
        logger.debug(f"Registered tool: {tool.name}")

    def register_function(
        self,
        name: str,
        description: str,
        parameters: dict[str, Any],
        handler: ToolHandler,
        concurrency_safe: bool = False,
    ) -> FunctionTool:
        """Convenience method to register a function as a tool."""
        tool = FunctionTool(
            ToolDefinition(
                name=name,
                description=description,
                parameters=parameters,
                concurrency_safe=concurrency_safe,
            ),
            handler,
        )
        self.register(tool)
        return tool

    def unregister(self, name: str) -> Tool | None:
        return self._tools.pop(name, None)

    def get(self, name: str) -> Tool | None:
        """Get a tool by name."""
        return self._tools.get(name)

    def get_schemas(self) -> list[dict[str, Any]]:
        """Get OpenAI-format schemas for all registered tools."""
        return [tool.definition.to_openai_schema() for tool in self._tools.values()]

    @property
    def tool_names(self) -> list[str]:
        """List of registered tool names."""
        return list(self._tools.keys())

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools
