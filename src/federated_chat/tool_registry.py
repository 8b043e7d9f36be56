"""
Tool sets handed to the model.

Local tools are registered from plain callables, with an argument schema
generated from the signature. Federated tools come from the federation
manager. Both end up as ``Tool`` objects keyed by name, so they can be merged
into one tool set and executed the same way.
"""

import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type, get_type_hints

from pydantic import BaseModel, ValidationError

from .errors import DispatchError
from .schema import translate_schema

logger = logging.getLogger(__name__)

ToolSet = Dict[str, "Tool"]


@dataclass
class Tool:
    """One invocable tool: description, argument model and executor."""

    name: str
    description: str
    parameters: Type[BaseModel]
    execute: Callable[[Dict[str, Any]], Awaitable[Any]]

    def schema(self) -> Dict[str, Any]:
        """Function tool schema for the Responses API."""
        return {
            "type": "function",
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters.model_json_schema(),
            "strict": False,
        }

    async def invoke(self, arguments: Dict[str, Any]) -> Any:
        """Validate ``arguments`` against the tool's model, then execute."""
        validated = self.parameters.model_validate(arguments)
        return await self.execute(validated.model_dump(by_alias=True, exclude_unset=True))


def callable_to_tool_schema(
    callable_func: Callable, name: str, description: Optional[str] = None
) -> Dict[str, Any]:
    """
    Convert a Python callable (function or method) to a function tool schema.

    Args:
        callable_func: The callable to convert
        name: Tool name
        description: Optional description

    Returns:
        Tool schema dictionary with a JSON-Schema ``parameters`` object
    """
    sig = inspect.signature(callable_func)
    type_hints = get_type_hints(callable_func)

    # Get description from docstring if not provided
    if description is None:
        doc = inspect.getdoc(callable_func)
        description = doc.strip() if doc else f"Execute {name}"

    schema = {
        "type": "function",
        "name": name,
        "description": description,
        "parameters": {"type": "object", "properties": {}, "required": []},
    }

    for param_name, param in sig.parameters.items():
        if param_name == "self":
            continue

        param_type = type_hints.get(param_name, str)

        if param_type is str:
            json_type = "string"
        elif param_type is bool:
            json_type = "boolean"
        elif param_type is int:
            json_type = "integer"
        elif param_type is float:
            json_type = "number"
        elif param_type is list or getattr(param_type, "__origin__", None) is list:
            json_type = "array"
        else:
            json_type = "string"  # Default fallback

        schema["parameters"]["properties"][param_name] = {
            "type": json_type,
            "description": f"The {param_name} parameter",
        }

        if param.default is inspect.Parameter.empty:
            schema["parameters"]["required"].append(param_name)

    return schema


def merge_tool_sets(*tool_sets: ToolSet) -> ToolSet:
    """Merge tool sets; on a name collision the later set wins."""
    merged: ToolSet = {}
    for tool_set in tool_sets:
        merged.update(tool_set)
    return merged


class ToolRegistry:
    """Registry for local (built-in) tools."""

    def __init__(self):
        self.tools: ToolSet = {}

    @classmethod
    def from_plugins(cls, plugins: list) -> "ToolRegistry":
        """Register every tool offered by plugins via ``hook_provide_tools``."""
        registry = cls()
        for plugin in plugins:
            if hasattr(plugin, "hook_provide_tools"):
                for method in plugin.hook_provide_tools():
                    registry.register_callable(method)
        return registry

    def register_callable(
        self,
        callable_func: Callable,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Tool:
        """
        Register a callable (function or method) and generate its argument model.

        Args:
            callable_func: The callable to register
            name: Optional name override (defaults to callable name)
            description: Optional description
        """
        tool_name = name or callable_func.__name__
        schema = callable_to_tool_schema(callable_func, tool_name, description)

        async def execute(args: Dict[str, Any]) -> Any:
            if inspect.iscoroutinefunction(callable_func):
                return await callable_func(**args)
            return callable_func(**args)

        tool = Tool(
            name=tool_name,
            description=schema["description"],
            parameters=translate_schema(schema["parameters"], tool_name),
            execute=execute,
        )
        self.tools[tool_name] = tool
        return tool

    def get_tool_set(self) -> ToolSet:
        return dict(self.tools)

    def get_tool_names(self) -> List[str]:
        return list(self.tools.keys())

    def has_tool(self, name: str) -> bool:
        return name in self.tools

    def clear(self) -> None:
        self.tools.clear()

    def __len__(self) -> int:
        return len(self.tools)


def _stringify(result: Any) -> str:
    if result is None:
        return "Tool executed successfully"
    if isinstance(result, str):
        return result
    try:
        return json.dumps(result, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(result)


async def execute_function_call(tool_set: ToolSet, item: Any) -> Dict[str, Any]:
    """
    Execute a ``function_call`` output item and build its tool result.

    Failures never propagate: unknown tools, malformed arguments, validation
    errors and dispatch errors all become an ``Error: ...`` output that is fed
    back to the model.

    Args:
        tool_set: Merged tool set to resolve ``item.name`` against
        item: Output item with ``name``, ``arguments`` (JSON string) and ``call_id``

    Returns:
        A ``function_call_output`` input item for the Responses API.
    """
    name = item.name

    try:
        args = json.loads(item.arguments or "{}")
        tool = tool_set.get(name)
        if tool is None:
            logger.info(f"TOOL NOT FOUND: {name}")
            output = f"Error: Tool '{name}' not found"
        else:
            output = _stringify(await tool.invoke(args))
    except json.JSONDecodeError as e:
        logger.info(f"TOOL JSON ERROR: {name} - {str(e)}")
        output = f"Error parsing arguments: {str(e)}"
    except ValidationError as e:
        logger.info(f"TOOL ARGUMENT ERROR: {name} - {str(e)}")
        output = f"Error: invalid arguments for {name}: {str(e)}"
    except DispatchError as e:
        logger.warning(f"TOOL DISPATCH ERROR: {name} - {str(e)}")
        output = f"Error: {str(e)}"
    except Exception as e:
        logger.info(f"TOOL ERROR: {name} - {str(e)}")
        output = f"Error: {str(e)}"

    return {
        "type": "function_call_output",
        "call_id": item.call_id,
        "output": output,
    }
