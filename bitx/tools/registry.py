"""Tool registry: decorator-based tool registration, lookup and LLM schemas."""
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Awaitable, Dict, List, Optional

from ..config import settings

logger = logging.getLogger(__name__)

CONFIRMATION_MARKER = "requiresConfirmation"

_JSON_TYPES = {"string": str, "integer": int, "number": (int, float), "boolean": bool}


@dataclass
class ToolParam:
    name: str
    type: str = "string"  # string | integer | number | boolean
    description: str = ""
    required: bool = True
    default: Any = None
    enum: Optional[List[str]] = None
    pattern: Optional[str] = None
    pattern_message: str = ""
    minimum: Optional[float] = None
    maximum: Optional[float] = None

    def json_schema(self) -> Dict[str, Any]:
        schema: Dict[str, Any] = {"type": self.type}
        if self.description:
            schema["description"] = self.description
        if self.enum:
            schema["enum"] = list(self.enum)
        if self.pattern:
            schema["pattern"] = self.pattern
        if self.minimum is not None:
            schema["minimum"] = self.minimum
        if self.maximum is not None:
            schema["maximum"] = self.maximum
        if self.default is not None:
            schema["default"] = self.default
        return schema


@dataclass
class ToolResult:
    success: bool = True
    data: Any = None
    error: str = ""
    suppress_follow_up: bool = False
    no_follow_up: bool = False
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def failure(cls, error: str) -> "ToolResult":
        return cls(success=False, error=error)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"success": self.success}
        if self.success:
            out["data"] = self.data
        else:
            out["error"] = self.error
        if self.suppress_follow_up:
            out["suppressFollowUp"] = True
        if self.no_follow_up:
            out["noFollowUp"] = True
        out.update(self.extra)
        return out


@dataclass
class ToolDef:
    name: str
    description: str
    params: List[ToolParam]
    handler: Optional[Callable[..., Awaitable[ToolResult]]]
    display_name: str = ""
    category: str = ""
    requires_confirmation: bool = False
    required_env: List[str] = field(default_factory=list)
    is_collapsible: bool = False

    def metadata(self) -> Dict[str, Any]:
        """Display info for the chat client's result renderer."""
        return {
            "name": self.name,
            "displayName": self.display_name or self.name,
            "description": self.description,
            "category": self.category,
            "requiresConfirmation": self.requires_confirmation,
            "isCollapsible": self.is_collapsible,
            "isExpandedByDefault": not self.is_collapsible,
        }


_tools: Dict[str, ToolDef] = {}


def register_tool(
    name: str,
    description: str = "",
    params: Optional[List[ToolParam]] = None,
    display_name: str = "",
    category: str = "",
    requires_confirmation: bool = False,
    required_env: Optional[List[str]] = None,
    is_collapsible: bool = False,
):
    """Decorator to register a tool function."""
    def decorator(func):
        desc = description or func.__doc__ or ""
        if requires_confirmation and CONFIRMATION_MARKER not in desc:
            desc = f"{desc} ({CONFIRMATION_MARKER})"
        _tools[name] = ToolDef(
            name=name,
            description=desc,
            params=params or [],
            handler=func,
            display_name=display_name,
            category=category,
            requires_confirmation=requires_confirmation,
            required_env=required_env or [],
            is_collapsible=is_collapsible,
        )
        logger.debug(f"Registered tool: {name}")
        return func
    return decorator


def register_pseudo_tool(name: str, description: str, params: List[ToolParam], display_name: str = ""):
    """Register a tool the model may call but the server never executes."""
    _tools[name] = ToolDef(
        name=name, description=description, params=params, handler=None, display_name=display_name,
    )


def get_tool(name: str) -> Optional[ToolDef]:
    return _tools.get(name)


def all_tools() -> Dict[str, ToolDef]:
    return dict(_tools)


def enabled_tools() -> Dict[str, ToolDef]:
    """Registered tools minus disabled ones and those missing a required env var."""
    enabled = {}
    for name, tool in _tools.items():
        if name in settings.disabled_tools:
            continue
        if any(not os.getenv(var) for var in tool.required_env):
            continue
        enabled[name] = tool
    return enabled


def tools_from_names(names: List[str]) -> Dict[str, ToolDef]:
    """Keep the enabled tools among ``names``, preserving order; unknown names are dropped."""
    enabled = enabled_tools()
    return {name: enabled[name] for name in names if name in enabled}


def tool_descriptions_for_llm(tools: Optional[Dict[str, ToolDef]] = None) -> str:
    """Generate the tool list for the orchestrator prompt."""
    tools = enabled_tools() if tools is None else tools
    return "\n".join(f"- **{name}**: {tool.description}" for name, tool in tools.items())


def openai_tool_schemas(tools: Dict[str, ToolDef]) -> List[Dict[str, Any]]:
    """Function-calling definitions for the chat completions API."""
    schemas = []
    for name, tool in tools.items():
        schemas.append({
            "type": "function",
            "function": {
                "name": name,
                "description": tool.description,
                "parameters": parameters_schema(tool),
            },
        })
    return schemas


def parameters_schema(tool: ToolDef) -> Dict[str, Any]:
    return {
        "type": "object",
        "properties": {p.name: p.json_schema() for p in tool.params},
        "required": [p.name for p in tool.params if p.required],
    }


def validate_args(tool: ToolDef, args: Dict[str, Any]) -> List[str]:
    """Check arguments against the tool's params and fill defaults in place.

    Returns a list of human-readable errors (empty when valid).
    """
    errors = []
    for p in tool.params:
        if p.name not in args or args[p.name] is None:
            if p.required:
                errors.append(f"Missing required parameter: {p.name}")
            elif p.default is not None:
                args[p.name] = p.default
            continue

        value = args[p.name]
        expected = _JSON_TYPES.get(p.type)
        if p.type == "integer" and isinstance(value, float) and value.is_integer():
            value = args[p.name] = int(value)
        if expected and (not isinstance(value, expected) or (p.type != "boolean" and isinstance(value, bool))):
            errors.append(f"Parameter {p.name} must be of type {p.type}")
            continue
        if p.enum and value not in p.enum:
            errors.append(f"Parameter {p.name} must be one of: {', '.join(p.enum)}")
        if p.pattern and not re.match(p.pattern, value, re.IGNORECASE):
            errors.append(p.pattern_message or f"Parameter {p.name} has an invalid format")
        if p.minimum is not None and value < p.minimum:
            errors.append(f"Parameter {p.name} must be >= {p.minimum:g}")
        if p.maximum is not None and value > p.maximum:
            errors.append(f"Parameter {p.name} must be <= {p.maximum:g}")
    return errors
