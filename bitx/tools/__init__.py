"""Tool system: registry, executor, builtin tools."""
from .registry import (
    register_tool, get_tool, all_tools, enabled_tools, tools_from_names,
    tool_descriptions_for_llm, openai_tool_schemas, ToolResult, ToolParam, ToolDef,
)
from .executor import execute_tool

# Auto-import builtin tools to trigger @register_tool decorators
from .builtin import *  # noqa
