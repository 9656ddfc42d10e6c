"""Confirmation pseudo-tool: answered by the user, never executed server-side."""
from ...confirmation import CONFIRMATION_TOOL
from ..registry import register_pseudo_tool, ToolParam

register_pseudo_tool(
    CONFIRMATION_TOOL,
    description="Confirm the execution of a function on behalf of the user.",
    params=[ToolParam("message", description="The message to ask for confirmation")],
    display_name="⚠️ Confirmation",
)
