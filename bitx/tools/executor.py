"""Tool executor: validates arguments and dispatches tool calls."""
import logging
import time
from typing import Any, Dict, Optional

from ..session import ChatSession
from .registry import get_tool, validate_args, ToolResult

logger = logging.getLogger(__name__)


async def execute_tool(tool_name: str, args: Dict[str, Any], session: Optional[ChatSession] = None) -> ToolResult:
    """Execute a registered tool by name.

    Failures never raise: they come back as ``ToolResult(success=False)`` so the
    model (and the client) can show them inline.
    """
    tool = get_tool(tool_name)
    if not tool:
        logger.warning(f"Unknown tool: {tool_name}")
        return ToolResult.failure(f"Unknown tool: {tool_name}")
    if tool.handler is None:
        return ToolResult.failure(f"Tool {tool_name} is answered by the user, not executed")

    args = dict(args)
    errors = validate_args(tool, args)
    if errors:
        logger.info(f"Tool {tool_name} rejected args {args}: {errors}")
        return ToolResult.failure("; ".join(errors))

    arg_str = ", ".join(f"{k}={v!r}" for k, v in args.items())
    logger.info(f"Executing tool: {tool_name}({arg_str})")
    t0 = time.monotonic()

    try:
        result = await tool.handler(session=session, **args)
    except Exception as e:
        logger.error(f"Tool {tool_name} failed: {e}", exc_info=True)
        result = ToolResult.failure(str(e) or type(e).__name__)

    elapsed = time.monotonic() - t0
    logger.info(f"Tool {tool_name}: {elapsed:.1f}s -> {'ok' if result.success else 'error'}")
    return result
