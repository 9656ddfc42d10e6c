"""Scheduled action tool: lets the model create recurring prompts for the user."""
import logging

from ..registry import register_tool, ToolResult, ToolParam

logger = logging.getLogger(__name__)

MIN_FREQUENCY_S = 900  # cron granularity: every 15 minutes


@register_tool(
    "createAction",
    description=(
        "Create a scheduled action that re-runs a prompt at a fixed interval "
        "(e.g. 'check the fee estimates every hour')"
    ),
    params=[
        ToolParam("name", description="short name for the action"),
        ToolParam("description", description="the prompt to run on every execution"),
        ToolParam("frequency", type="integer", description="seconds between executions (minimum 900)",
                  minimum=MIN_FREQUENCY_S),
        ToolParam("maxExecutions", type="integer", description="stop after this many runs", required=False,
                  minimum=1),
    ],
    display_name="⏰ Create Action",
    category="action",
    requires_confirmation=True,
)
async def create_action(name: str, description: str, frequency: int, maxExecutions: int = None,
                        session=None, **kwargs) -> ToolResult:
    if not session:
        return ToolResult.failure("Actions can only be created inside a conversation.")

    from ...database import async_session_factory
    from ...queries import db_create_action

    async with async_session_factory() as db:
        action = await db_create_action(
            db,
            user_id=session.user_id,
            conversation_id=session.conversation_id,
            name=name,
            description=description,
            frequency=frequency,
            max_executions=maxExecutions,
            params={"publicKey": session.public_key} if session.public_key else None,
        )
    if not action:
        return ToolResult.failure("Failed to create action")

    logger.info(f"Action #{action.id} '{name}' scheduled every {frequency}s for user {session.user_id}")
    return ToolResult(data={
        "id": action.id,
        "name": action.name,
        "frequency": action.frequency,
        "maxExecutions": action.max_executions,
    })
