"""Scheduled actions: re-run saved prompts on their frequency and post the replies."""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from .config import settings
from .database import async_session_factory
from .models import Action, utcnow
from .queries import db_create_messages, db_get_actions
from .session import ChatSession

logger = logging.getLogger(__name__)

ACTION_PROMPT = (
    "This is a scheduled action named \"{name}\", running automatically without the user present. "
    "Carry out the following request and report the result concisely:\n\n{description}"
)


def is_action_due(action: Action, now: Optional[datetime] = None) -> bool:
    """Never-run actions are due at once; others when ``frequency`` seconds have passed."""
    if not action.frequency:
        return False
    if not action.last_executed_at:
        return True
    return (now or utcnow()) >= action.last_executed_at + timedelta(seconds=action.frequency)


def _action_session(action: Action) -> ChatSession:
    public_key = (action.params or {}).get("publicKey")
    if not public_key and action.user is not None and action.user.wallets:
        public_key = action.user.wallets[0].public_key
    return ChatSession(
        user_id=action.user_id,
        conversation_id=action.conversation_id,
        public_key=public_key,
        degen_mode=True,  # nobody is there to confirm
    )


async def process_action(action: Action) -> bool:
    """Run one action through the model and record the outcome. Returns True on success."""
    from .chat import ChatTurn
    from .tools import enabled_tools

    session = _action_session(action)
    tools = {name: t for name, t in enabled_tools().items() if name != "createAction"}
    prompt = ACTION_PROMPT.format(name=action.name, description=action.description)
    turn = ChatTurn(session, [{"role": "user", "content": prompt}], tools=tools)

    async for _ in turn.stream():
        pass
    ok = turn.finish_reason != "error"

    async with async_session_factory() as db:
        message = turn.ui_message()
        if message:
            await db_create_messages(db, [{
                "id": message["id"],
                "conversation_id": action.conversation_id,
                "role": "assistant",
                "content": message["content"],
                "tool_invocations": message.get("toolInvocations"),
            }])

        row = await db.get(Action, action.id)
        if row is None:
            logger.warning(f"[cron] Action #{action.id} disappeared while running")
            return ok
        now = utcnow()
        row.times_executed = (row.times_executed or 0) + 1
        row.last_executed_at = now
        if ok:
            row.last_success_at = now
        else:
            row.last_failure_at = now
        row.last_response = turn.text
        if row.max_executions and row.times_executed >= row.max_executions:
            row.completed = True
            logger.info(f"[cron] Action #{row.id} completed after {row.times_executed} run(s)")
        await db.commit()

    logger.info(f"[cron] Action #{action.id} '{action.name}' -> {'ok' if ok else 'failed'}")
    return ok


async def run_due_actions(now: Optional[datetime] = None) -> List[int]:
    """Process every due action concurrently; returns the ids that were run."""
    async with async_session_factory() as db:
        actions = await db_get_actions(db, triggered=True, paused=False, completed=False)
    logger.info(f"[cron] Fetched {len(actions)} actions")

    now = now or utcnow()
    due = [a for a in actions if is_action_due(a, now)]
    if not due:
        return []

    results = await asyncio.gather(*(process_action(a) for a in due), return_exceptions=True)
    for action, result in zip(due, results):
        if isinstance(result, Exception):
            logger.error(f"[cron] Action #{action.id} raised: {result}")
    return [a.id for a in due]


async def start_action_scheduler():
    """Background loop: run due actions every ``action_check_interval_s`` seconds."""
    interval = settings.action_check_interval_s
    logger.info(f"Action scheduler started (check every {interval}s)")

    # Wait a bit for server to fully start
    await asyncio.sleep(5)

    while True:
        try:
            await run_due_actions()
        except Exception as e:
            logger.error(f"Action scheduler loop error: {e}")
        await asyncio.sleep(interval)
