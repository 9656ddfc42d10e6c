"""One chat turn: orchestrate tools, stream the model, execute tool calls, persist.

The turn runs up to ``settings.max_steps`` model calls. Each step streams
text, then executes the tool calls the model made and feeds the results back.
The turn ends when the model answers without tools, when it asks the user for
confirmation, or when every result of a step says there is nothing to add.
"""
import json
import logging
import time
import uuid
from typing import Any, AsyncIterator, Dict, List, Optional

from .config import settings
from .confirmation import CONFIRMATION_TOOL, ConfirmationGate
from .llm import build_system_prompt, repair_tool_args, select_tools, stream_completion
from .protocol import (
    ToolCall, ToolResultPart, Usage,
    error_part, finish_message_part, finish_step_part, text_part, tool_call_part, tool_result_part,
)
from .session import ChatSession
from .tools import (
    ToolDef, ToolResult, enabled_tools, execute_tool, get_tool, openai_tool_schemas, tools_from_names,
)
from .tools.registry import validate_args
from .transcript import extract_attachments, message_text, most_recent_user_message, to_llm_messages, trim_to_window

logger = logging.getLogger(__name__)

_FINISH_REASONS = {
    "stop": "stop",
    "tool_calls": "tool-calls",
    "function_call": "tool-calls",
    "length": "length",
    "content_filter": "content-filter",
}


def _requires_confirmation(name: str) -> bool:
    tool = get_tool(name)
    return bool(tool and tool.requires_confirmation)


def _parse_args(raw: str) -> Optional[Dict[str, Any]]:
    if not raw or not raw.strip():
        return {}
    try:
        args = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return args if isinstance(args, dict) else None


class ChatTurn:
    """State of one assistant reply; ``stream()`` yields wire lines and fills the fields below."""

    def __init__(self, session: ChatSession, transcript: List[Dict[str, Any]],
                 tools: Optional[Dict[str, ToolDef]] = None):
        self.session = session
        self.transcript = transcript
        self.tools = tools
        self.gate = ConfirmationGate.from_transcript(
            transcript, degen_mode=session.degen_mode, gated=_requires_confirmation,
        )
        self.message_id = uuid.uuid4().hex
        self.text = ""
        self.tool_invocations: List[Dict[str, Any]] = []
        self.usage = Usage()
        self.finish_reason = "unknown"
        self.steps = 0

    # ── Setup ─────────────────────────────────────────────────

    async def _resolve_tools(self) -> Dict[str, ToolDef]:
        if self.tools is not None:
            tools = self.tools
        elif settings.use_orchestrator:
            user_message = most_recent_user_message(self.transcript)
            names = await select_tools(message_text(user_message)) if user_message else None
            tools = enabled_tools() if names is None else tools_from_names(names)
        else:
            tools = enabled_tools()

        tools = dict(tools)
        if self.session.degen_mode:
            tools.pop(CONFIRMATION_TOOL, None)
        elif any(t.requires_confirmation for t in tools.values()) and CONFIRMATION_TOOL not in tools:
            confirmation = enabled_tools().get(CONFIRMATION_TOOL)
            if confirmation:
                tools[CONFIRMATION_TOOL] = confirmation
        return tools

    def _initial_messages(self) -> List[Dict[str, Any]]:
        system_prompt = build_system_prompt(
            self.session.user_id,
            self.session.conversation_id,
            attachments=extract_attachments(self.transcript),
            degen_mode=self.session.degen_mode,
        )
        history = trim_to_window(to_llm_messages(self.transcript), settings.max_token_messages)
        return [{"role": "system", "content": system_prompt}] + history

    # ── Loop ──────────────────────────────────────────────────

    async def stream(self) -> AsyncIterator[str]:
        sid = self.session.request_id
        tools = await self._resolve_tools()
        self.tools = tools
        schemas = openai_tool_schemas(tools)
        messages = self._initial_messages()
        logger.info(f"[chat {sid}] conversation={self.session.conversation_id} tools={list(tools)}")

        while self.steps < settings.max_steps:
            self.steps += 1
            step_text: List[str] = []
            calls: Dict[int, Dict[str, str]] = {}
            finish_reason = "unknown"

            try:
                completion = await stream_completion(messages, schemas)
                async for chunk in completion:
                    if getattr(chunk, "usage", None):
                        self.usage.add(chunk.usage.prompt_tokens, chunk.usage.completion_tokens)
                    if not chunk.choices:
                        continue
                    choice = chunk.choices[0]
                    delta = choice.delta
                    if delta is not None and delta.content:
                        step_text.append(delta.content)
                        yield text_part(delta.content)
                    for tc in (delta.tool_calls or []) if delta is not None else []:
                        slot = calls.setdefault(tc.index, {"id": "", "name": "", "arguments": ""})
                        if tc.id:
                            slot["id"] = tc.id
                        if tc.function is not None:
                            slot["name"] += tc.function.name or ""
                            slot["arguments"] += tc.function.arguments or ""
                    if choice.finish_reason:
                        finish_reason = _FINISH_REASONS.get(choice.finish_reason, "other")
            except Exception as e:
                logger.error(f"[chat {sid}] LLM stream failed at step {self.steps}: {e}", exc_info=True)
                self.finish_reason = "error"
                yield error_part(str(e) or type(e).__name__)
                break

            self.text += "".join(step_text)
            self.finish_reason = finish_reason

            if not calls:
                yield finish_step_part(finish_reason, self.usage)
                break

            ordered = [calls[i] for i in sorted(calls)]
            for call in ordered:
                call["id"] = call["id"] or f"call_{uuid.uuid4().hex[:24]}"
            assistant_entry = {
                "role": "assistant",
                "content": "".join(step_text) or None,
                "tool_calls": [
                    {"id": c["id"], "type": "function", "function": {"name": c["name"], "arguments": "{}"}}
                    for c in ordered
                ],
            }
            messages.append(assistant_entry)

            awaiting_user = False
            follow_up = False
            for i, call in enumerate(ordered):
                async for line in self._run_tool_call(call):
                    yield line
                invocation = self.tool_invocations[-1]
                # Echo the arguments that actually ran (after parsing and repair)
                assistant_entry["tool_calls"][i]["function"]["arguments"] = json.dumps(invocation["args"])
                if invocation["state"] == "call":
                    awaiting_user = True
                    continue
                result = invocation["result"]
                if not result.get("noFollowUp"):
                    follow_up = True
                messages.append({
                    "role": "tool",
                    "tool_call_id": call["id"],
                    "content": json.dumps(result, default=str),
                })

            yield finish_step_part("tool-calls", self.usage, is_continued=False)
            self.finish_reason = "tool-calls"
            if awaiting_user:
                logger.info(f"[chat {sid}] Waiting for user confirmation")
                break
            if not follow_up:
                logger.info(f"[chat {sid}] All tool results ask for no follow-up, ending turn")
                break
        else:
            logger.warning(f"[chat {sid}] Reached max steps ({settings.max_steps})")

        yield finish_message_part(self.finish_reason, self.usage)
        logger.info(
            f"[chat {sid}] Turn done: {self.steps} step(s), {len(self.tool_invocations)} tool call(s), "
            f"{self.usage.totalTokens} tokens ({self.session.elapsed():.1f}s)"
        )

    async def _run_tool_call(self, call: Dict[str, str]) -> AsyncIterator[str]:
        """Execute one tool call, appending its invocation record."""
        name = call["name"]
        args = _parse_args(call["arguments"])
        tool = self.tools.get(name)

        if tool is not None and tool.handler is not None:
            errors = ["Arguments are not a valid JSON object"] if args is None else validate_args(tool, dict(args))
            if errors:
                repaired = await repair_tool_args(tool, call["arguments"] if args is None else args, errors)
                if repaired is not None:
                    args = repaired
        args = args if args is not None else {}

        invocation: Dict[str, Any] = {"toolCallId": call["id"], "toolName": name, "args": args}
        self.tool_invocations.append(invocation)
        yield tool_call_part(ToolCall(toolCallId=call["id"], toolName=name, args=args))

        if tool is not None and name == CONFIRMATION_TOOL:
            # The user answers this one; the turn stops here
            invocation["state"] = "call"
            self.gate.requested()
            return

        reason = self.gate.check(name) if tool is not None and tool.requires_confirmation else None
        if tool is None:
            result = ToolResult.failure(f"Tool {name} is not available")
        elif reason:
            logger.info(f"[chat {self.session.request_id}] Blocked {name}: {reason}")
            result = ToolResult.failure(reason)
        else:
            t0 = time.monotonic()
            result = await execute_tool(name, args, session=self.session)
            logger.debug(f"[chat {self.session.request_id}] {name} took {time.monotonic() - t0:.2f}s")

        invocation["state"] = "result"
        invocation["result"] = result.to_dict()
        yield tool_result_part(ToolResultPart(toolCallId=call["id"], result=invocation["result"]))

    # ── Output ────────────────────────────────────────────────

    def ui_message(self) -> Optional[Dict[str, Any]]:
        """The assistant message as stored and shown by the client; None when the turn produced nothing."""
        if not self.text and not self.tool_invocations:
            return None
        message: Dict[str, Any] = {"id": self.message_id, "role": "assistant", "content": self.text}
        if self.tool_invocations:
            message["toolInvocations"] = self.tool_invocations
        return message


async def persist_turn(turn: ChatTurn, user_message_id: Optional[str] = None):
    """Spend a free message, store the assistant reply and record token usage."""
    from .database import async_session_factory
    from .queries import db_create_messages, db_create_token_stat, db_decrease_free_messages

    session = turn.session
    async with async_session_factory() as db:
        remaining = await db_decrease_free_messages(db, session.user_id)
        logger.info(f"[chat {session.request_id}] Free messages remaining: {remaining}")

        message = turn.ui_message()
        if message:
            await db_create_messages(db, [{
                "id": message["id"],
                "conversation_id": session.conversation_id,
                "role": "assistant",
                "content": message["content"],
                "tool_invocations": message.get("toolInvocations"),
            }])

        message_ids = [mid for mid in (user_message_id, message["id"] if message else None) if mid]
        await db_create_token_stat(
            db,
            user_id=session.user_id,
            message_ids=message_ids,
            prompt_tokens=turn.usage.promptTokens,
            completion_tokens=turn.usage.completionTokens,
            total_tokens=turn.usage.totalTokens,
        )


async def stream_chat_response(
    turn: ChatTurn, prelude: Optional[List[str]] = None, user_message_id: Optional[str] = None,
) -> AsyncIterator[str]:
    """Body of the streaming chat response: prelude lines, the turn, then persistence."""
    for line in prelude or []:
        yield line
    async for line in turn.stream():
        yield line
    try:
        await persist_turn(turn, user_message_id)
    except Exception as e:
        logger.error(f"[chat {turn.session.request_id}] Failed to persist turn: {e}", exc_info=True)
