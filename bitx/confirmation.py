"""Tool confirmation protocol.

A tool flagged ``requires_confirmation`` only runs after the user approved it:

    NONE -> REQUESTED -> CONFIRMED | DENIED -> EXECUTED

The model asks through the ``askForConfirmation`` pseudo-tool and ends its
turn. The answer arrives in-band, either as an explicit tool result added by
the client or as the user's next text message, which is classified here
(regex rules first, LLM fallback). Answers are written back into the
transcript as tool updates so the stored conversation matches the stream.
"""
import logging
import re
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from .protocol import ToolUpdate
from .transcript import message_text

logger = logging.getLogger(__name__)

CONFIRMATION_TOOL = "askForConfirmation"
CONFIRM = "confirm"
DENY = "deny"


class ConfirmationState(str, Enum):
    NONE = "none"
    REQUESTED = "requested"
    CONFIRMED = "confirmed"
    DENIED = "denied"
    EXECUTED = "executed"


# ── Reply classification ─────────────────────────────────────

_REPLY_RULES: List[Tuple[re.Pattern, bool]] = []


def _strip_punctuation(text: str) -> str:
    return text.strip().rstrip(".!?,;:…")


def _build_rules():
    # Only whole short replies are classified here; anything longer goes to the LLM
    polite = r"(?:[\s,]+(?:please|thanks|thank you))?"
    rules = [
        (r"(?:no|nope|nah|n|don'?t(?: do (?:it|that))?|do not(?: do (?:it|that))?|stop|cancel|abort|"
         r"reject|deny|never ?mind|not now)" + polite, False),
        (r"(?:yes|yeah|yep|yup|y|sure|ok(?:ay)?|confirm(?:ed)?|approved?|go ahead|do it|proceed|"
         r"sounds good|let'?s go|please do)" + polite, True),
    ]
    _REPLY_RULES.clear()
    for pattern, value in rules:
        _REPLY_RULES.append((re.compile(pattern, re.IGNORECASE), value))


def match_reply(text: str) -> Optional[bool]:
    """Classify a bare yes/no reply. Returns None when unsure."""
    text = _strip_punctuation(text or "")
    if not text:
        return None
    for regex, value in _REPLY_RULES:
        if regex.fullmatch(text):
            return value
    return None


async def interpret_reply(text: str) -> bool:
    """Map a free-text reply to approval; ambiguous replies go to the LLM, which defaults to False."""
    matched = match_reply(text)
    if matched is not None:
        logger.info(f"Confirmation reply '{text[:40]}' matched rule -> {matched}")
        return matched
    from .llm import convert_user_response_to_boolean
    return await convert_user_response_to_boolean(text)


# ── Transcript inspection ─────────────────────────────────────

def _invocations(message: Dict[str, Any]) -> List[Dict[str, Any]]:
    return message.get("toolInvocations") or []


def result_token(invocation: Dict[str, Any]) -> Optional[str]:
    """The user's answer stored on a confirmation invocation, or None if unanswered."""
    result = invocation.get("result")
    if result is None:
        return None
    if isinstance(result, dict):
        token = result.get("result")
        return str(token) if token is not None else None
    return str(result)


def _assistant_invocations(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [inv for m in messages if m.get("role") == "assistant" for inv in _invocations(m)]


def _latest_request(messages: List[Dict[str, Any]]) -> Optional[Tuple[int, int]]:
    """(message index, invocation index) of the last confirmation request."""
    for m in range(len(messages) - 1, -1, -1):
        if messages[m].get("role") != "assistant":
            continue
        invocations = _invocations(messages[m])
        for i in range(len(invocations) - 1, -1, -1):
            if invocations[i].get("toolName") == CONFIRMATION_TOOL:
                return m, i
    return None


def confirmation_state(
    messages: List[Dict[str, Any]], gated: Optional[Callable[[str], bool]] = None,
) -> ConfirmationState:
    """State of the latest confirmation request.

    An approval only holds for the turn right after it: once another assistant
    message or a second user message follows, it is spent. A confirmed request
    followed by a successful run of a gated tool is EXECUTED, an approval that
    lapsed unused is NONE. ``gated`` tells which tool names need confirmation
    (all of them by default).
    """
    found = _latest_request(messages)
    if found is None:
        return ConfirmationState.NONE
    m, i = found
    invocations = _invocations(messages[m])
    token = result_token(invocations[i])
    if token is None:
        return ConfirmationState.REQUESTED
    if token != CONFIRM:
        return ConfirmationState.DENIED

    gated = gated or (lambda name: True)
    later = invocations[i + 1:] + _assistant_invocations(messages[m + 1:])
    for inv in later:
        result = inv.get("result")
        if gated(inv.get("toolName", "")) and isinstance(result, dict) and result.get("success"):
            return ConfirmationState.EXECUTED

    replies = messages[m + 1:]
    if len(replies) > 1 or any(r.get("role") != "user" for r in replies):
        return ConfirmationState.NONE
    return ConfirmationState.CONFIRMED


def find_pending_confirmation(messages: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """The unanswered confirmation the latest user message replies to, if any.

    Only a user message directly after the assistant message that asked counts
    as a reply; a transcript ending on the question itself has no answer yet.
    """
    if len(messages) < 2 or messages[-1].get("role") != "user" or messages[-2].get("role") != "assistant":
        return None
    for inv in _invocations(messages[-2]):
        if inv.get("toolName") == CONFIRMATION_TOOL and result_token(inv) is None:
            return inv
    return None


# ── Tool updates ──────────────────────────────────────────────

def tool_update(tool_call_id: str, result: Any) -> Dict[str, Any]:
    return ToolUpdate(toolCallId=tool_call_id, result=result).model_dump()


def apply_tool_updates(messages: List[Dict[str, Any]], updates: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Patch tool invocation results in place, consuming ``updates``.

    A missing result becomes ``{"result": ..., "message": args.message}``;
    an existing one only has its ``result`` overwritten.
    """
    while updates:
        update = updates.pop()
        if not update or update.get("type") != "tool-update":
            continue
        for message in messages:
            for inv in _invocations(message):
                if inv.get("toolCallId") != update.get("toolCallId"):
                    continue
                if not isinstance(inv.get("result"), dict):
                    inv["result"] = {
                        "result": update.get("result"),
                        "message": (inv.get("args") or {}).get("message"),
                    }
                else:
                    inv["result"]["result"] = update.get("result")
                inv["state"] = "result"
    return messages


async def resolve_pending_confirmation(messages: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Answer an open confirmation with the user's text reply that follows it.

    Returns the tool update that was applied, or None when nothing was pending.
    """
    pending = find_pending_confirmation(messages)
    if pending is None:
        return None
    reply_text = message_text(messages[-1])
    if not reply_text.strip():
        return None
    approved = await interpret_reply(reply_text)
    update = tool_update(pending["toolCallId"], CONFIRM if approved else DENY)
    apply_tool_updates(messages, [dict(update)])
    logger.info(f"Confirmation {pending['toolCallId']} resolved -> {update['result']}")
    return update


# ── Gate ──────────────────────────────────────────────────────

class ConfirmationGate:
    """Decides whether a confirmation-requiring tool may run in this turn.

    One approval unlocks exactly one execution; a denial is final.
    """

    def __init__(self, state: ConfirmationState, degen_mode: bool = False):
        self.state = state
        self.degen_mode = degen_mode

    @classmethod
    def from_transcript(
        cls, messages: List[Dict[str, Any]], degen_mode: bool = False,
        gated: Optional[Callable[[str], bool]] = None,
    ) -> "ConfirmationGate":
        return cls(confirmation_state(messages, gated), degen_mode=degen_mode)

    def requested(self):
        self.state = ConfirmationState.REQUESTED

    def check(self, tool_name: str) -> Optional[str]:
        """Return None if the tool may run (consuming the approval), else the reason it may not."""
        if self.degen_mode:
            return None
        if self.state == ConfirmationState.CONFIRMED:
            self.state = ConfirmationState.EXECUTED
            return None
        if self.state == ConfirmationState.DENIED:
            return f"The user declined to run {tool_name}. Do not attempt it again."
        return (
            f"{tool_name} requires confirmation. Call {CONFIRMATION_TOOL} first "
            f"and wait for the user's answer."
        )


_build_rules()
