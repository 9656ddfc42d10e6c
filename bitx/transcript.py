"""Conversions between the client transcript and chat completion messages.

Client messages look like::

    {"id": ..., "role": "assistant", "content": "text",
     "toolInvocations": [{"toolCallId", "toolName", "args", "state", "result"}],
     "experimental_attachments": [{"contentType", "url"}]}
"""
import json
import logging
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


def most_recent_user_message(messages: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    for message in reversed(messages):
        if message.get("role") == "user":
            return message
    return None


def message_text(message: Dict[str, Any]) -> str:
    """Plain text of a message whose content may be a string or a list of parts."""
    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(p.get("text", "") for p in content if isinstance(p, dict) and p.get("type") == "text")
    return ""


def extract_attachments(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    attachments = []
    for message in messages:
        for att in message.get("experimental_attachments") or []:
            attachments.append({"type": att.get("contentType"), "data": att.get("url")})
    return attachments


def _user_content(message: Dict[str, Any]) -> Any:
    text = message_text(message)
    images = [
        att for att in message.get("experimental_attachments") or []
        if (att.get("contentType") or "").startswith("image/") and att.get("url")
    ]
    if not images:
        return text
    parts: List[Dict[str, Any]] = [{"type": "text", "text": text}] if text else []
    parts += [{"type": "image_url", "image_url": {"url": att["url"]}} for att in images]
    return parts


def to_llm_messages(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Convert client messages to chat completion messages.

    Tool invocations without a result are dropped: the API requires every
    tool call to be answered, and an unanswered one is still waiting on the user.
    """
    out: List[Dict[str, Any]] = []
    for message in messages:
        role = message.get("role")
        if role == "user":
            out.append({"role": "user", "content": _user_content(message)})
        elif role == "system":
            out.append({"role": "system", "content": message_text(message)})
        elif role == "assistant":
            answered = [
                inv for inv in message.get("toolInvocations") or []
                if inv.get("result") is not None
            ]
            entry: Dict[str, Any] = {"role": "assistant", "content": message_text(message) or None}
            if answered:
                entry["tool_calls"] = [
                    {
                        "id": inv["toolCallId"],
                        "type": "function",
                        "function": {"name": inv["toolName"], "arguments": json.dumps(inv.get("args") or {})},
                    }
                    for inv in answered
                ]
            if entry["content"] is None and not answered:
                continue
            out.append(entry)
            for inv in answered:
                out.append({
                    "role": "tool",
                    "tool_call_id": inv["toolCallId"],
                    "content": json.dumps(inv["result"], default=str),
                })
        else:
            logger.debug(f"Skipping message with role {role!r}")
    return out


def trim_to_window(llm_messages: List[Dict[str, Any]], limit: int) -> List[Dict[str, Any]]:
    """Keep roughly the last ``limit`` messages without orphaning tool results."""
    if len(llm_messages) <= limit:
        return llm_messages
    window = llm_messages[-limit:]
    # A window must not start with a tool reply whose assistant call was cut off
    while window and window[0]["role"] == "tool":
        window = window[1:]
    return window


def merge_client_results(stored: List[Dict[str, Any]], incoming: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Tool updates for invocations the client answered but the store has not seen yet."""
    known = {}
    for message in incoming:
        for inv in message.get("toolInvocations") or []:
            if inv.get("result") is not None:
                known[inv.get("toolCallId")] = inv["result"]

    updates = []
    for message in stored:
        for inv in message.get("toolInvocations") or []:
            call_id = inv.get("toolCallId")
            if inv.get("result") is None and call_id in known:
                result = known[call_id]
                token = result.get("result") if isinstance(result, dict) else result
                updates.append({"type": "tool-update", "toolCallId": call_id, "result": token})
    return updates
