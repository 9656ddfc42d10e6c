"""LLM access: system prompts, tool orchestration, titles and confirmation classification."""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI

from .config import settings

logger = logging.getLogger(__name__)

INVALID_TOOL_PREFIX = "INVALID_TOOL:"

SYSTEM_PROMPT = """Your name is Bitx (Agent).
You are a specialized AI assistant for Bitcoin blockchain and DeFi operations, designed to provide secure, accurate, and user-friendly assistance.
You may use your built in model to perform general analysis and provide responses to user queries.
If you need to perform specific tasks you don't have built in training for, you can use the available tools.

Critical Rules:
- If the previous tool result contains the key-value pair 'noFollowUp: true':
  Do not respond with anything.
- If the previous tool result contains the key-value pair 'suppressFollowUp: true':
  Respond only with something like:
     - "Take a look at the results above"
- Do not attempt to call a tool that you have not been provided, let the user know that the requested action is not supported.

Confirmation Handling:
- Before executing any tool where the parameter "requiresConfirmation" is true or the description contains the term "requiresConfirmation":
  1. Always call the `askForConfirmation` tool to request explicit user confirmation.
  2. STOP your response immediately after calling `askForConfirmation` without providing any additional information or context.
  3. Wait for the user to explicitly confirm or reject the action in a separate response.
  4. Ask for confirmation when the user is creating an action.
  5. Never ask for confirmation if the user has enabled `degenMode`.
- Post-Confirmation Execution:
  - If the user confirms:
    1. Only proceed with executing the tool in a new response after the confirmation.
  - If the user rejects:
    1. Acknowledge the rejection (e.g., "Understood, the action will not be executed").
    2. Do not attempt the tool execution.
- Behavioral Guidelines:
  1. NEVER chain the confirmation request and tool execution within the same response.
  2. NEVER execute the tool without explicit confirmation from the user.
  3. Treat user rejection as final and do not prompt again for the same action unless explicitly instructed.

Scheduled Actions:
- Scheduled actions are automated tasks that are executed at specific intervals.
- These actions are designed to perform routine operations without manual intervention.
- Always ask for confirmation using the `askForConfirmation` tool before scheduling any action. Obey the rules outlined in the "Confirmation Handling" section.
- If previous tool result is `createAction`, response only with something like:
  - "The action has been scheduled successfully"

Response Formatting:
- Use proper line breaks between different sections of your response for better readability
- Utilize markdown features effectively to enhance the structure of your response
- Keep responses concise and well-organized
- Use emojis sparingly and only when appropriate for the context
- Use an abbreviated format for transaction ids and addresses

Realtime knowledge:
- {{ approximateCurrentTime: {current_time} }}"""

ORCHESTRATION_PROMPT = """You are Bitx, an AI assistant specialized in Bitcoin blockchain ordinals and runes protocol and DeFi operations.

Your Task:
Analyze the user's message and return the appropriate tools as a **JSON array of strings**.

Rules:
- Only include the askForConfirmation tool if the user's message requires a transaction signature or if they are creating an action.
- Only return the toolsets in the format: ["toolset1", "toolset2", ...].
- Do not add any text, explanations, or comments outside the array.
- Be complete: include all necessary toolsets to handle the request, if you're unsure, it's better to include the tool than to leave it out.
- If the request cannot be completed with the available toolsets, return an array describing the unknown tools ["INVALID_TOOL:${{INVALID_TOOL_NAME}}"].

Available Tools:
{tool_list}"""

TITLE_PROMPT = """- you will generate a short title based on the first message a user begins a conversation with
- ensure it is not more than 80 characters long
- the title should be a summary of the user's message
- do not use quotes or colons
- use "New chat" for greetings"""

BOOLEAN_PROMPT = """- you will generate a boolean response based on a user's message content
- only return true or false
- if an explicit affirmative response cannot be determined, return false"""

REPAIR_PROMPT = """The model tried to call the tool "{tool_name}" with the following arguments:
{args}
The tool accepts the following schema:
{schema}
The arguments were rejected: {errors}
Please fix the arguments. Respond with the corrected arguments as a JSON object only."""


def _get_client() -> AsyncOpenAI:
    return AsyncOpenAI(
        api_key=settings.openai_api_key,
        base_url=settings.openai_base_url,
    )


def _extra_body() -> Optional[Dict[str, Any]]:
    # OpenRouter: pin providers so tool calling behaves consistently
    if "openrouter.ai" in settings.openai_base_url:
        return {"provider": {"order": ["Anthropic", "OpenAI"], "allow_fallbacks": False}}
    return None


def build_system_prompt(
    user_id: int,
    conversation_id: str,
    attachments: Optional[List[Dict[str, Any]]] = None,
    degen_mode: bool = False,
) -> str:
    now_str = datetime.now(timezone.utc).isoformat()
    prompt = SYSTEM_PROMPT.replace("{current_time}", now_str).replace("{{", "{").replace("}}", "}")
    return (
        prompt
        + f"\n\nHistory of attachments: {json.dumps(attachments or [])}"
        + f"\n\nUser ID: {user_id}"
        + f"\n\nConversation ID: {conversation_id}"
        + f"\n\nUser settings: {{ degenMode: {'true' if degen_mode else 'false'} }}"
    )


async def _complete_text(system: str, prompt: str, model: Optional[str] = None) -> str:
    client = _get_client()
    response = await client.chat.completions.create(
        model=model or settings.openai_chat_model,
        messages=[
            {"role": "system", "content": system},
            {"role": "user", "content": prompt},
        ],
        extra_body=_extra_body(),
    )
    return (response.choices[0].message.content or "").strip()


async def generate_title(message_text: str) -> str:
    """Short conversation title from the first user message."""
    try:
        title = await _complete_text(TITLE_PROMPT, json.dumps(message_text))
    except Exception as e:
        logger.warning(f"Title generation failed: {e}")
        return "New chat"
    title = title.strip().strip('"').replace(":", "")
    return title[:80] or "New chat"


async def convert_user_response_to_boolean(message: str) -> bool:
    raw = await _complete_text(BOOLEAN_PROMPT, message)
    logger.info(f"Confirmation classifier: {message[:40]!r} -> {raw!r}")
    return raw.strip().lower() == "true"


def parse_tool_selection(raw: str) -> List[str]:
    """Parse the orchestrator's JSON array; INVALID_TOOL entries are logged and dropped."""
    text = raw.strip()
    if text.startswith("```"):
        text = text.strip("`")
        text = text[text.find("["):]
    start, end = text.find("["), text.rfind("]")
    if start == -1 or end == -1:
        raise ValueError(f"No JSON array in orchestrator output: {raw[:200]!r}")
    names = json.loads(text[start:end + 1])
    selected = []
    for name in names:
        if not isinstance(name, str):
            continue
        if name.startswith(INVALID_TOOL_PREFIX):
            logger.info(f"Orchestrator reported unsupported tool: {name[len(INVALID_TOOL_PREFIX):]}")
            continue
        selected.append(name)
    return selected


async def select_tools(user_text: str) -> Optional[List[str]]:
    """Ask the orchestrator model which tools the message needs.

    Returns None when the orchestrator fails, meaning "offer every enabled tool".
    """
    from .tools import tool_descriptions_for_llm
    system_prompt = ORCHESTRATION_PROMPT.replace("{tool_list}", tool_descriptions_for_llm())
    system_prompt = system_prompt.replace("{{", "{").replace("}}", "}")
    try:
        raw = await _complete_text(system_prompt, user_text, model=settings.orchestrator_model)
        names = parse_tool_selection(raw)
    except Exception as e:
        logger.warning(f"Tool orchestration failed, offering all tools: {e}")
        return None
    logger.info(f"Orchestrator selected tools: {names}")
    return names


async def repair_tool_args(tool, args: Any, errors: List[str]) -> Optional[Dict[str, Any]]:
    """Ask the model to fix arguments that failed validation. Returns None if it can't."""
    from .tools.registry import parameters_schema
    prompt = REPAIR_PROMPT.format(
        tool_name=tool.name,
        args=json.dumps(args, default=str),
        schema=json.dumps(parameters_schema(tool)),
        errors="; ".join(errors),
    )
    client = _get_client()
    try:
        response = await client.chat.completions.create(
            model=settings.openai_chat_model,
            messages=[{"role": "user", "content": prompt}],
            response_format={"type": "json_object"},
            extra_body=_extra_body(),
        )
        repaired = json.loads(response.choices[0].message.content or "")
    except Exception as e:
        logger.warning(f"Tool call repair failed for {tool.name}: {e}")
        return None
    logger.info(f"Repaired args for {tool.name}: {repaired}")
    return repaired if isinstance(repaired, dict) else None


async def stream_completion(messages: List[Dict[str, Any]], tools: List[Dict[str, Any]]):
    """Open a streaming chat completion; yields raw chunks (usage arrives in the last one)."""
    client = _get_client()
    kwargs: Dict[str, Any] = {
        "model": settings.openai_chat_model,
        "messages": messages,
        "stream": True,
        "stream_options": {"include_usage": True},
        "extra_body": _extra_body(),
    }
    if tools:
        kwargs["tools"] = tools
    return await client.chat.completions.create(**kwargs)
