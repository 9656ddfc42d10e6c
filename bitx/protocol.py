"""Chat stream wire format: one ``<code>:<json>\\n`` line per part."""
import json
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel

TEXT = "0"
DATA = "2"
ERROR = "3"
TOOL_CALL = "9"
TOOL_RESULT = "a"
FINISH_STEP = "e"
FINISH_MESSAGE = "d"


class Usage(BaseModel):
    promptTokens: int = 0
    completionTokens: int = 0

    def add(self, prompt: int, completion: int):
        self.promptTokens += prompt or 0
        self.completionTokens += completion or 0

    @property
    def totalTokens(self) -> int:
        return self.promptTokens + self.completionTokens


class ToolCall(BaseModel):
    toolCallId: str
    toolName: str
    args: Dict[str, Any]


class ToolResultPart(BaseModel):
    toolCallId: str
    result: Any


class ToolUpdate(BaseModel):
    type: Literal["tool-update"] = "tool-update"
    toolCallId: str
    result: Any


class StepFinish(BaseModel):
    finishReason: str
    usage: Usage
    isContinued: bool = False


class MessageFinish(BaseModel):
    finishReason: str
    usage: Usage


def _line(code: str, value: Any) -> str:
    return f"{code}:{json.dumps(value, ensure_ascii=False, default=str)}\n"


def text_part(text: str) -> str:
    return _line(TEXT, text)


def data_part(items: List[Dict[str, Any]]) -> str:
    return _line(DATA, items)


def error_part(message: str) -> str:
    return _line(ERROR, message)


def tool_call_part(call: ToolCall) -> str:
    return _line(TOOL_CALL, call.model_dump())


def tool_result_part(part: ToolResultPart) -> str:
    return _line(TOOL_RESULT, part.model_dump())


def finish_step_part(finish_reason: str, usage: Usage, is_continued: bool = False) -> str:
    return _line(FINISH_STEP, StepFinish(finishReason=finish_reason, usage=usage,
                                         isContinued=is_continued).model_dump())


def finish_message_part(finish_reason: str, usage: Usage) -> str:
    return _line(FINISH_MESSAGE, MessageFinish(finishReason=finish_reason, usage=usage).model_dump())


def parse_line(line: str) -> Optional[tuple]:
    """Split a stream line into (code, value); used by clients and tests."""
    line = line.strip()
    if not line or ":" not in line:
        return None
    code, _, payload = line.partition(":")
    return code, json.loads(payload)
