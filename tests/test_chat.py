"""Tests for bitx/chat.py: the streamed tool-calling turn and its persistence."""
import json
from unittest.mock import AsyncMock, patch

import pytest

from bitx.chat import ChatTurn, persist_turn, stream_chat_response
from bitx.config import settings
from bitx.protocol import parse_line
from bitx.session import ChatSession
from bitx.tools import ToolResult, enabled_tools, get_tool

from conftest import ADDRESS, fake_stream, chunk, text_step, tool_step


async def _collect(turn):
    return [parse_line(line) async for line in turn.stream()]


def _codes(parts):
    return [code for code, _ in parts]


def _user(text):
    return {"id": "u1", "role": "user", "content": text}


def _confirmed_transcript():
    return [
        _user("check fees every hour"),
        {"id": "a1", "role": "assistant", "content": "", "toolInvocations": [{
            "toolCallId": "ask-1", "toolName": "askForConfirmation", "state": "result",
            "args": {"message": "Schedule an hourly fee check?"},
            "result": {"result": "confirm", "message": "Schedule an hourly fee check?"},
        }]},
        _user("yes"),
    ]


class TestTextOnly:
    @pytest.mark.asyncio
    async def test_streams_text_and_finishes(self, chat_session):
        steps = [fake_stream([chunk(content="Hello "), chunk(content="there"), chunk(finish_reason="stop")])]
        with patch("bitx.chat.stream_completion", new_callable=AsyncMock, side_effect=steps):
            turn = ChatTurn(chat_session, [_user("hi")], tools={})
            parts = await _collect(turn)

        assert parts[0] == ("0", "Hello ")
        assert parts[1] == ("0", "there")
        assert _codes(parts)[-2:] == ["e", "d"]
        assert parts[-1][1]["finishReason"] == "stop"
        assert turn.text == "Hello there"
        assert turn.ui_message() == {"id": turn.message_id, "role": "assistant", "content": "Hello there"}

    @pytest.mark.asyncio
    async def test_usage_summed_across_steps(self, chat_session):
        steps = [tool_step(("c1", "getFeeEstimates", "{}"), prompt_tokens=100, completion_tokens=10),
                 text_step("Fees are low", prompt_tokens=150, completion_tokens=20)]
        with patch("bitx.chat.stream_completion", new_callable=AsyncMock, side_effect=steps), \
                patch("bitx.tools.builtin.mempool.fetch_json", new_callable=AsyncMock,
                      return_value={"fastestFee": 3}):
            turn = ChatTurn(chat_session, [_user("fees?")], tools=enabled_tools())
            parts = await _collect(turn)

        assert turn.usage.promptTokens == 250
        assert turn.usage.completionTokens == 30
        assert parts[-1][1]["usage"] == {"promptTokens": 250, "completionTokens": 30}

    @pytest.mark.asyncio
    async def test_system_prompt_and_window(self, chat_session):
        history = [_user(str(i)) for i in range(30)]
        mock = AsyncMock(side_effect=[text_step("ok")])
        with patch("bitx.chat.stream_completion", mock), patch.object(settings, "max_token_messages", 10):
            await _collect(ChatTurn(chat_session, history, tools={}))

        messages, schemas = mock.call_args.args
        assert messages[0]["role"] == "system"
        assert "Conversation ID: conv-1" in messages[0]["content"]
        assert len(messages) == 11
        assert messages[-1]["content"] == "29"
        assert schemas == []


class TestToolCalls:
    @pytest.mark.asyncio
    async def test_executes_and_feeds_result_back(self, chat_session):
        mock = AsyncMock(side_effect=[tool_step(("c1", "getFeeEstimates", "{}")), text_step("Fees are low")])
        with patch("bitx.chat.stream_completion", mock), \
                patch("bitx.tools.builtin.mempool.fetch_json", new_callable=AsyncMock,
                      return_value={"fastestFee": 3}):
            turn = ChatTurn(chat_session, [_user("fees?")], tools=enabled_tools())
            parts = await _collect(turn)

        assert ("9", {"toolCallId": "c1", "toolName": "getFeeEstimates", "args": {}}) in parts
        assert ("a", {"toolCallId": "c1", "result": {"success": True, "data": {"fastestFee": 3}}}) in parts
        assert mock.await_count == 2
        messages = mock.call_args_list[1].args[0]
        assert messages[-2]["tool_calls"][0]["function"]["name"] == "getFeeEstimates"
        assert messages[-1] == {"role": "tool", "tool_call_id": "c1",
                                "content": json.dumps({"success": True, "data": {"fastestFee": 3}})}
        assert turn.tool_invocations == [{
            "toolCallId": "c1", "toolName": "getFeeEstimates", "args": {}, "state": "result",
            "result": {"success": True, "data": {"fastestFee": 3}},
        }]
        assert turn.ui_message()["toolInvocations"] == turn.tool_invocations

    @pytest.mark.asyncio
    async def test_split_argument_deltas(self, chat_session):
        from conftest import tool_call_delta
        first = fake_stream([
            chunk(tool_calls=[tool_call_delta(0, "c1", "getBlockByHeight", '{"hei')]),
            chunk(tool_calls=[tool_call_delta(0, None, None, 'ght": 1}')]),
            chunk(finish_reason="tool_calls"),
        ])
        with patch("bitx.chat.stream_completion", new_callable=AsyncMock, side_effect=[first, text_step("ok")]), \
                patch("bitx.tools.builtin.mempool.fetch_text", new_callable=AsyncMock, return_value="hash"), \
                patch("bitx.tools.builtin.mempool.fetch_json", new_callable=AsyncMock, return_value={"height": 1}):
            turn = ChatTurn(chat_session, [_user("block 1")], tools=enabled_tools())
            await _collect(turn)
        assert turn.tool_invocations[0]["args"] == {"height": 1}
        assert turn.tool_invocations[0]["result"]["data"] == {"height": 1}

    @pytest.mark.asyncio
    async def test_no_follow_up_ends_turn(self, chat_session):
        handler = AsyncMock(return_value=ToolResult(data={}, no_follow_up=True))
        mock = AsyncMock(side_effect=[tool_step(("c1", "getFeeEstimates", "{}"))])
        with patch("bitx.chat.stream_completion", mock), \
                patch.object(get_tool("getFeeEstimates"), "handler", handler):
            turn = ChatTurn(chat_session, [_user("fees?")], tools=enabled_tools())
            parts = await _collect(turn)
        assert mock.await_count == 1
        assert parts[-1] == ("d", {"finishReason": "tool-calls",
                                   "usage": {"promptTokens": 10, "completionTokens": 5}})

    @pytest.mark.asyncio
    async def test_unknown_tool_not_repaired(self, chat_session):
        repair = AsyncMock()
        with patch("bitx.chat.stream_completion", new_callable=AsyncMock,
                   side_effect=[tool_step(("c1", "swapTokens", "{}")), text_step("Not supported")]), \
                patch("bitx.chat.repair_tool_args", repair):
            turn = ChatTurn(chat_session, [_user("swap")], tools=enabled_tools())
            await _collect(turn)
        repair.assert_not_called()
        assert turn.tool_invocations[0]["result"] == {"success": False, "error": "Tool swapTokens is not available"}

    @pytest.mark.asyncio
    async def test_invalid_args_repaired_once(self, chat_session):
        repair = AsyncMock(return_value={"txid": "b" * 64})
        with patch("bitx.chat.stream_completion", new_callable=AsyncMock,
                   side_effect=[tool_step(("c1", "getTransaction", '{"txid": "bad"}')), text_step("done")]), \
                patch("bitx.chat.repair_tool_args", repair), \
                patch("bitx.tools.builtin.mempool.fetch_json", new_callable=AsyncMock,
                      return_value={"txid": "b" * 64}):
            turn = ChatTurn(chat_session, [_user("tx?")], tools=enabled_tools())
            await _collect(turn)
        repair.assert_awaited_once()
        assert repair.call_args.args[2] == ["Invalid transaction ID"]
        assert turn.tool_invocations[0]["args"] == {"txid": "b" * 64}
        assert turn.tool_invocations[0]["result"]["success"] is True

    @pytest.mark.asyncio
    async def test_unparseable_args_repaired(self, chat_session):
        repair = AsyncMock(return_value=None)
        with patch("bitx.chat.stream_completion", new_callable=AsyncMock,
                   side_effect=[tool_step(("c1", "getTransaction", "{txid:")), text_step("sorry")]), \
                patch("bitx.chat.repair_tool_args", repair):
            turn = ChatTurn(chat_session, [_user("tx?")], tools=enabled_tools())
            await _collect(turn)
        assert repair.call_args.args[2] == ["Arguments are not a valid JSON object"]
        assert turn.tool_invocations[0]["result"]["success"] is False

    @pytest.mark.asyncio
    async def test_max_steps(self, chat_session):
        steps = [tool_step((f"c{i}", "getFeeEstimates", "{}")) for i in range(3)]
        mock = AsyncMock(side_effect=steps)
        with patch("bitx.chat.stream_completion", mock), patch.object(settings, "max_steps", 2), \
                patch("bitx.tools.builtin.mempool.fetch_json", new_callable=AsyncMock, return_value={}):
            turn = ChatTurn(chat_session, [_user("loop")], tools=enabled_tools())
            await _collect(turn)
        assert mock.await_count == 2
        assert turn.steps == 2

    @pytest.mark.asyncio
    async def test_llm_error_streams_error_part(self, chat_session):
        with patch("bitx.chat.stream_completion", new_callable=AsyncMock, side_effect=RuntimeError("overloaded")):
            turn = ChatTurn(chat_session, [_user("hi")], tools={})
            parts = await _collect(turn)
        assert ("3", "overloaded") in parts
        assert parts[-1][1]["finishReason"] == "error"
        assert turn.finish_reason == "error"


class TestConfirmationFlow:
    @pytest.mark.asyncio
    async def test_ask_for_confirmation_ends_turn(self, chat_session):
        mock = AsyncMock(side_effect=[
            tool_step(("ask-1", "askForConfirmation", '{"message": "Schedule an hourly fee check?"}')),
        ])
        with patch("bitx.chat.stream_completion", mock):
            turn = ChatTurn(chat_session, [_user("check fees every hour")], tools=enabled_tools())
            parts = await _collect(turn)
        assert mock.await_count == 1
        assert "a" not in _codes(parts)
        assert turn.tool_invocations == [{
            "toolCallId": "ask-1", "toolName": "askForConfirmation",
            "args": {"message": "Schedule an hourly fee check?"}, "state": "call",
        }]

    @pytest.mark.asyncio
    async def test_gated_tool_blocked_without_confirmation(self, chat_session):
        handler = AsyncMock(return_value=ToolResult(data={"id": 1}))
        args = json.dumps({"name": "fees", "description": "check fees", "frequency": 3600})
        with patch("bitx.chat.stream_completion", new_callable=AsyncMock,
                   side_effect=[tool_step(("c1", "createAction", args)), text_step("Let me ask first")]), \
                patch.object(get_tool("createAction"), "handler", handler):
            turn = ChatTurn(chat_session, [_user("check fees every hour")], tools=enabled_tools())
            await _collect(turn)
        handler.assert_not_called()
        result = turn.tool_invocations[0]["result"]
        assert result["success"] is False
        assert "askForConfirmation" in result["error"]

    @pytest.mark.asyncio
    async def test_confirmed_tool_runs_once(self, chat_session):
        handler = AsyncMock(return_value=ToolResult(data={"id": 1}))
        args = json.dumps({"name": "fees", "description": "check fees", "frequency": 3600})
        with patch("bitx.chat.stream_completion", new_callable=AsyncMock, side_effect=[
            tool_step(("c1", "createAction", args), ("c2", "createAction", args)),
            text_step("The action has been scheduled successfully"),
        ]), patch.object(get_tool("createAction"), "handler", handler):
            turn = ChatTurn(chat_session, _confirmed_transcript(), tools=enabled_tools())
            await _collect(turn)
        handler.assert_awaited_once()
        assert turn.tool_invocations[0]["result"]["success"] is True
        assert turn.tool_invocations[1]["result"]["success"] is False

    @pytest.mark.asyncio
    async def test_confirmation_not_reused_after_execution(self, chat_session):
        transcript = _confirmed_transcript() + [
            {"id": "a2", "role": "assistant", "content": "Scheduled", "toolInvocations": [{
                "toolCallId": "c1", "toolName": "createAction", "state": "result", "args": {},
                "result": {"success": True, "data": {"id": 1}},
            }]},
            _user("do it again"),
        ]
        handler = AsyncMock(return_value=ToolResult(data={"id": 2}))
        args = json.dumps({"name": "fees", "description": "check fees", "frequency": 3600})
        with patch("bitx.chat.stream_completion", new_callable=AsyncMock,
                   side_effect=[tool_step(("c3", "createAction", args)), text_step("asking")]), \
                patch.object(get_tool("createAction"), "handler", handler):
            await _collect(ChatTurn(chat_session, transcript, tools=enabled_tools()))
        handler.assert_not_called()

    @pytest.mark.asyncio
    async def test_denied_blocks(self, chat_session):
        transcript = _confirmed_transcript()
        transcript[1]["toolInvocations"][0]["result"]["result"] = "deny"
        handler = AsyncMock(return_value=ToolResult(data={"id": 1}))
        args = json.dumps({"name": "fees", "description": "check fees", "frequency": 3600})
        with patch("bitx.chat.stream_completion", new_callable=AsyncMock,
                   side_effect=[tool_step(("c1", "createAction", args)), text_step("Understood")]), \
                patch.object(get_tool("createAction"), "handler", handler):
            turn = ChatTurn(chat_session, transcript, tools=enabled_tools())
            await _collect(turn)
        handler.assert_not_called()
        assert "declined" in turn.tool_invocations[0]["result"]["error"]

    @pytest.mark.asyncio
    async def test_unused_approval_not_carried_into_later_turn(self, chat_session):
        transcript = _confirmed_transcript()[:2] + [
            {"id": "a2", "role": "assistant", "content": "What should I call it?"},
            _user("never mind. what's the price?"),
            {"id": "a3", "role": "assistant", "content": "About 65k"},
            _user("schedule a mempool report every hour"),
        ]
        handler = AsyncMock(return_value=ToolResult(data={"id": 1}))
        args = json.dumps({"name": "mempool", "description": "mempool report", "frequency": 3600})
        with patch("bitx.chat.stream_completion", new_callable=AsyncMock,
                   side_effect=[tool_step(("c1", "createAction", args)), text_step("Let me ask first")]), \
                patch.object(get_tool("createAction"), "handler", handler):
            turn = ChatTurn(chat_session, transcript, tools=enabled_tools())
            await _collect(turn)
        handler.assert_not_called()
        assert "askForConfirmation" in turn.tool_invocations[0]["result"]["error"]

    @pytest.mark.asyncio
    async def test_degen_mode_skips_confirmation(self):
        session = ChatSession(user_id=1, conversation_id="conv-1", public_key=ADDRESS, degen_mode=True)
        handler = AsyncMock(return_value=ToolResult(data={"id": 1}))
        args = json.dumps({"name": "fees", "description": "check fees", "frequency": 3600})
        mock = AsyncMock(side_effect=[tool_step(("c1", "createAction", args)), text_step("done")])
        with patch("bitx.chat.stream_completion", mock), \
                patch.object(get_tool("createAction"), "handler", handler):
            turn = ChatTurn(session, [_user("check fees hourly")], tools=enabled_tools())
            await _collect(turn)
        handler.assert_awaited_once()
        offered = [s["function"]["name"] for s in mock.call_args_list[0].args[1]]
        assert "askForConfirmation" not in offered


class TestToolSelection:
    @pytest.mark.asyncio
    async def test_orchestrator_subset_adds_confirmation(self, chat_session):
        mock = AsyncMock(side_effect=[text_step("ok")])
        with patch("bitx.chat.stream_completion", mock), patch.object(settings, "use_orchestrator", True), \
                patch("bitx.chat.select_tools", new_callable=AsyncMock, return_value=["createAction"]):
            await _collect(ChatTurn(chat_session, [_user("schedule fee checks")]))
        offered = [s["function"]["name"] for s in mock.call_args.args[1]]
        assert offered == ["createAction", "askForConfirmation"]

    @pytest.mark.asyncio
    async def test_orchestrator_failure_offers_everything(self, chat_session):
        mock = AsyncMock(side_effect=[text_step("ok")])
        with patch("bitx.chat.stream_completion", mock), patch.object(settings, "use_orchestrator", True), \
                patch("bitx.chat.select_tools", new_callable=AsyncMock, return_value=None):
            await _collect(ChatTurn(chat_session, [_user("hi")]))
        offered = {s["function"]["name"] for s in mock.call_args.args[1]}
        assert offered == set(enabled_tools())


class TestPersistence:
    @pytest.mark.asyncio
    async def test_persist_turn(self, db, user, session_factory):
        from bitx.models import Conversation, TokenStat, User
        from bitx.queries import db_get_conversation_messages
        from sqlalchemy import select

        db.add(Conversation(id="conv-1", user_id=user.id, title="Fees"))
        await db.commit()
        session = ChatSession.for_user(user, "conv-1")
        with patch("bitx.chat.stream_completion", new_callable=AsyncMock, side_effect=[text_step("Fees are low")]):
            turn = ChatTurn(session, [_user("fees?")], tools={})
            lines = [line async for line in stream_chat_response(turn, prelude=["2:[]\n"], user_message_id="u1")]

        assert lines[0] == "2:[]\n"
        async with session_factory() as check:
            messages = await db_get_conversation_messages(check, "conv-1")
            assert [(m.role, m.content) for m in messages] == [("assistant", "Fees are low")]
            assert messages[0].id == turn.message_id
            refreshed = await check.get(User, user.id)
            assert refreshed.free_messages_remaining == 9
            stat = (await check.execute(select(TokenStat))).scalar_one()
            assert stat.message_ids == ["u1", turn.message_id]
            assert stat.total_tokens == 15

    @pytest.mark.asyncio
    async def test_empty_turn_saves_no_message(self, db, user, session_factory):
        from bitx.queries import db_get_conversation_messages
        session = ChatSession.for_user(user, "conv-1")
        turn = ChatTurn(session, [], tools={})
        await persist_turn(turn)
        async with session_factory() as check:
            assert await db_get_conversation_messages(check, "conv-1") == []
