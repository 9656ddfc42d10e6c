"""Tests for bitx/transcript.py: client transcript to chat completion messages."""
import json

from bitx.transcript import (
    extract_attachments, merge_client_results, message_text, most_recent_user_message,
    to_llm_messages, trim_to_window,
)


def _invocation(call_id, name="getFeeEstimates", result=None, args=None):
    inv = {"toolCallId": call_id, "toolName": name, "args": args or {}, "state": "call"}
    if result is not None:
        inv["result"] = result
        inv["state"] = "result"
    return inv


class TestHelpers:
    def test_most_recent_user_message(self):
        messages = [{"role": "user", "content": "a"}, {"role": "assistant", "content": "b"},
                    {"role": "user", "content": "c"}, {"role": "assistant", "content": "d"}]
        assert most_recent_user_message(messages)["content"] == "c"

    def test_no_user_message(self):
        assert most_recent_user_message([{"role": "assistant", "content": "hi"}]) is None

    def test_message_text_from_parts(self):
        message = {"content": [{"type": "text", "text": "fees "}, {"type": "image"}, {"type": "text", "text": "now"}]}
        assert message_text(message) == "fees now"

    def test_extract_attachments(self):
        messages = [
            {"role": "user", "content": "look", "experimental_attachments": [
                {"contentType": "image/png", "url": "data:image/png;base64,AAA"}]},
            {"role": "assistant", "content": "ok"},
        ]
        assert extract_attachments(messages) == [{"type": "image/png", "data": "data:image/png;base64,AAA"}]


class TestToLlmMessages:
    def test_plain_messages(self):
        out = to_llm_messages([{"role": "user", "content": "hi"}, {"role": "assistant", "content": "hello"}])
        assert out == [{"role": "user", "content": "hi"}, {"role": "assistant", "content": "hello"}]

    def test_answered_tool_invocations(self):
        message = {"role": "assistant", "content": "", "toolInvocations": [
            _invocation("c1", result={"success": True, "data": {"fastestFee": 9}}),
        ]}
        out = to_llm_messages([message])
        assert out[0]["role"] == "assistant"
        assert out[0]["content"] is None
        assert out[0]["tool_calls"][0]["id"] == "c1"
        assert json.loads(out[0]["tool_calls"][0]["function"]["arguments"]) == {}
        assert out[1] == {"role": "tool", "tool_call_id": "c1",
                          "content": json.dumps({"success": True, "data": {"fastestFee": 9}})}

    def test_unanswered_invocation_dropped(self):
        message = {"role": "assistant", "content": "", "toolInvocations": [
            _invocation("c1", name="askForConfirmation", args={"message": "ok?"})]}
        assert to_llm_messages([message]) == []

    def test_image_attachment_becomes_part(self):
        message = {"role": "user", "content": "what is this?", "experimental_attachments": [
            {"contentType": "image/jpeg", "url": "https://x.test/a.jpg"}]}
        content = to_llm_messages([message])[0]["content"]
        assert content[0] == {"type": "text", "text": "what is this?"}
        assert content[1] == {"type": "image_url", "image_url": {"url": "https://x.test/a.jpg"}}


class TestTrimToWindow:
    def test_short_history_untouched(self):
        messages = [{"role": "user", "content": str(i)} for i in range(3)]
        assert trim_to_window(messages, 10) == messages

    def test_keeps_last_messages(self):
        messages = [{"role": "user", "content": str(i)} for i in range(15)]
        assert [m["content"] for m in trim_to_window(messages, 10)] == [str(i) for i in range(5, 15)]

    def test_does_not_start_with_tool_reply(self):
        messages = [
            {"role": "user", "content": "fees?"},
            {"role": "assistant", "content": None, "tool_calls": [{"id": "c1"}]},
            {"role": "tool", "tool_call_id": "c1", "content": "{}"},
            {"role": "assistant", "content": "done"},
        ]
        window = trim_to_window(messages, 2)
        assert window == [{"role": "assistant", "content": "done"}]


class TestMergeClientResults:
    def test_updates_for_new_results(self):
        stored = [{"id": "m1", "role": "assistant", "toolInvocations": [
            _invocation("c1", name="askForConfirmation", args={"message": "ok?"})]}]
        incoming = [{"id": "m1", "role": "assistant", "toolInvocations": [
            _invocation("c1", name="askForConfirmation", result={"result": "confirm", "message": "ok?"})]}]
        assert merge_client_results(stored, incoming) == [
            {"type": "tool-update", "toolCallId": "c1", "result": "confirm"}
        ]

    def test_already_stored_results_ignored(self):
        stored = [{"role": "assistant", "toolInvocations": [_invocation("c1", result={"result": "deny"})]}]
        incoming = [{"role": "assistant", "toolInvocations": [_invocation("c1", result={"result": "confirm"})]}]
        assert merge_client_results(stored, incoming) == []
