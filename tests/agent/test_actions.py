"""Tests for the action tag parser."""

import pytest

from kuukibot.agent.actions import ActionCall, ActionKind, parse_actions, parse_params, parse_response
from kuukibot.errors import MalformedActionError, ParseFallbackError


# ── Parameter formats ────────────────────────────────────────────────────


class TestParseParams:
    def test_json_object(self):
        params, error = parse_params("chat____reply", '{"message_id": "42", "reply": "same"}')
        assert params == {"message_id": "42", "reply": "same"}
        assert error is None

    def test_repaired_json(self):
        params, error = parse_params("chat____reply", '{"message_id": "42", "reply": "same",}')
        assert params == {"message_id": "42", "reply": "same"}
        assert error is None

    def test_unquoted_keys_are_repaired(self):
        params, error = parse_params("chat____note", "{note: 'remember this'}")
        assert params == {"note": "remember this"}
        assert error is None

    def test_subtags(self):
        params, error = parse_params(
            "chat____reply", "<message_id>42</message_id>\n<reply>same</reply>",
        )
        assert params == {"message_id": "42", "reply": "same"}
        assert error is None

    def test_raw_fallback(self):
        params, error = parse_params("chat____text", "just some words")
        assert params == "just some words"
        assert isinstance(error, ParseFallbackError)
        assert error.tag == "chat____text"

    def test_empty_body(self):
        assert parse_params("chat____skip", "  ") == ({}, None)


# ── Response parsing ─────────────────────────────────────────────────────


class TestParseResponse:
    def test_ordered_calls(self):
        text = (
            '<chat____note>{"note": "they like tea"}</chat____note>\n'
            '<chat____reply>{"message_id": "7", "reply": "same"}</chat____reply>'
        )
        calls = parse_actions(text)
        assert [c.kind for c in calls] == [ActionKind.NOTE, ActionKind.REPLY]
        assert calls[1].param("message_id") == "7"

    def test_unknown_tags_yield_no_calls(self):
        text = "<thinking>hmm</thinking><chat____dance>{}</chat____dance> plain text"
        assert parse_actions(text) == []

    def test_empty_response(self):
        parsed = parse_response(None)
        assert parsed.calls == []
        assert parsed.text == ""

    def test_self_closing_skip(self):
        calls = parse_actions("nothing to add <chat____skip/>")
        assert len(calls) == 1
        assert calls[0].kind is ActionKind.SKIP

    def test_reasoning_prefix_is_ignored(self):
        text = 'I should greet them.<chat____text>{"message": "hi"}</chat____text>'
        calls = parse_actions(text)
        assert calls[0].param("message") == "hi"

    def test_stops_at_first_continuation(self):
        text = (
            '<chat____note>{"note": "n"}</chat____note>'
            '<chat____search>{"keyword": "tea"}</chat____search>'
            '<chat____reply>{"message_id": "1", "reply": "never"}</chat____reply>'
        )
        parsed = parse_response(text)
        assert [c.kind for c in parsed.calls] == [ActionKind.NOTE, ActionKind.SEARCH]
        assert parsed.truncated
        assert parsed.text.endswith("</chat____search>")
        assert "never" not in parsed.text
        assert parsed.continuation is parsed.calls[-1]

    def test_web_search_is_continuation(self):
        parsed = parse_response('<web____search>{"keyword": "weather"}</web____search>')
        assert parsed.continuation.kind is ActionKind.WEB_SEARCH
        assert not parsed.truncated

    def test_no_continuation(self):
        parsed = parse_response('<chat____text>{"message": "hi"}</chat____text>')
        assert parsed.continuation is None

    def test_raw_text_fills_single_param_tool(self):
        calls = parse_actions("<chat____text>hello there</chat____text>")
        assert calls[0].params == {"message": "hello there"}
        assert calls[0].parse_error is not None

    def test_raw_text_on_multi_param_tool_is_malformed(self):
        calls = parse_actions("<chat____reply>hello there</chat____reply>")
        assert calls[0].params == {}
        with pytest.raises(MalformedActionError):
            calls[0].validate()


# ── ActionCall ───────────────────────────────────────────────────────────


class TestActionCall:
    def test_missing_params(self):
        call = ActionCall(kind=ActionKind.REPLY, params={"reply": "x"})
        assert call.missing_params() == ["message_id"]

    def test_blank_param_counts_as_missing(self):
        call = ActionCall(kind=ActionKind.TEXT, params={"message": "   "})
        with pytest.raises(MalformedActionError) as exc:
            call.validate()
        assert exc.value.missing == ["message"]

    def test_numeric_param_is_stringified(self):
        call = ActionCall(kind=ActionKind.REPLY, params={"message_id": 42, "reply": "ok"})
        call.validate()
        assert call.param("message_id") == "42"

    def test_skip_needs_nothing(self):
        ActionCall(kind=ActionKind.SKIP).validate()

    def test_to_dict(self):
        call = ActionCall(kind=ActionKind.NOTE, params={"note": "n"})
        assert call.to_dict() == {"kind": "note", "params": {"note": "n"}, "fallback": False}
