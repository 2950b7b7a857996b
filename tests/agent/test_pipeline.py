"""Tests for ActionPipeline: execution, continuation bound, feedback, failures."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from kuukibot.agent.cancellation import CancelToken
from kuukibot.agent.context import ContextBuilder, RetrievedContext
from kuukibot.agent.live_trace import LiveTracer
from kuukibot.agent.pipeline import ActionPipeline, PipelineContext
from kuukibot.bus.events import HistoryEntry, InboundEvent
from kuukibot.config.schema import AgentConfig, PipelineConfig
from kuukibot.errors import BackendError, RunInterruptedError
from kuukibot.gate.models import Decision, DecisionKind
from kuukibot.providers.base import LLMResponse

REPLY = '<chat____reply>{"message_id": "m1", "reply": "same"}</chat____reply>'
TEXT = '<chat____text>{"message": "hi all"}</chat____text>'
SKIP = "<chat____skip></chat____skip>"
SEARCH = '<chat____search>{"keyword": "tea"}</chat____search>'
WEB = '<web____search>{"keyword": "weather"}</web____search>'


# ── Helpers ──────────────────────────────────────────────────────────────


def make_provider(*texts: str) -> MagicMock:
    provider = MagicMock()
    provider.chat = AsyncMock(side_effect=[LLMResponse(content=t, model="test-model") for t in texts])
    return provider


def make_executor() -> MagicMock:
    executor = MagicMock()
    executor.send_text = AsyncMock()
    executor.send_reply = AsyncMock()
    executor.record_action = AsyncMock()
    executor.search = AsyncMock(return_value=[
        HistoryEntry(kind="message", text="green tea is best", message_id="m0", sender_name="Bob"),
    ])
    executor.web_search = AsyncMock(return_value=[{"title": "Sunny", "link": "https://example.com"}])
    executor.update_memory = AsyncMock(return_value={"success": True, "memory": "likes tea"})
    return executor


def make_ctx(depth: int = 0) -> PipelineContext:
    event = InboundEvent(
        conversation_id="chat", message_id="m1", text="tea?", sender_id="u1", sender_name="Alice",
    )
    decision = Decision(True, DecisionKind.MENTION, "mentioned or replied to")
    return PipelineContext("chat", event, RetrievedContext(), decision, stack_depth=depth)


def make_pipeline(provider, executor=None, gate=None, tracer=None, **pipeline) -> ActionPipeline:
    config = AgentConfig(pipeline=PipelineConfig(**pipeline))
    return ActionPipeline(
        provider,
        executor or make_executor(),
        config,
        gate=gate,
        tracer=tracer,
        builder=ContextBuilder(config, clock=lambda: 0),
    )


# ── Execution ────────────────────────────────────────────────────────────


class TestExecution:
    @pytest.mark.asyncio
    async def test_reply_and_text(self):
        executor = make_executor()
        pipeline = make_pipeline(make_provider(TEXT + REPLY), executor)

        outcome = await pipeline.run(make_ctx())

        executor.send_text.assert_awaited_once_with("chat", "hi all")
        executor.send_reply.assert_awaited_once_with("chat", "same", "m1")
        executor.record_action.assert_any_await("chat", "same", "reply", {"reply_to_message_id": "m1"})
        assert outcome.executed == ["text", "reply"]
        assert outcome.backend_calls == 1
        assert outcome.replied

    @pytest.mark.asyncio
    async def test_note_is_recorded(self):
        executor = make_executor()
        pipeline = make_pipeline(make_provider('<chat____note>{"note": "likes tea"}</chat____note>'), executor)
        await pipeline.run(make_ctx())
        executor.record_action.assert_awaited_once_with("chat", "likes tea", "note")

    @pytest.mark.asyncio
    async def test_update_memory(self):
        executor = make_executor()
        text = '<memory____update>{"message_id": "m1", "instruction": "likes tea"}</memory____update>'
        outcome = await make_pipeline(make_provider(text), executor).run(make_ctx())
        executor.update_memory.assert_awaited_once_with("m1", "likes tea")
        assert outcome.executed == ["update_memory"]

    @pytest.mark.asyncio
    async def test_rejected_memory_update_counts_as_failed(self):
        executor = make_executor()
        executor.update_memory = AsyncMock(return_value={"success": False})
        text = '<memory____update>{"message_id": "m1", "instruction": "x"}</memory____update>'
        outcome = await make_pipeline(make_provider(text), executor).run(make_ctx())
        assert outcome.failed == ["update_memory"]

    @pytest.mark.asyncio
    async def test_malformed_call_dropped(self):
        executor = make_executor()
        text = '<chat____reply>{"reply": "no id"}</chat____reply>' + TEXT
        outcome = await make_pipeline(make_provider(text), executor).run(make_ctx())
        executor.send_reply.assert_not_awaited()
        assert outcome.dropped == ["reply"]
        assert outcome.executed == ["text"]

    @pytest.mark.asyncio
    async def test_executor_failure_is_isolated(self):
        executor = make_executor()
        executor.send_text = AsyncMock(side_effect=RuntimeError("network"))
        outcome = await make_pipeline(make_provider(TEXT + REPLY), executor).run(make_ctx())
        assert outcome.failed == ["text"]
        assert outcome.executed == ["reply"]

    @pytest.mark.asyncio
    async def test_no_tags_means_no_actions(self):
        executor = make_executor()
        outcome = await make_pipeline(make_provider("just musing"), executor).run(make_ctx())
        assert outcome.executed == []
        executor.send_text.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_reasoning_is_parsed_too(self):
        provider = MagicMock()
        provider.chat = AsyncMock(return_value=LLMResponse(content="", reasoning_content=TEXT))
        executor = make_executor()
        await make_pipeline(provider, executor).run(make_ctx())
        executor.send_text.assert_awaited_once_with("chat", "hi all")

    @pytest.mark.asyncio
    async def test_tracer_receives_actions(self):
        tracer = LiveTracer()
        await make_pipeline(make_provider(TEXT), tracer=tracer).run(make_ctx())
        actions = tracer.recent(event_type="action")
        assert actions[0]["kind"] == "text"
        assert actions[0]["ok"] is True


# ── Feedback hooks ───────────────────────────────────────────────────────


class TestFeedback:
    @pytest.mark.asyncio
    async def test_skip_decreases_rate(self):
        gate = MagicMock()
        outcome = await make_pipeline(make_provider(SKIP), gate=gate, skip_rate_penalty=0.07).run(make_ctx())
        gate.decrease.assert_called_once_with(0.07)
        gate.increase.assert_not_called()
        assert outcome.skipped

    @pytest.mark.asyncio
    async def test_reply_increases_rate(self):
        gate = MagicMock()
        await make_pipeline(make_provider(REPLY), gate=gate, reply_rate_boost=0.03).run(make_ctx())
        gate.increase.assert_called_once_with(0.03)

    @pytest.mark.asyncio
    async def test_failed_reply_does_not_increase(self):
        gate = MagicMock()
        executor = make_executor()
        executor.send_reply = AsyncMock(side_effect=RuntimeError("gone"))
        await make_pipeline(make_provider(REPLY), executor, gate=gate).run(make_ctx())
        gate.increase.assert_not_called()

    @pytest.mark.asyncio
    async def test_sent_reply_counts_when_recording_fails(self):
        gate = MagicMock()
        executor = make_executor()
        executor.record_action = AsyncMock(side_effect=RuntimeError("store down"))
        outcome = await make_pipeline(
            make_provider(REPLY), executor, gate=gate, reply_rate_boost=0.03,
        ).run(make_ctx())

        executor.send_reply.assert_awaited_once()
        assert outcome.replied
        assert outcome.executed == ["reply"]
        assert outcome.failed == []
        gate.increase.assert_called_once_with(0.03)

    @pytest.mark.asyncio
    async def test_sent_text_counts_when_recording_fails(self):
        executor = make_executor()
        executor.record_action = AsyncMock(side_effect=RuntimeError("store down"))
        outcome = await make_pipeline(make_provider(TEXT), executor).run(make_ctx())
        assert outcome.executed == ["text"]
        assert outcome.failed == []


# ── Continuation ─────────────────────────────────────────────────────────


class TestContinuation:
    @pytest.mark.asyncio
    async def test_search_reinvokes_with_results(self):
        provider = make_provider(SEARCH + REPLY, REPLY)
        executor = make_executor()

        outcome = await make_pipeline(provider, executor).run(make_ctx())

        executor.search.assert_awaited_once_with("chat", "tea")
        assert provider.chat.await_count == 2
        second_prompt = provider.chat.await_args_list[1].args[0][1]["content"]
        assert "green tea is best" in second_prompt
        assert "<history_search_results>" in second_prompt
        # The reply after the search tag was cut; only the second pass replied
        executor.send_reply.assert_awaited_once()
        assert outcome.final_depth == 1

    @pytest.mark.asyncio
    async def test_web_search_results(self):
        provider = make_provider(WEB, TEXT)
        executor = make_executor()
        await make_pipeline(provider, executor).run(make_ctx())
        executor.web_search.assert_awaited_once_with("weather")
        second_prompt = provider.chat.await_args_list[1].args[0][1]["content"]
        assert "<web_search_results>" in second_prompt

    @pytest.mark.asyncio
    async def test_continuation_at_max_depth_is_dropped(self):
        provider = make_provider(SEARCH)
        executor = make_executor()
        tracer = LiveTracer()

        outcome = await make_pipeline(provider, executor, tracer=tracer, max_stack_depth=1).run(make_ctx(depth=1))

        assert provider.chat.await_count == 1
        executor.search.assert_not_awaited()
        assert outcome.dropped == ["search"]
        assert tracer.recent(event_type="continuation_dropped")

    @pytest.mark.asyncio
    async def test_nested_searches_are_bounded(self):
        provider = make_provider(SEARCH, SEARCH, SEARCH, TEXT)
        executor = make_executor()

        outcome = await make_pipeline(provider, executor, max_stack_depth=2).run(make_ctx())

        assert provider.chat.await_count == 3
        assert executor.search.await_count == 2
        assert outcome.final_depth == 2
        assert outcome.dropped == ["search"]

    @pytest.mark.asyncio
    async def test_failed_search_ends_run(self):
        provider = make_provider(SEARCH, TEXT)
        executor = make_executor()
        executor.search = AsyncMock(side_effect=RuntimeError("index down"))
        outcome = await make_pipeline(provider, executor).run(make_ctx())
        assert provider.chat.await_count == 1
        assert outcome.failed == ["search"]


# ── Run-level failures ───────────────────────────────────────────────────


class TestRunFailures:
    @pytest.mark.asyncio
    async def test_cancelled_before_call(self):
        provider = make_provider(TEXT)
        token = CancelToken("chat")
        token.cancel("newer message")
        with pytest.raises(RunInterruptedError):
            await make_pipeline(provider).run(make_ctx(), token)
        provider.chat.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cancelled_during_call(self):
        token = CancelToken("chat")
        executor = make_executor()

        async def slow_chat(*args, **kwargs):
            token.cancel("newer message")
            return LLMResponse(content=TEXT)

        provider = MagicMock()
        provider.chat = AsyncMock(side_effect=slow_chat)
        with pytest.raises(RunInterruptedError):
            await make_pipeline(provider, executor).run(make_ctx(), token)
        executor.send_text.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_error_response_raises_backend_error(self):
        provider = MagicMock()
        provider.chat = AsyncMock(return_value=LLMResponse(content="Error calling LLM: boom", finish_reason="error"))
        with pytest.raises(BackendError, match="boom"):
            await make_pipeline(provider).run(make_ctx())

    @pytest.mark.asyncio
    async def test_provider_exception_raises_backend_error(self):
        provider = MagicMock()
        provider.chat = AsyncMock(side_effect=ConnectionError("refused"))
        with pytest.raises(BackendError):
            await make_pipeline(provider).run(make_ctx())


# ── Supplements ──────────────────────────────────────────────────────────


class TestMemoAndDebug:
    @pytest.mark.asyncio
    async def test_memo_mirror(self):
        executor = make_executor()
        pipeline = make_pipeline(make_provider(SKIP), executor, enable_memo=True, memo_conversation_id=-100)
        await pipeline.run(make_ctx())
        conv, text = executor.send_text.await_args.args
        assert conv == "-100"
        assert text.startswith("response:\n" + SKIP)

    @pytest.mark.asyncio
    async def test_memo_off_by_default(self):
        executor = make_executor()
        await make_pipeline(make_provider(SKIP), executor, memo_conversation_id="memo").run(make_ctx())
        executor.send_text.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_debug_trace_written(self, tmp_path):
        pipeline = make_pipeline(make_provider(TEXT), debug=True, log_dir=str(tmp_path))
        await pipeline.run(make_ctx())
        files = list((tmp_path / "debug").glob("*.md"))
        assert len(files) == 1
        content = files[0].read_text(encoding="utf-8")
        assert "hi all" in content
        assert "completed" in content
        assert "**Prompts:** v1.2.0" in content
