"""ActionPipeline — turns one approved event into side effects.

Each pass builds the prompt, calls the backend, parses the response into
action calls and executes them in order. A search call at the end of a
response re-invokes the backend with the results injected, bounded by
``max_stack_depth``:

    build → [cancel?] → chat → [cancel?] → parse → execute ─┐
      ↑                                                       │ search and
      └──────── results injected, stack_depth + 1 ────────────┘ depth < max

Run-level failures (RunInterruptedError, BackendError) propagate to the
scheduler. Per-action failures are logged and counted, never fatal.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from loguru import logger

from kuukibot.agent.actions import ActionCall, ActionKind, parse_response
from kuukibot.agent.cancellation import CancelToken
from kuukibot.agent.collaborators import ActionExecutor
from kuukibot.agent.context import Continuation, ContextBuilder, RetrievedContext
from kuukibot.agent.debug_trace import DebugTrace
from kuukibot.bus.events import InboundEvent
from kuukibot.config.schema import AgentConfig
from kuukibot.errors import BackendError, MalformedActionError
from kuukibot.gate.models import Decision
from kuukibot.providers.base import LLMProvider

if TYPE_CHECKING:
    from kuukibot.agent.live_trace import LiveTracer
    from kuukibot.gate.engine import ResponseGate


@dataclass
class PipelineContext:
    """Everything one pipeline run works from."""

    conversation_id: str
    event: InboundEvent
    retrieved: RetrievedContext
    decision: Decision
    stack_depth: int = 0


@dataclass
class PipelineOutcome:
    """What a finished run did."""

    backend_calls: int = 0
    executed: list[str] = field(default_factory=list)  # Action kinds, in order
    failed: list[str] = field(default_factory=list)  # Executor raised
    dropped: list[str] = field(default_factory=list)  # Malformed or past the depth bound
    responses: list[str] = field(default_factory=list)  # Raw backend text per pass
    replied: bool = False
    skipped: bool = False
    final_depth: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "backend_calls": self.backend_calls,
            "executed": list(self.executed),
            "failed": list(self.failed),
            "dropped": list(self.dropped),
            "replied": self.replied,
            "skipped": self.skipped,
            "final_depth": self.final_depth,
        }


class ActionPipeline:
    """Runs the build → call → parse → execute loop for one conversation."""

    def __init__(
        self,
        provider: LLMProvider,
        executor: ActionExecutor,
        config: AgentConfig | None = None,
        gate: "ResponseGate | None" = None,
        tracer: "LiveTracer | None" = None,
        builder: ContextBuilder | None = None,
    ):
        self.provider = provider
        self.executor = executor
        self.config = config or AgentConfig()
        self.gate = gate
        self.tracer = tracer
        self.builder = builder or ContextBuilder(self.config)

    async def run(self, ctx: PipelineContext, cancel_token: CancelToken | None = None) -> PipelineOutcome:
        """Run the pipeline to completion.

        Raises:
            RunInterruptedError: the token was cancelled at a check point.
            BackendError: the backend failed or returned an error response.
        """
        token = cancel_token or CancelToken(ctx.conversation_id)
        max_depth = self.config.pipeline.max_stack_depth
        outcome = PipelineOutcome()
        trace = self._open_trace(ctx)
        continuation: Continuation | None = None
        ended = "completed"

        try:
            while True:
                messages = self.builder.build_messages(
                    ctx.retrieved, ctx.decision.scene, continuation, ctx.event.sender_name,
                )
                if trace:
                    trace.log_messages(ctx.stack_depth, messages)

                text = await self._call_backend(ctx, messages, token, outcome, trace)
                await self._mirror_memo(text)

                parsed = parse_response(text)
                if trace:
                    trace.log_calls(parsed.calls, parsed.truncated)
                logger.debug(
                    f"Pipeline {ctx.conversation_id}: depth {ctx.stack_depth} parsed "
                    f"{len(parsed.calls)} call(s){' (truncated)' if parsed.truncated else ''}"
                )

                for call in parsed.calls:
                    if not call.is_continuation:
                        await self._execute(ctx, call, outcome, trace)

                search = parsed.continuation
                if search is None:
                    break

                if ctx.stack_depth >= max_depth:
                    logger.warning(
                        f"Pipeline {ctx.conversation_id}: dropping {search.kind.value} at "
                        f"depth {ctx.stack_depth} (max {max_depth})"
                    )
                    outcome.dropped.append(search.kind.value)
                    self._emit("continuation_dropped", ctx.conversation_id,
                               kind=search.kind.value, depth=ctx.stack_depth)
                    if trace:
                        trace.log_action(search.kind.value, False, "stack depth reached")
                    break

                results = await self._search(ctx, search, outcome, trace)
                if results is None:
                    break

                continuation = Continuation(
                    kind=search.kind,
                    keyword=search.param("keyword"),
                    previous_action=parsed.text,
                    results=results,
                )
                ctx.stack_depth += 1
        except BaseException as e:
            ended = f"{type(e).__name__}: {e}"
            raise
        finally:
            outcome.final_depth = ctx.stack_depth
            if trace:
                trace.log_end(ended)
                try:
                    path = trace.save()
                    logger.debug(f"Debug trace saved to {path}")
                except OSError as e:
                    logger.warning(f"Failed to save debug trace: {e}")

        logger.info(
            f"Pipeline {ctx.conversation_id}: done after {outcome.backend_calls} backend call(s), "
            f"executed={outcome.executed} failed={outcome.failed} dropped={outcome.dropped}"
        )
        return outcome

    # ── Backend ───────────────────────────────────────────────────────

    async def _call_backend(
        self,
        ctx: PipelineContext,
        messages: list[dict[str, Any]],
        token: CancelToken,
        outcome: PipelineOutcome,
        trace: DebugTrace | None,
    ) -> str:
        backend = self.config.backend
        token.raise_if_cancelled("before backend call")
        outcome.backend_calls += 1
        try:
            response = await self.provider.chat(
                messages,
                model=backend.model,
                max_tokens=backend.max_tokens,
                temperature=backend.temperature,
            )
        except Exception as e:
            raise BackendError(f"Backend call failed: {e}", model=backend.model) from e
        token.raise_if_cancelled("after backend call")

        if trace:
            trace.log_response(response)
        if response.is_error:
            raise BackendError(response.content or "Backend returned an error", model=response.model)

        text = response.full_text
        outcome.responses.append(text)
        self._emit("backend_response", ctx.conversation_id,
                   depth=ctx.stack_depth, model=response.model, length=len(text))
        return text

    async def _mirror_memo(self, text: str) -> None:
        """Copy the raw response to the memo conversation, if configured."""
        cfg = self.config.pipeline
        if not (cfg.enable_memo and cfg.memo_conversation_id):
            return
        memo = "\n".join(["response:", text, "model:", self.config.backend.model])
        try:
            await self.executor.send_text(cfg.memo_conversation_id, memo)
        except Exception as e:
            logger.warning(f"Memo mirror to {cfg.memo_conversation_id} failed: {e}")

    # ── Actions ───────────────────────────────────────────────────────

    async def _execute(
        self,
        ctx: PipelineContext,
        call: ActionCall,
        outcome: PipelineOutcome,
        trace: DebugTrace | None,
    ) -> None:
        kind = call.kind.value
        try:
            call.validate()
        except MalformedActionError as e:
            logger.warning(f"Pipeline {ctx.conversation_id}: dropping action: {e}")
            outcome.dropped.append(kind)
            if trace:
                trace.log_action(kind, False, str(e))
            return

        try:
            detail = await self._dispatch(ctx, call)
        except Exception as e:
            logger.error(f"Pipeline {ctx.conversation_id}: {kind} failed: {e}")
            outcome.failed.append(kind)
            self._emit("action", ctx.conversation_id, kind=kind, ok=False, error=str(e))
            if trace:
                trace.log_action(kind, False, str(e))
            return

        outcome.executed.append(kind)
        self._emit("action", ctx.conversation_id, kind=kind, ok=True)
        if trace:
            trace.log_action(kind, True, detail)

        if call.kind is ActionKind.SKIP:
            outcome.skipped = True
            if self.gate:
                self.gate.decrease(self.config.pipeline.skip_rate_penalty)
        elif call.kind is ActionKind.REPLY:
            outcome.replied = True
            if self.gate:
                self.gate.increase(self.config.pipeline.reply_rate_boost)

    async def _dispatch(self, ctx: PipelineContext, call: ActionCall) -> str:
        """Perform one validated, non-search action. Returns a short detail string."""
        cid = ctx.conversation_id
        if call.kind is ActionKind.TEXT:
            message = call.param("message")
            await self.executor.send_text(cid, message)
            await self._record_sent(cid, message, "text")
            return message
        if call.kind is ActionKind.REPLY:
            reply_to = call.param("message_id")
            reply = call.param("reply")
            await self.executor.send_reply(cid, reply, reply_to)
            await self._record_sent(cid, reply, "reply", {"reply_to_message_id": reply_to})
            return f"→ {reply_to}: {reply}"
        if call.kind is ActionKind.NOTE:
            note = call.param("note")
            await self.executor.record_action(cid, note, "note")
            return note
        if call.kind is ActionKind.UPDATE_MEMORY:
            result = await self.executor.update_memory(call.param("message_id"), call.param("instruction"))
            if not (result or {}).get("success", False):
                raise RuntimeError(f"memory update rejected for message {call.param('message_id')}")
            return str(result.get("memory", ""))
        # SKIP
        logger.debug(f"Pipeline {cid}: model chose to skip")
        return ""

    async def _record_sent(
        self, cid: str, text: str, kind: str, metadata: dict[str, Any] | None = None,
    ) -> None:
        """Store a message that already went out. Failure here does not undo the send."""
        try:
            if metadata is None:
                await self.executor.record_action(cid, text, kind)
            else:
                await self.executor.record_action(cid, text, kind, metadata)
        except Exception as e:
            logger.warning(f"Pipeline {cid}: {kind} sent but not recorded: {e}")

    async def _search(
        self,
        ctx: PipelineContext,
        call: ActionCall,
        outcome: PipelineOutcome,
        trace: DebugTrace | None,
    ) -> list[Any] | None:
        """Run a continuation search. None means the continuation is abandoned."""
        kind = call.kind.value
        try:
            call.validate()
        except MalformedActionError as e:
            logger.warning(f"Pipeline {ctx.conversation_id}: dropping search: {e}")
            outcome.dropped.append(kind)
            if trace:
                trace.log_action(kind, False, str(e))
            return None

        keyword = call.param("keyword")
        try:
            if call.kind is ActionKind.WEB_SEARCH:
                results = await self.executor.web_search(keyword)
            else:
                results = await self.executor.search(ctx.conversation_id, keyword)
        except Exception as e:
            logger.error(f"Pipeline {ctx.conversation_id}: {kind} for {keyword!r} failed: {e}")
            outcome.failed.append(kind)
            self._emit("action", ctx.conversation_id, kind=kind, ok=False, error=str(e))
            if trace:
                trace.log_action(kind, False, str(e))
            return None

        results = list(results or [])
        outcome.executed.append(kind)
        self._emit("action", ctx.conversation_id, kind=kind, ok=True, results=len(results))
        if trace:
            trace.log_action(kind, True, f"{keyword!r} → {len(results)} result(s)")
        logger.debug(f"Pipeline {ctx.conversation_id}: {kind} {keyword!r} → {len(results)} result(s)")
        return results

    # ── Tracing ───────────────────────────────────────────────────────

    def _open_trace(self, ctx: PipelineContext) -> DebugTrace | None:
        if not self.config.pipeline.debug:
            return None
        try:
            trace = DebugTrace(
                Path(self.config.pipeline.log_dir), ctx.conversation_id, ctx.event.message_id,
                prompt_version=self.builder.prompt_version,
            )
        except OSError as e:
            logger.warning(f"Debug trace disabled for this run: {e}")
            return None
        trace.log_event(ctx.event)
        trace.log_decision(ctx.decision)
        return trace

    def _emit(self, event_type: str, conversation_id: str, **data: Any) -> None:
        if self.tracer:
            self.tracer.emit(event_type, conversation_id, **data)
