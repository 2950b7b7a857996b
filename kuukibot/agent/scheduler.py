"""Per-conversation run scheduling.

At most one pipeline run is in flight per conversation. While a run is
going, the newest approved event waits in a single pending slot (latest
wins). A fresh event may also ask the running attempt to stop, if the run
is still young and has retries left; the interrupted attempt is then
retried with the *same* request and freshly retrieved context. Once the
run settles, the pending event (if any) starts the next cycle.

    Idle ──submit──▶ Processing ──done──▶ Idle ──pending?──▶ Processing
                        │  ▲
                        └──┘ interrupted, retries left
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Callable

from loguru import logger

from kuukibot.agent.cancellation import CancelToken
from kuukibot.agent.collaborators import ActionExecutor, ContextStore
from kuukibot.agent.context import ContextBuilder, count_tokens, retrieve_context
from kuukibot.agent.live_trace import LiveTracer
from kuukibot.agent.pipeline import ActionPipeline, PipelineContext, PipelineOutcome
from kuukibot.agent.prompts.loader import PromptLoader
from kuukibot.bus.events import InboundEvent, now_ms
from kuukibot.config.schema import AgentConfig, Config
from kuukibot.errors import BackendError, RunInterruptedError
from kuukibot.gate.engine import ResponseGate
from kuukibot.gate.models import Decision
from kuukibot.providers.base import LLMProvider


@dataclass
class RequestSnapshot:
    """An approved event waiting for (or going through) a pipeline run."""

    conversation_id: str
    message_id: str
    event: InboundEvent
    decision: Decision

    @classmethod
    def of(cls, event: InboundEvent, decision: Decision) -> RequestSnapshot:
        return cls(event.conversation_id, event.message_id, event, decision)


@dataclass
class ConversationRunState:
    """Scheduler bookkeeping for one conversation."""

    processing: bool = False
    retry_count: int = 0
    run_started_at: int | None = None  # ms; kept across retries
    cancel_token: CancelToken | None = None
    pending: RequestSnapshot | None = None
    task: asyncio.Task | None = None
    completed_runs: int = 0

    def reset(self) -> None:
        self.processing = False
        self.retry_count = 0
        self.run_started_at = None
        self.cancel_token = None


class ConversationScheduler:
    """Gates inbound events and runs the pipeline, one run per conversation."""

    def __init__(
        self,
        config: Config | None,
        provider: LLMProvider,
        executor: ActionExecutor,
        store: ContextStore,
        clock: Callable[[], int] = now_ms,
        tracer: LiveTracer | None = None,
        rng: random.Random | None = None,
        prompts: PromptLoader | None = None,
        token_counter: Callable[[str], int] = count_tokens,
    ):
        self.config = config or Config()
        self.provider = provider
        self.executor = executor
        self.store = store
        self.tracer = tracer or LiveTracer()
        self._clock = clock
        self._rng = rng
        self._prompts = prompts or PromptLoader()
        self._token_counter = token_counter
        self._agent_configs: dict[str, AgentConfig | None] = {}
        self._gates: dict[str, ResponseGate] = {}
        self._states: dict[str, ConversationRunState] = {}

    # ── Per-conversation objects ──────────────────────────────────────

    def agent_config(self, conversation_id: str) -> AgentConfig | None:
        """Merged config for a conversation (None when it is not served)."""
        if conversation_id not in self._agent_configs:
            self._agent_configs[conversation_id] = self.config.for_conversation(conversation_id)
        return self._agent_configs[conversation_id]

    def gate_for(self, conversation_id: str) -> ResponseGate:
        """The conversation's gate, created (and its timer started) on first use."""
        gate = self._gates.get(conversation_id)
        if gate is None:
            cfg = self.agent_config(conversation_id) or self.config.base
            gate = ResponseGate(conversation_id, cfg.gate, clock=self._clock, rng=self._rng)
            self._gates[conversation_id] = gate
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                logger.debug(f"Gate {conversation_id}: no running loop, decay timer not started")
            else:
                gate.start()
        return gate

    def state_for(self, conversation_id: str) -> ConversationRunState:
        state = self._states.get(conversation_id)
        if state is None:
            state = self._states[conversation_id] = ConversationRunState()
        return state

    # ── Intake ────────────────────────────────────────────────────────

    async def handle_event(self, event: InboundEvent) -> Decision | None:
        """Evaluate an inbound event and schedule a run if the gate approves.

        Returns the decision, or None when the conversation is not served.
        """
        cid = event.conversation_id
        if self.agent_config(cid) is None:
            logger.debug(f"Scheduler: ignoring event from unknown conversation {cid}")
            return None

        gate = self.gate_for(cid)
        decision = gate.evaluate(event)
        self.tracer.emit(
            "decision", cid,
            message_id=event.message_id,
            kind=decision.kind.value,
            should_act=decision.should_act,
            scene=decision.scene,
        )
        self.tracer.update_state(cid, rates=round(gate.current_rate, 4))
        if decision.should_act:
            self.submit(event, decision)
        return decision

    def submit(self, event: InboundEvent, decision: Decision) -> None:
        """Start a run for an approved event, or park it in the pending slot."""
        cid = event.conversation_id
        state = self.state_for(cid)
        request = RequestSnapshot.of(event, decision)

        if not state.processing:
            # Without a running loop create_task raises; leave the state idle
            run = self._run_loop(cid, request)
            try:
                state.task = asyncio.create_task(run, name=f"run:{cid}")
            except RuntimeError:
                run.close()
                raise
            self._begin(state, request)
            return

        replaced = state.pending
        state.pending = request
        self.tracer.update_state(cid, pending=request.message_id)
        if replaced is not None:
            logger.debug(f"Scheduler {cid}: pending {replaced.message_id} replaced by {request.message_id}")
            self.tracer.emit("pending_replaced", cid, dropped=replaced.message_id, kept=request.message_id)

        cfg = self.agent_config(cid) or self.config.base
        age = self._clock() - (state.run_started_at or 0)
        if age < cfg.pipeline.interrupt_timeout_ms and state.retry_count < cfg.pipeline.max_retry_count:
            if state.cancel_token is not None:
                state.cancel_token.cancel(f"newer message {request.message_id}")
            logger.info(f"Scheduler {cid}: interrupt requested by {request.message_id} (run age {age}ms)")
            self.tracer.emit("interrupt_request", cid, message_id=request.message_id, run_age_ms=age)

    # ── Run loop ──────────────────────────────────────────────────────

    def _begin(self, state: ConversationRunState, request: RequestSnapshot) -> None:
        state.processing = True
        state.retry_count = 0
        state.run_started_at = self._clock()
        state.cancel_token = CancelToken(request.conversation_id)
        self.tracer.update_state(request.conversation_id, processing=True)

    async def _run_loop(self, conversation_id: str, request: RequestSnapshot) -> None:
        state = self.state_for(conversation_id)
        try:
            current: RequestSnapshot | None = request
            while current is not None:
                await self._run_with_retries(state, current)
                state.completed_runs += 1
                current, state.pending = state.pending, None
                if current is not None:
                    self.tracer.update_state(conversation_id, pending=None)
                    logger.debug(f"Scheduler {conversation_id}: dequeued pending {current.message_id}")
                    self._begin(state, current)
        finally:
            state.reset()
            state.task = None
            self.tracer.update_state(conversation_id, processing=None)

    async def _run_with_retries(
        self, state: ConversationRunState, request: RequestSnapshot,
    ) -> PipelineOutcome | None:
        cid = request.conversation_id
        cfg = self.agent_config(cid) or self.config.base

        while True:
            token = state.cancel_token or CancelToken(cid)
            state.cancel_token = token
            self.tracer.emit("run_start", cid, message_id=request.message_id, attempt=state.retry_count)
            try:
                retrieved = await retrieve_context(self.store, request.event, cfg.pipeline)
                ctx = PipelineContext(cid, request.event, retrieved, request.decision)
                outcome = await self._pipeline_for(cid, cfg).run(ctx, token)
            except RunInterruptedError as e:
                if state.retry_count < cfg.pipeline.max_retry_count:
                    state.retry_count += 1
                    state.cancel_token = CancelToken(cid)
                    logger.warning(
                        f"Scheduler {cid}: {e.reason}; retrying {request.message_id} "
                        f"({state.retry_count}/{cfg.pipeline.max_retry_count})"
                    )
                    self.tracer.emit("retry", cid, message_id=request.message_id, attempt=state.retry_count)
                    continue
                logger.warning(f"Scheduler {cid}: {request.message_id} interrupted, out of retries")
                self.tracer.emit("run_end", cid, message_id=request.message_id, status="interrupted")
                return None
            except BackendError as e:
                logger.error(f"Scheduler {cid}: backend failed for {request.message_id}: {e}")
                self.tracer.emit("run_end", cid, message_id=request.message_id, status="backend_error")
                return None
            except Exception as e:
                logger.exception(f"Scheduler {cid}: run for {request.message_id} crashed: {e}")
                self.tracer.emit("run_end", cid, message_id=request.message_id, status="crashed")
                return None

            self.tracer.emit("run_end", cid, message_id=request.message_id, status="ok", **outcome.to_dict())
            return outcome

    def _pipeline_for(self, conversation_id: str, cfg: AgentConfig) -> ActionPipeline:
        builder = ContextBuilder(cfg, prompts=self._prompts, clock=self._clock, token_counter=self._token_counter)
        return ActionPipeline(
            self.provider,
            self.executor,
            cfg,
            gate=self.gate_for(conversation_id),
            tracer=self.tracer,
            builder=builder,
        )

    # ── Lifecycle ─────────────────────────────────────────────────────

    async def wait_idle(self, conversation_id: str | None = None) -> None:
        """Wait until the given conversation (or every conversation) is idle."""
        while True:
            if conversation_id is not None:
                state = self._states.get(conversation_id)
                tasks = [state.task] if state and state.task and not state.task.done() else []
            else:
                tasks = [s.task for s in self._states.values() if s.task and not s.task.done()]
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    async def shutdown(self) -> None:
        """Stop every decay timer and cancel in-flight runs."""
        for gate in self._gates.values():
            gate.stop()
        tasks = [s.task for s in self._states.values() if s.task and not s.task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        # A task cancelled before its first step never reaches its finally
        for state in self._states.values():
            state.pending = None
            state.task = None
            state.reset()
        logger.info(f"Scheduler: shut down ({len(tasks)} run(s) cancelled)")

    def snapshot(self) -> dict[str, Any]:
        """Per-conversation view of run state and gate rate."""
        return {
            cid: {
                "processing": state.processing,
                "retry_count": state.retry_count,
                "run_started_at": state.run_started_at,
                "pending": state.pending.message_id if state.pending else None,
                "completed_runs": state.completed_runs,
                "rate": self._gates[cid].current_rate if cid in self._gates else None,
            }
            for cid, state in self._states.items()
        }
