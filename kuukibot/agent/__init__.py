"""Agent core: action parsing, the pipeline and per-conversation scheduling."""

from kuukibot.agent.actions import ActionCall, ActionKind, parse_actions, parse_response
from kuukibot.agent.cancellation import CancelToken
from kuukibot.agent.collaborators import ActionExecutor, ContextStore
from kuukibot.agent.context import ContextBuilder, RetrievedContext, retrieve_context
from kuukibot.agent.live_trace import LiveTracer
from kuukibot.agent.pipeline import ActionPipeline, PipelineContext, PipelineOutcome
from kuukibot.agent.scheduler import ConversationRunState, ConversationScheduler, RequestSnapshot

__all__ = [
    "ActionCall",
    "ActionExecutor",
    "ActionKind",
    "ActionPipeline",
    "CancelToken",
    "ContextBuilder",
    "ContextStore",
    "ConversationRunState",
    "ConversationScheduler",
    "LiveTracer",
    "PipelineContext",
    "PipelineOutcome",
    "RequestSnapshot",
    "RetrievedContext",
    "parse_actions",
    "parse_response",
    "retrieve_context",
]
