"""Response gating: whether, and why, the agent acts on an event."""

from kuukibot.gate.engine import ResponseGate
from kuukibot.gate.models import Decision, DecisionKind, GateState
from kuukibot.gate.timer import DecayTimer

__all__ = ["DecayTimer", "Decision", "DecisionKind", "GateState", "ResponseGate"]
