"""Canonical event shapes shared by the gate, pipeline and scheduler."""

from kuukibot.bus.events import HistoryEntry, InboundEvent, now_ms

__all__ = ["HistoryEntry", "InboundEvent", "now_ms"]
