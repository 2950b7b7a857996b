"""kuukibot — a chat agent that reads the room before it speaks."""

__version__ = "0.3.0"
__logo__ = "🌬️"
