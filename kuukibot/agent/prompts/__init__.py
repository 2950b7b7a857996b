"""Prompt templates for the action pipeline."""

from kuukibot.agent.prompts.loader import PromptLoader

__all__ = ["PromptLoader"]
