"""Utility functions for kuukibot."""

from kuukibot.utils.helpers import convert_keys, deep_merge, ensure_dir, safe_filename

__all__ = ["convert_keys", "deep_merge", "ensure_dir", "safe_filename"]
