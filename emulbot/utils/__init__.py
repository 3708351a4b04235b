"""Utility functions for emulbot."""

from emulbot.utils.helpers import ensure_dir, get_data_path, irc_lower, split_response

__all__ = ["ensure_dir", "get_data_path", "irc_lower", "split_response"]
