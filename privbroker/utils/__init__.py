"""
Utilities module for the privilege broker.
"""
from .analytics import log_event, get_summary, clear_analytics
from .shell_text import escape, filter_output, is_valid_output

__all__ = ["log_event", "get_summary", "clear_analytics", "escape", "filter_output", "is_valid_output"]
