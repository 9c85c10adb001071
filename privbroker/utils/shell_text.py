"""
Text helpers for commands piped into the privileged shell.
"""
from typing import Iterable, List, Optional

SINGLE_QUOTE = "'"


def escape(s: str) -> str:
    """
    Quote a string for safe use as one shell word.

    Wraps it in single quotes and replaces each embedded ' with '\\''.
    """
    return SINGLE_QUOTE + s.replace(SINGLE_QUOTE, "'\\''") + SINGLE_QUOTE


def is_blank(line: Optional[str]) -> bool:
    return line is None or not line.strip()


def filter_output(lines: Iterable[Optional[str]]) -> List[str]:
    """Drop null and blank lines, keeping the order of the rest."""
    return [line for line in lines if not is_blank(line)]


def is_valid_output(lines: Optional[Iterable[Optional[str]]]) -> bool:
    """False if the output is missing, empty, or only blank lines."""
    if lines is None:
        return False
    return any(not is_blank(line) for line in lines)
