"""Helpers shared by the command-line tools."""

from __future__ import annotations

__all__ = ["parse_bool"]

_TRUE_WORDS = frozenset({"1", "true", "on", "yes"})
_FALSE_WORDS = frozenset({"0", "false", "off", "no"})


def parse_bool(text: str) -> bool:
    """Parse a yes/no style word, ignoring case and surrounding whitespace."""
    word = text.strip().lower()
    if word in _TRUE_WORDS:
        return True
    if word in _FALSE_WORDS:
        return False
    raise ValueError(f"invalid bool value: {text}")