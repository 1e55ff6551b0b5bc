"""Token estimation utilities for genforge.

Context budgets are enforced with a cheap character heuristic rather than a
real tokenizer; the same estimate is used everywhere a budget is checked.
"""

from __future__ import annotations

import math

CHARS_PER_TOKEN = 4
TOKENS_PER_LINE = 5
UNKNOWN_FILE_TOKENS = 500


def estimate_tokens(text: str) -> int:
    """Estimate the number of tokens in a text string.

    Uses ceil(characters / 4), which is what the context selector budgets
    against.

    Args:
        text: The text to estimate tokens for.

    Returns:
        Estimated token count.
    """
    if not text:
        return 0
    return int(math.ceil(len(text) / CHARS_PER_TOKEN))


def estimate_line_tokens(lines_of_code: int) -> int:
    """Estimate tokens for a file known only by its line count."""
    return int(math.ceil(lines_of_code * TOKENS_PER_LINE))


def format_token_count(tokens: int) -> str:
    """Format a token count for display.

    Args:
        tokens: Number of tokens.

    Returns:
        Human-readable string like "1.2K tokens" or "15 tokens".
    """
    if tokens >= 1000:
        return f"{tokens / 1000:.1f}K tokens"
    return f"{tokens} tokens"
