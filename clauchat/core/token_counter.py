"""
Token counting and usage tracking.

Counts tokens with the model family's sub-word segmentation. The same rule
is used for draft previews and for settled accounting.
"""

from dataclasses import dataclass
from decimal import Decimal
from functools import lru_cache
from typing import Any, Iterable, Optional

import tiktoken

DEFAULT_ENCODING = "cl100k_base"


@dataclass(frozen=True)
class TokenUsage:
    """Token counts for a request and its reply."""
    input_tokens: int
    output_tokens: int

    @property
    def total_tokens(self) -> int:
        """Total tokens used (input + output)."""
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class TokenEstimate:
    """Result of estimating a piece of text.

    ``cost`` is None when the model has no pricing entry.
    """
    token_count: int
    cost: Optional[Decimal]


@lru_cache(maxsize=None)
def get_encoding(name: str = DEFAULT_ENCODING) -> Any:
    """Load a tiktoken encoding once per process."""
    return tiktoken.get_encoding(name)


def count_tokens(text: str, encoding: Any = None) -> int:
    """Count tokens in ``text``.

    Args:
        text: Text to segment
        encoding: Object with a tiktoken-style ``encode`` method; the
            default encoding is loaded lazily when omitted

    Returns:
        Number of tokens, 0 for empty text
    """
    if not text:
        return 0
    if encoding is None:
        encoding = get_encoding()
    # Special-token markers typed by a user are counted as ordinary text
    return len(encoding.encode(text, disallowed_special=()))


def count_message_tokens(contents: Iterable[str], encoding: Any = None) -> int:
    """Sum of per-message token counts for a request history."""
    return sum(count_tokens(content, encoding) for content in contents)
