"""
Token counting and usage tracking.

Normalizes the usage figures reported by the generation backend.
"""

import math
from dataclasses import dataclass
from typing import Any, Dict


@dataclass(frozen=True)
class TokenUsage:
    """Observed usage of a single generation call.

    Counts are taken from the backend response as-is; ``grounded_queries``
    is the number of web searches the model issued while answering.
    """
    tokens_in: int
    tokens_out: int
    grounded_queries: int = 0

    def __post_init__(self):
        for name in ("tokens_in", "tokens_out", "grounded_queries"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")

    @property
    def total_tokens(self) -> int:
        """Total tokens used (input + output)."""
        return self.tokens_in + self.tokens_out

    def to_payload(self) -> Dict[str, Any]:
        return {
            "inputTokens": self.tokens_in,
            "outputTokens": self.tokens_out,
            "totalTokens": self.total_tokens,
        }

    @classmethod
    def from_counts(cls, tokens_in: Any, tokens_out: Any, grounded_queries: int = 0) -> "TokenUsage":
        """Build usage from loosely typed counts, treating garbage as zero."""
        return cls(
            tokens_in=_safe_count(tokens_in),
            tokens_out=_safe_count(tokens_out),
            grounded_queries=_safe_count(grounded_queries),
        )


def _safe_count(value: Any) -> int:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(number) or number < 0:
        return 0
    return int(number)


def estimate_text_tokens(text: str) -> int:
    """Rough token estimate (4 characters per token) for text sent without usage data."""
    if not text:
        return 0
    return math.ceil(len(text) / 4)
