"""Token estimation and budget tracking for prompt assembly."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass

# CJK Unified Ideographs (incl. Extension A) are roughly one token per character.
_CJK_CHAR = re.compile(r"[\u3400-\u9fff]")


def estimate_tokens(text: str) -> int:
    """Estimate token count from text.

    Dense-script characters count one token each; everything else is
    counted at four characters per token. A budgeting heuristic, not a
    tokenizer.
    """
    if not text:
        return 0
    dense = len(_CJK_CHAR.findall(text))
    other = len(text) - dense
    return dense + math.ceil(other / 4)


@dataclass
class TokenBudget:
    """Running size estimate of one prompt against its token ceiling.

    Pieces are priced with :meth:`cost` (estimate plus a fixed per-piece
    overhead) and then charged; ``used`` may exceed ``limit`` when a caller
    charges something that did not fit.
    """

    limit: int
    used: int = 0

    def __post_init__(self) -> None:
        if self.limit <= 0:
            msg = "limit must be positive"
            raise ValueError(msg)

    @staticmethod
    def cost(text: str, overhead: int = 0) -> int:
        return estimate_tokens(text) + overhead

    def fits(self, tokens: int) -> bool:
        return self.used + tokens <= self.limit

    def charge(self, tokens: int) -> None:
        self.used += tokens

    @property
    def overflow(self) -> int:
        return max(0, self.used - self.limit)
