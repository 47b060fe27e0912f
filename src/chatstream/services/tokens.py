"""Heuristic token estimation used for context budgeting.

A flat ``chars / 4`` divisor undercounts scripts whose characters are
multi-byte (Vietnamese diacritics, CJK), so every non-ASCII,
non-whitespace character adds a fixed penalty on top.
"""

import math
from typing import Optional

CHARS_PER_TOKEN = 4
NON_ASCII_PENALTY = 1.5


def estimate_tokens(text: Optional[str]) -> int:
    if not text:
        return 0
    heavy = sum(1 for ch in text if ord(ch) > 127 and not ch.isspace())
    return math.ceil(len(text) / CHARS_PER_TOKEN + NON_ASCII_PENALTY * heavy)
