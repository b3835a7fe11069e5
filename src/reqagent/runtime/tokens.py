"""Token estimation strategies and length-bounding helpers."""

from __future__ import annotations

import logging
import math
from typing import Protocol

from litellm import token_counter

log = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4


class TokenEstimator(Protocol):
    def estimate_tokens(self, text: str) -> int: ...


class CharRatioEstimator:
    """``ceil(len / 4)``: fast and tokenizer-free."""

    def __init__(self, chars_per_token: int = CHARS_PER_TOKEN) -> None:
        self.chars_per_token = chars_per_token

    def estimate_tokens(self, text: str) -> int:
        return math.ceil(len(text) / self.chars_per_token)


class LiteLLMTokenEstimator:
    """Counts with the tokenizer litellm associates with ``model``."""

    def __init__(self, model: str = "gpt-4o-mini") -> None:
        self.model = model

    def estimate_tokens(self, text: str) -> int:
        if not text:
            return 0
        return token_counter(model=self.model, text=text)


def truncate_to_tokens(text: str, max_tokens: int, estimator: TokenEstimator) -> str:
    """Longest prefix of ``text`` whose estimate fits in ``max_tokens``."""
    if max_tokens <= 0:
        return ""
    if estimator.estimate_tokens(text) <= max_tokens:
        return text

    lo, hi = 0, len(text)
    while lo < hi:
        mid = (lo + hi + 1) // 2
        if estimator.estimate_tokens(text[:mid]) <= max_tokens:
            lo = mid
        else:
            hi = mid - 1
    return text[:lo]


class Summarizer(Protocol):
    def summarize(self, text: str, max_tokens: int) -> str: ...


class TruncatingSummarizer:
    """Stand-in summarizer that only truncates.

    No model is invoked; text over the limit is cut to a prefix.
    """

    def __init__(self, estimator: TokenEstimator) -> None:
        self._estimator = estimator

    def summarize(self, text: str, max_tokens: int) -> str:
        result = truncate_to_tokens(text, max_tokens, self._estimator)
        if len(result) < len(text):
            log.debug(
                "summarizer.truncated chars_in=%d chars_out=%d max_tokens=%d",
                len(text),
                len(result),
                max_tokens,
            )
        return result


def build_estimator(kind: str, model: str = "gpt-4o-mini") -> TokenEstimator:
    if kind == "litellm":
        return LiteLLMTokenEstimator(model)
    return CharRatioEstimator()
