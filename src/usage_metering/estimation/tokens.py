"""
Approximate token counting used to pre-authorize metered actions.

Estimates are deliberately cheap and only need to be in the right ballpark;
no per-model tokenizer is loaded.
"""

from __future__ import annotations

import math
from typing import Dict, Iterable, Mapping, Protocol, runtime_checkable

CHARS_PER_TOKEN = 4.0
GEMINI_CHARS_PER_TOKEN = 4.5

# Role markers and separators per chat message
MESSAGE_OVERHEAD_TOKENS = 4

WEB_SEARCH_MULTIPLIER = 1.3

MODEL_MULTIPLIER: Dict[str, float] = {
    "google/gemini-2.5-flash": 0.5,
    "google/gemini-2.5-flash-preview": 0.5,
    "openai/gpt-4o-mini": 0.75,
    "openai/gpt-4o": 1.0,
    "google/gemini-2.5-pro": 1.0,
    "google/gemini-1.5-pro": 1.0,
    "deepseek/deepseek-r1": 1.0,
    "meta-llama/llama-3-70b-instruct": 1.0,
    "anthropic/claude-sonnet-4": 1.5,
    "anthropic/claude-3-sonnet-20240229": 1.5,
    "x-ai/grok-3-beta": 1.5,
    "anthropic/claude-opus-4": 2.0,
    "anthropic/claude-3-opus-20240229": 2.0,
}


@runtime_checkable
class TokenEstimator(Protocol):
    def estimate(self, text: str, model_id: str) -> int:
        """Return a non-negative token estimate. Must be pure."""
        ...


class CharacterTokenEstimator:
    """
    Character-ratio estimator: about 4 characters per token, 4.5 for
    Gemini-family models whose tokenizer packs text more densely.
    """

    def __init__(
        self,
        chars_per_token: float = CHARS_PER_TOKEN,
        gemini_chars_per_token: float = GEMINI_CHARS_PER_TOKEN,
    ) -> None:
        if chars_per_token <= 0 or gemini_chars_per_token <= 0:
            raise ValueError("characters per token must be positive")
        self._chars_per_token = chars_per_token
        self._gemini_chars_per_token = gemini_chars_per_token

    def _ratio(self, model_id: str) -> float:
        if "gemini" in model_id.lower():
            return self._gemini_chars_per_token
        return self._chars_per_token

    def estimate(self, text: str, model_id: str) -> int:
        if not text:
            return 0
        return math.ceil(len(text) / self._ratio(model_id))


def estimate_conversation(
    messages: Iterable[Mapping[str, str]],
    model_id: str,
    estimator: TokenEstimator | None = None,
) -> int:
    """
    Estimate a whole chat: the joined message contents plus a fixed
    per-message overhead.
    """
    estimator = estimator or CharacterTokenEstimator()
    contents = [m.get("content", "") for m in messages]
    content_tokens = estimator.estimate("\n".join(contents), model_id)
    return content_tokens + len(contents) * MESSAGE_OVERHEAD_TOKENS


def effective_tokens(model_id: str, raw_tokens: int, web_search: bool = False) -> int:
    """Scale a raw count by the model's price multiplier and web-search overhead."""
    if raw_tokens < 0:
        raise ValueError("raw_tokens must be >= 0")
    multiplier = MODEL_MULTIPLIER.get(model_id, 1.0)
    if web_search:
        multiplier *= WEB_SEARCH_MULTIPLIER
    # Round away float noise (100 * 1.5 * 1.3 is 195.00000000000003)
    return math.ceil(round(raw_tokens * multiplier, 6))
