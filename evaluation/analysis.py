"""Sentiment and tag extraction attached to every persisted chat message.

The sentiment score is a summed word-valence score (negative to positive,
unbounded). Tags come from local heuristics, optionally enriched with a
few LLM-extracted topic tags.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from personas.llm_provider import LLMProvider

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data container
# ---------------------------------------------------------------------------

@dataclass
class MessageAnalysis:
    sentiment: float = 0.0
    tags: list[str] = field(default_factory=list)
    word_count: int = 0


# ---------------------------------------------------------------------------
# Heuristics
# ---------------------------------------------------------------------------

_VALENCE: dict[str, int] = {
    # positive
    "love": 3, "amazing": 4, "awesome": 4, "best": 3, "brilliant": 4, "great": 3,
    "good": 3, "excellent": 3, "fantastic": 4, "fun": 4, "win": 4, "winning": 4,
    "agree": 1, "like": 2, "nice": 3, "fair": 2, "strong": 2, "smart": 1,
    "right": 1, "correct": 2, "happy": 3, "glad": 3, "clever": 2, "yes": 1,
    "underrated": 1, "goat": 2, "legend": 2, "respect": 2,
    # negative
    "hate": -3, "awful": -3, "terrible": -3, "worst": -3, "bad": -3, "wrong": -2,
    "disagree": -2, "overrated": -2, "boring": -3, "weak": -2, "stupid": -2,
    "lose": -3, "losing": -3, "fail": -2, "fails": -2, "no": -1, "never": -1,
    "sad": -2, "angry": -3, "ridiculous": -3, "nonsense": -2, "flawed": -2,
    "trash": -1, "mid": -1, "fallacy": -2,
}

_NEGATORS = {"not", "don't", "dont", "isn't", "isnt", "never", "no"}

_WORD_RE = re.compile(r"[a-z']+")
_LINK_RE = re.compile(r"(https?://|www\.)")
_EVIDENCE_RE = re.compile(r"\b(source|citation|evidence)\b")
_ARGUMENT_RE = re.compile(r"\b(agree|disagree|rebut|counter)\b")


def sentiment_score(text: str) -> float:
    """Sum of word valences; a negator flips the next scored word."""
    score = 0
    flip = False
    for word in _WORD_RE.findall((text or "").lower()):
        if word in _NEGATORS and word not in _VALENCE:
            flip = True
            continue
        value = _VALENCE.get(word)
        if value is not None:
            score += -value if flip else value
        flip = False
    return float(score)


def extract_tags(text: str) -> tuple[list[str], int]:
    """Return ``(tags, word_count)`` from cheap local signals."""
    lc = (text or "").lower()
    word_count = len(lc.split())
    tags: list[str] = []
    if _LINK_RE.search(lc):
        tags.append("has_link")
    if lc.strip().endswith("?"):
        tags.append("question")
    if _EVIDENCE_RE.search(lc):
        tags.append("evidence")
    if _ARGUMENT_RE.search(lc):
        tags.append("argumentation")
    if word_count > 80:
        tags.append("long")
    if word_count < 8:
        tags.append("short")
    return tags, word_count


# ---------------------------------------------------------------------------
# Collaborator
# ---------------------------------------------------------------------------

class MessageAnalyzer:
    """Computes sentiment, tags and word count for a chat message."""

    def __init__(
        self,
        provider: LLMProvider | None = None,
        *,
        llm_tags: bool = False,
        model: str | None = None,
        max_llm_tags: int = 5,
    ) -> None:
        self.provider = provider
        self.llm_tags = llm_tags and provider is not None
        self.model = model
        self.max_llm_tags = max_llm_tags

    async def analyze(self, text: str) -> MessageAnalysis:
        tags, word_count = extract_tags(text)
        if self.llm_tags:
            for tag in await self._llm_tags(text):
                if tag not in tags:
                    tags.append(tag)
        return MessageAnalysis(
            sentiment=sentiment_score(text), tags=tags, word_count=word_count
        )

    async def _llm_tags(self, text: str) -> list[str]:
        assert self.provider is not None
        try:
            resp = await self.provider.generate(
                [
                    {
                        "role": "system",
                        "content": (
                            f"Extract up to {self.max_llm_tags} concise tags describing the "
                            "rhetorical function and topic. Respond as a comma-separated list only."
                        ),
                    },
                    {"role": "user", "content": text[:2000]},
                ],
                model=self.model,
                temperature=0.0,
                max_tokens=40,
            )
        except Exception as exc:  # noqa: BLE001
            logger.debug("Tag extraction skipped: %s", exc)
            return []
        raw = [t.strip().lower() for t in resp.text.split(",")]
        return [re.sub(r"\s+", "_", t) for t in raw if t][: self.max_llm_tags]
