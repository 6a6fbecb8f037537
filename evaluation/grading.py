"""Rubric grading of triad transcripts.

Each participant is scored 0-100 on five rubric dimensions; the overall
score is their weighted sum:

    defense 35% · evidence 20% · logic 20% · responsiveness 15% · clarity 10%

A failed or empty grading call leaves every participant at a neutral 50.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from data.models import Rubric, UserScore
from personas.generation import parse_json_safe
from personas.llm_provider import LLMProvider

logger = logging.getLogger(__name__)

NEUTRAL_SCORE = 50

RUBRIC_WEIGHTS: dict[str, float] = {
    "defense": 0.35,
    "evidence": 0.20,
    "logic": 0.20,
    "responsiveness": 0.15,
    "clarity": 0.10,
}

_SYSTEM_PROMPT = """\
You are an impartial debate judge grading a group chat debate.
Participants are labelled #0, #1, ... in the transcript. For EVERY participant score 0-100 on:
- defense: how well they defended their own take under pressure
- evidence: facts, examples and data offered
- logic: soundness of reasoning, absence of fallacies
- responsiveness: engagement with the other participants' points
- clarity: how clearly they expressed themselves
Return ONLY a JSON object:
{"per_user": [{"userIndex": number, "defense": number, "evidence": number, "logic": number,
"responsiveness": number, "clarity": number, "overall": number, "feedback": string}],
"group_feedback": string}
"""


def _clamp(value: Any) -> int:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    return max(0, min(100, round(number)))


def weighted_overall(rubric: Rubric) -> int:
    total = sum(getattr(rubric, name) * weight for name, weight in RUBRIC_WEIGHTS.items())
    return _clamp(total)


def neutral_scores(participants: list[int]) -> list[UserScore]:
    return [UserScore(user_id=uid, score=NEUTRAL_SCORE) for uid in participants]


@dataclass
class GradeReport:
    """Per-participant scores in participant order, plus group feedback."""

    user_scores: list[UserScore]
    group_feedback: str = ""
    graded: bool = False
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def group_score(self) -> int:
        if not self.user_scores:
            return 0
        return round(sum(s.score for s in self.user_scores) / len(self.user_scores))

    @property
    def top_user_id(self) -> int | None:
        best: UserScore | None = None
        for s in self.user_scores:
            if best is None or s.score > best.score:
                best = s
        return best.user_id if best else None


class TranscriptGrader:
    """Grading collaborator backed by an ``LLMProvider``."""

    def __init__(self, provider: LLMProvider | None, *, model: str | None = None) -> None:
        self.provider = provider
        self.model = model

    async def grade_transcript(
        self, prompt_text: str, participant_count: int, transcript: str
    ) -> dict[str, Any]:
        """Raw ``{"per_user": [...], "group_feedback": str}``; ``{}`` on any failure."""
        if self.provider is None or not transcript.strip():
            return {}
        labels = ", ".join(f"#{i}" for i in range(participant_count))
        try:
            resp = await self.provider.generate(
                [
                    {"role": "system", "content": _SYSTEM_PROMPT},
                    {
                        "role": "user",
                        "content": (
                            f"Prompt: {prompt_text}\nParticipants (in order): {labels}\n"
                            f"Transcript:\n{transcript[:45000]}"
                        ),
                    },
                ],
                model=self.model,
                temperature=0.0,
                max_tokens=900,
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("Grading call failed: %s", exc)
            return {}
        parsed = parse_json_safe(resp.text, expect=dict)
        if not parsed:
            logger.warning("Grading response was not a JSON object")
            return {}
        return parsed

    async def score_participants(
        self, prompt_text: str, participants: list[int], transcript: str
    ) -> GradeReport:
        """Grade and map results onto *participants*; gaps get the neutral score."""
        raw = await self.grade_transcript(prompt_text, len(participants), transcript)
        per_user = raw.get("per_user") if isinstance(raw, dict) else None
        if not isinstance(per_user, list) or not per_user:
            return GradeReport(user_scores=neutral_scores(participants))

        by_index: dict[int, UserScore] = {}
        for entry in per_user:
            if not isinstance(entry, dict):
                continue
            idx = entry.get("userIndex")
            if not isinstance(idx, int) or isinstance(idx, bool):
                continue
            if not 0 <= idx < len(participants) or idx in by_index:
                continue
            rubric = Rubric(**{name: _clamp(entry.get(name)) for name in RUBRIC_WEIGHTS})
            has_rubric = any(entry.get(name) is not None for name in RUBRIC_WEIGHTS)
            score = weighted_overall(rubric) if has_rubric else _clamp(entry.get("overall"))
            by_index[idx] = UserScore(
                user_id=participants[idx],
                score=score,
                rubric=rubric if has_rubric else None,
                feedback=str(entry.get("feedback") or "")[:600],
            )

        if not by_index:
            return GradeReport(user_scores=neutral_scores(participants))

        scores = [
            by_index.get(i, UserScore(user_id=uid, score=NEUTRAL_SCORE))
            for i, uid in enumerate(participants)
        ]
        return GradeReport(
            user_scores=scores,
            group_feedback=str(raw.get("group_feedback") or "")[:600],
            graded=True,
            raw=raw,
        )
