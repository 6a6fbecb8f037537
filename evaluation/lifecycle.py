"""Triad Lifecycle Evaluator: grades expired triads and settles rewards.

Two passes per call:

* **grading** writes per-participant scores onto every expired active triad
  (and back-fills finished triads whose scores are missing);
* **settlement** finishes expired active triads prompt by prompt, marks one
  winner and credits tokens.

The active -> finished update is conditional, so only the caller that moved
a triad credits its participants.
"""

from __future__ import annotations

import json
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from chat.broadcast import EVENT_MESSAGE, EVENT_TRIAD_LOCKED, Broadcaster, deliver
from data.database import ArenaDatabase
from data.models import MessageRecord, TransactionKind, TriadRecord, TriadStatus, utcnow
from evaluation.grading import TranscriptGrader
from evaluation.ledger import TokenLedger

logger = logging.getLogger(__name__)

RUBRIC_TAG = "rubric"


@dataclass
class EvaluationResult:
    graded: list[int] = field(default_factory=list)
    settled: list[int] = field(default_factory=list)
    winners: dict[int, int] = field(default_factory=dict)
    credits_issued: int = 0
    failed: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "graded": self.graded,
            "settled": self.settled,
            "winners": self.winners,
            "credits_issued": self.credits_issued,
            "failed": self.failed,
        }


def pick_winner(triads: list[TriadRecord]) -> TriadRecord | None:
    """Highest group score; ties go to the earliest start, then the lowest id."""
    if not triads:
        return None
    return min(triads, key=lambda t: (-t.score, t.started_at, t.id or 0))


class TriadLifecycleEvaluator:
    def __init__(
        self,
        db: ArenaDatabase,
        grader: TranscriptGrader,
        ledger: TokenLedger,
        *,
        broadcaster: Broadcaster | None = None,
        clock: Callable[[], datetime] = utcnow,
        win_tokens: int = 30,
        participation_tokens: int = 10,
    ) -> None:
        self.db = db
        self.grader = grader
        self.ledger = ledger
        self.broadcaster = broadcaster
        self.clock = clock
        self.win_tokens = win_tokens
        self.participation_tokens = participation_tokens

    async def evaluate_expired_triads(self) -> EvaluationResult:
        result = EvaluationResult()
        now = self.clock()
        await self._grading_pass(now, result)
        await self._settlement_pass(now, result)
        if result.settled:
            logger.info(
                "Settled %d triad(s) across %d prompt(s); %d credit(s) issued",
                len(result.settled),
                len(result.winners),
                result.credits_issued,
            )
        return result

    # ------------------------------------------------------------------
    # Grading
    # ------------------------------------------------------------------

    async def _grading_pass(self, now: datetime, result: EvaluationResult) -> None:
        for triad in await self.db.list_triads_needing_grading(now):
            try:
                await self.grade_triad(triad)
                result.graded.append(triad.id)  # type: ignore[arg-type]
            except Exception:
                logger.exception("Grading failed for triad %s", triad.id)
                result.failed.append(triad.id)  # type: ignore[arg-type]

    async def grade_triad(self, triad: TriadRecord) -> None:
        assert triad.id is not None
        prompt = await self.db.get_prompt(triad.prompt_id)
        prompt_text = prompt.text if prompt else ""
        transcript = await self.build_transcript(triad)
        report = await self.grader.score_participants(prompt_text, triad.participants, transcript)
        await self.db.save_user_scores(triad.id, report.user_scores, report.group_feedback)
        if triad.status == TriadStatus.ACTIVE:
            await self.db.save_provisional_outcome(triad.id, report.group_score, report.top_user_id)
        logger.debug(
            "Triad %d graded (%s): group score %d",
            triad.id,
            "llm" if report.graded else "neutral",
            report.group_score,
        )

    async def build_transcript(self, triad: TriadRecord) -> str:
        """``#i name: text`` lines for messages sent inside the triad's window."""
        assert triad.id is not None
        messages = await self.db.get_triad_messages(triad.id, before=triad.ends_at)
        users = await self.db.get_users(triad.participants)
        index = {uid: i for i, uid in enumerate(triad.participants)}
        lines: list[str] = []
        for msg in messages:
            if msg.sender_id is None or msg.sender_id not in index:
                continue
            user = users.get(msg.sender_id)
            name = user.username if user else f"user{msg.sender_id}"
            lines.append(f"#{index[msg.sender_id]} {name}: {msg.content}")
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    async def _settlement_pass(self, now: datetime, result: EvaluationResult) -> None:
        """Settle a prompt only once none of its triads is still running.

        A prompt with a finished winner already keeps it; later siblings
        settle as non-winners.
        """
        by_prompt: dict[int, set[int]] = defaultdict(set)
        for triad in await self.db.list_expired_active_triads(now):
            by_prompt[triad.prompt_id].add(triad.id)  # type: ignore[arg-type]

        for prompt_id, triad_ids in by_prompt.items():
            siblings = await self.db.list_triads_for_prompt(prompt_id)
            if any(t.is_open(now) for t in siblings):
                logger.debug("Prompt %d still has an open triad; settlement deferred", prompt_id)
                continue
            triads = [t for t in siblings if t.id in triad_ids]
            if any(t.status == TriadStatus.FINISHED and t.is_winner for t in siblings):
                winner = None
            else:
                winner = pick_winner(triads)
            for triad in triads:
                is_winner = winner is not None and triad.id == winner.id
                try:
                    await self._settle_triad(triad, is_winner, now, result)
                except Exception:
                    logger.exception("Settlement failed for triad %s", triad.id)
                    result.failed.append(triad.id)  # type: ignore[arg-type]
            if winner is not None and winner.id in result.settled:
                result.winners[prompt_id] = winner.id  # type: ignore[assignment]

    async def _settle_triad(
        self, triad: TriadRecord, is_winner: bool, now: datetime, result: EvaluationResult
    ) -> None:
        assert triad.id is not None
        if not await self.db.finish_triad(triad.id, now, is_winner):
            logger.debug("Triad %d already finished by another caller", triad.id)
            return
        result.settled.append(triad.id)

        amount = self.win_tokens if is_winner else self.participation_tokens
        kind = TransactionKind.EARN_WIN if is_winner else TransactionKind.EARN_PARTICIPATION
        for user_id in triad.participants:
            await self.ledger.credit(
                user_id, amount, kind, triad_id=triad.id, prompt_id=triad.prompt_id
            )
            result.credits_issued += 1

        await deliver(
            self.broadcaster,
            triad.room_id,
            EVENT_TRIAD_LOCKED,
            {"triadId": triad.id, "endedAt": now.isoformat()},
        )
        await self.post_rubric_summary(triad.id)

    async def post_rubric_summary(self, triad_id: int) -> MessageRecord | None:
        """Post the system-authored score summary once per finished triad."""
        triad = await self.db.get_triad(triad_id)
        if triad is None or triad.status != TriadStatus.FINISHED:
            return None
        now = self.clock()
        if not await self.db.mark_rubric_posted(triad_id, now):
            return None
        summary = {
            "type": "rubric",
            "triadId": triad.id,
            "groupScore": triad.score,
            "isWinner": triad.is_winner,
            "groupFeedback": triad.group_feedback,
            "perUser": [s.model_dump() for s in triad.user_scores],
        }
        message = MessageRecord(
            room_id=triad.room_id,
            sender_id=None,
            content=json.dumps(summary),
            triad_id=triad.id,
            prompt_id=triad.prompt_id,
            tags=[RUBRIC_TAG],
            created_at=now,
        )
        message.id = await self.db.save_message(message)
        await deliver(self.broadcaster, triad.room_id, EVENT_MESSAGE, message.model_dump(mode="json"))
        return message
