"""Triad Scheduler: claim due prompts once and split their respondents into triads.

For every active prompt past its deadline:

1. flip ``active`` off with a conditional update (the loser of a race skips);
2. queue the unassigned humans;
3. partition into groups of two humans (one human for an odd remainder),
   each joined by one persona picked round-robin;
4. create a room and an active triad per group and seed it with the
   humans' responses and the persona's stance;
5. kick off persona replies in the background.

A failure while seeding one group is logged and the next group proceeds.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

from chat.replies import PersonaReplyCoordinator
from data.database import ArenaDatabase
from data.models import (
    MessageRecord,
    PromptRecord,
    PromptResponseRecord,
    RoomRecord,
    TriadRecord,
    TriadStatus,
    utcnow,
)
from errors import NotFoundError
from evaluation.analysis import MessageAnalyzer
from personas.generation import ContentGenerator
from personas.registry import PersonaRegistry
from scheduling.responses import ResponseCollector
from scheduling.tasks import BackgroundTasks

logger = logging.getLogger(__name__)

PERSONA_CURSOR_KEY = "persona_cursor"


def partition_queue(queue: list[int]) -> list[list[int]]:
    """Pairs in queue order; an odd last user gets a group of their own."""
    return [queue[i:i + 2] for i in range(0, len(queue), 2)]


@dataclass
class ScheduleResult:
    claimed: list[int] = field(default_factory=list)
    lost_claims: list[int] = field(default_factory=list)
    triads: list[int] = field(default_factory=list)
    failed_groups: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "claimed": self.claimed,
            "lost_claims": self.lost_claims,
            "triads": self.triads,
            "failed_groups": self.failed_groups,
        }


class TriadScheduler:
    def __init__(
        self,
        db: ArenaDatabase,
        collector: ResponseCollector,
        generator: ContentGenerator,
        analyzer: MessageAnalyzer,
        *,
        registry: PersonaRegistry | None = None,
        replies: PersonaReplyCoordinator | None = None,
        tasks: BackgroundTasks | None = None,
        clock: Callable[[], datetime] = utcnow,
        duration_sec: int = 600,
        kickoff_cooldown_sec: float = 20.0,
        lock_ttl_sec: float = 60.0,
    ) -> None:
        self.db = db
        self.collector = collector
        self.generator = generator
        self.analyzer = analyzer
        self.registry = registry or generator.registry
        self.replies = replies
        self.tasks = tasks or BackgroundTasks()
        self.clock = clock
        self.duration_sec = duration_sec
        self.kickoff_cooldown_sec = kickoff_cooldown_sec
        self.lock_ttl = timedelta(seconds=lock_ttl_sec)

    async def schedule_due_prompts(self) -> ScheduleResult:
        result = ScheduleResult()
        now = self.clock()
        for prompt in await self.db.list_due_prompts(now):
            assert prompt.id is not None
            if not await self.db.claim_prompt(prompt.id, now):
                logger.debug("Prompt %d already claimed elsewhere", prompt.id)
                result.lost_claims.append(prompt.id)
                continue
            logger.info("Claimed prompt %d: %s", prompt.id, prompt.text[:60])
            result.claimed.append(prompt.id)
            try:
                await self._schedule_prompt(prompt, result, now)
            except Exception:
                logger.exception("Scheduling prompt %d failed", prompt.id)
        return result

    async def schedule_leftovers(self, prompt_id: int) -> ScheduleResult:
        """Re-partition users a failed seeding left behind on a claimed prompt.

        Runs under a per-prompt lock so two callers cannot both place the
        same users.
        """
        prompt = await self.db.get_prompt(prompt_id)
        if prompt is None:
            raise NotFoundError(f"Prompt {prompt_id} not found")
        result = ScheduleResult()
        if prompt.active:
            logger.debug("Prompt %d not claimed yet; nothing to re-run", prompt_id)
            return result
        key = f"schedule:{prompt_id}"
        holder = uuid.uuid4().hex
        if not await self.db.try_acquire_lock(key, holder, self.clock(), self.lock_ttl):
            return result
        try:
            await self._schedule_prompt(prompt, result, self.clock())
        finally:
            await self.db.release_lock(key, holder)
        return result

    async def _schedule_prompt(
        self, prompt: PromptRecord, result: ScheduleResult, now: datetime
    ) -> None:
        """Every triad created here shares *now* as its start."""
        assert prompt.id is not None
        queue = await self.collector.unassigned_queue(prompt.id)
        if not queue:
            logger.info("Prompt %d closed with no respondents", prompt.id)
            return
        for humans in partition_queue(queue):
            try:
                triad_id = await self._create_triad(prompt, humans, now)
                result.triads.append(triad_id)
            except Exception:
                logger.exception("Seeding triad for prompt %d (users %s) failed", prompt.id, humans)
                result.failed_groups += 1

    async def _create_triad(
        self, prompt: PromptRecord, humans: list[int], now: datetime
    ) -> int:
        assert prompt.id is not None
        cursor = await self.db.next_counter(PERSONA_CURSOR_KEY)
        persona = self.registry.at(cursor)
        bot = await self.db.ensure_persona_user(persona.key, persona.username)
        assert bot.id is not None

        participants = humans + [bot.id]
        room_id = await self.db.create_room(
            RoomRecord(name=prompt.text[:80], participants=participants, created_at=now)
        )
        triad = TriadRecord(
            prompt_id=prompt.id,
            room_id=room_id,
            participants=participants,
            persona_key=persona.key,
            started_at=now,
            duration_sec=self.duration_sec,
            status=TriadStatus.ACTIVE,
        )
        triad.id = await self.db.create_triad(triad)
        logger.info(
            "Triad %d created for prompt %d: users %s + %s",
            triad.id, prompt.id, humans, persona.username,
        )

        tags: set[str] = set()
        for uid in humans:
            response = await self.db.get_response(prompt.id, uid)
            if response is not None:
                _, seeded_tags = await self._seed(triad, uid, response.text, now)
                tags.update(seeded_tags)

        stance_response = await self.db.get_response(prompt.id, bot.id)
        if stance_response is not None:
            stance = stance_response.text
        else:
            stance = (
                await self.generator.generate_persona_stance(persona.key, prompt.text)
                or persona.fallback_stance
            )
            await self.db.save_response_if_absent(
                PromptResponseRecord(
                    prompt_id=prompt.id, user_id=bot.id, text=stance, created_at=now
                )
            )
        stance_id, stance_tags = await self._seed(triad, bot.id, stance, now)
        tags.update(stance_tags)
        await self.db.touch_room(room_id, now, sorted(tags))

        if self.replies is not None:
            self.tasks.spawn(
                self.replies.trigger_persona_replies(
                    room_id,
                    triad.id,
                    prompt.id,
                    cooldown_sec=self.kickoff_cooldown_sec,
                    seeded_ids=frozenset({stance_id}),
                ),
                name=f"persona-kickoff-{triad.id}",
            )
        return triad.id

    async def _seed(
        self, triad: TriadRecord, sender_id: int, text: str, now: datetime
    ) -> tuple[int, list[str]]:
        analysis = await self.analyzer.analyze(text)
        message_id = await self.db.save_message(
            MessageRecord(
                room_id=triad.room_id,
                sender_id=sender_id,
                content=text,
                triad_id=triad.id,
                prompt_id=triad.prompt_id,
                sentiment=analysis.sentiment,
                tags=analysis.tags,
                word_count=analysis.word_count,
                created_at=now,
            )
        )
        return message_id, analysis.tags
