"""Prompt Pool Manager: keep a target number of open prompts with staggered deadlines."""

from __future__ import annotations

import logging
import random
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

from data.database import ArenaDatabase
from data.models import PromptRecord, PromptSource, utcnow
from errors import PromptGenerationError
from personas.generation import ContentGenerator, PromptDraft

logger = logging.getLogger(__name__)

POOL_LOCK_KEY = "prompt_pool_lock"


@dataclass
class PoolResult:
    skipped: bool = False
    open_before: int = 0
    open_after: int = 0
    created: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "skipped": self.skipped,
            "open_before": self.open_before,
            "open_after": self.open_after,
            "created": self.created,
        }


class PromptPoolManager:
    """Tops the pool up under a short-lived lock.

    A caller that finds the lock held returns immediately with
    ``skipped=True``; it never waits or retries.
    """

    def __init__(
        self,
        db: ArenaDatabase,
        generator: ContentGenerator,
        *,
        categories: list[str] | None = None,
        clock: Callable[[], datetime] = utcnow,
        spacing_sec: int = 600,
        jitter_sec: int = 0,
        lock_ttl_sec: float = 5.0,
        max_attempts: int = 3,
        rng: random.Random | None = None,
    ) -> None:
        self.db = db
        self.generator = generator
        self.categories = categories or ["random"]
        self.clock = clock
        self.spacing = timedelta(seconds=spacing_sec)
        self.jitter_sec = jitter_sec
        self.lock_ttl = timedelta(seconds=lock_ttl_sec)
        self.max_attempts = max_attempts
        self.rng = rng or random.Random()

    async def ensure_pool_target(self, target: int = 5) -> PoolResult:
        holder = uuid.uuid4().hex
        if not await self.db.try_acquire_lock(POOL_LOCK_KEY, holder, self.clock(), self.lock_ttl):
            logger.debug("Pool lock held by another caller; skipping top-up")
            return PoolResult(skipped=True)
        try:
            return await self._top_up(target)
        finally:
            await self.db.release_lock(POOL_LOCK_KEY, holder)

    async def _top_up(self, target: int) -> PoolResult:
        pool = await self._open_pool()
        result = PoolResult(open_before=len(pool), open_after=len(pool))
        for attempt in range(1, self.max_attempts + 1):
            short = target - len(pool)
            if short <= 0:
                break
            drafts = (await self.generator.generate_prompts(self.categories, count=short))[:short]
            if not drafts:
                logger.warning("Attempt %d/%d produced no prompts", attempt, self.max_attempts)
                continue
            records = await self._schedule(drafts)
            result.created += await self.db.create_prompts(records)
            pool = await self._open_pool()

        result.open_after = len(pool)
        if result.open_after < target:
            if not result.created:
                raise PromptGenerationError(
                    f"Prompt pool short by {target - result.open_after} and generation returned nothing"
                )
            logger.warning("Prompt pool still short: %d/%d", result.open_after, target)
        if result.created:
            logger.info(
                "Prompt pool topped up: %d -> %d (%d new)",
                result.open_before, result.open_after, len(result.created),
            )
        return result

    async def _open_pool(self) -> list[PromptRecord]:
        return await self.db.list_open_prompts(self.clock(), exclude_source=PromptSource.USER)

    async def _schedule(self, drafts: list[PromptDraft]) -> list[PromptRecord]:
        """Deadlines chained after the latest existing one, skipping taken slots."""
        now = self.clock()
        every_open = await self.db.list_open_prompts(now)
        used = {p.scheduled_for for p in every_open}
        pool_deadlines = [p.scheduled_for for p in every_open if p.source != PromptSource.USER]
        cursor = max(pool_deadlines, default=now)

        records: list[PromptRecord] = []
        for draft in drafts:
            deadline = cursor + self.spacing
            if self.jitter_sec:
                deadline += timedelta(seconds=self.rng.randint(0, self.jitter_sec))
            while deadline in used:
                deadline += self.spacing
            used.add(deadline)
            cursor = deadline
            records.append(
                PromptRecord(
                    text=draft.text,
                    category=draft.category,
                    source=PromptSource.AI,
                    scheduled_for=deadline,
                    created_at=now,
                )
            )
        return records
