"""Response Collector plus the prompt-authoring operations around it.

One response per (prompt, user), accepted only while the prompt is active
and before its deadline. ``unassigned_queue`` is what the scheduler
partitions into triads.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Callable

from data.database import ArenaDatabase
from data.models import (
    BotAssignmentRecord,
    PromptRecord,
    PromptResponseRecord,
    PromptSource,
    TransactionKind,
    utcnow,
)
from errors import (
    AlreadyResponded,
    EmptyContent,
    NotFoundError,
    PromptNotActive,
)
from evaluation.ledger import TokenLedger
from personas.generation import ContentGenerator
from personas.registry import PersonaRegistry

logger = logging.getLogger(__name__)

MIN_PROMPT_CHARS = 5


class ResponseCollector:
    def __init__(
        self,
        db: ArenaDatabase,
        ledger: TokenLedger,
        generator: ContentGenerator,
        *,
        registry: PersonaRegistry | None = None,
        clock: Callable[[], datetime] = utcnow,
        prompt_cost_tokens: int = 10,
        user_prompt_minutes: int = 10,
    ) -> None:
        self.db = db
        self.ledger = ledger
        self.generator = generator
        self.registry = registry or generator.registry
        self.clock = clock
        self.prompt_cost_tokens = prompt_cost_tokens
        self.user_prompt_minutes = user_prompt_minutes

    async def _open_prompt(self, prompt_id: int) -> PromptRecord:
        prompt = await self.db.get_prompt(prompt_id)
        if prompt is None:
            raise NotFoundError(f"Prompt {prompt_id} not found")
        if not prompt.active or prompt.scheduled_for <= self.clock():
            raise PromptNotActive(f"Prompt {prompt_id} is closed")
        return prompt

    # ------------------------------------------------------------------
    # Responses
    # ------------------------------------------------------------------

    async def submit_response(
        self, prompt_id: int, user_id: int, text: str
    ) -> PromptResponseRecord:
        body = (text or "").strip()
        if not body:
            raise EmptyContent("Response is empty")
        await self._open_prompt(prompt_id)
        record = PromptResponseRecord(
            prompt_id=prompt_id, user_id=user_id, text=body, created_at=self.clock()
        )
        try:
            record.id = await self.db.save_response(record)
        except sqlite3.IntegrityError as exc:
            raise AlreadyResponded(
                f"User {user_id} already responded to prompt {prompt_id}"
            ) from exc
        logger.debug("Response %d recorded for prompt %d", record.id, prompt_id)
        return record

    async def unassigned_queue(self, prompt_id: int) -> list[int]:
        """Human users waiting for a triad on *prompt_id*, in arrival order.

        Respondents come first; users who only assigned a bot follow.
        """
        bots = await self.db.list_bot_user_ids()
        placed: set[int] = set()
        for triad in await self.db.list_triads_for_prompt(prompt_id):
            placed.update(triad.participants)

        queue: list[int] = []
        seen: set[int] = set()
        candidates = [r.user_id for r in await self.db.list_responses(prompt_id)]
        candidates += [a.assigner_id for a in await self.db.list_bot_assignments(prompt_id)]
        for uid in candidates:
            if uid in bots or uid in placed or uid in seen:
                continue
            seen.add(uid)
            queue.append(uid)
        return queue

    async def assign_bot(
        self, prompt_id: int, assigner_id: int, persona_key: str
    ) -> PromptResponseRecord:
        """Attach a persona to a prompt on a user's behalf and return its stance."""
        persona = self.registry.get(persona_key)
        prompt = await self._open_prompt(prompt_id)
        bot = await self.db.ensure_persona_user(persona.key, persona.username)
        assert bot.id is not None
        await self.db.save_bot_assignment(
            BotAssignmentRecord(
                prompt_id=prompt_id,
                assigner_id=assigner_id,
                bot_user_id=bot.id,
                persona_key=persona.key,
                created_at=self.clock(),
            )
        )
        existing = await self.db.get_response(prompt_id, bot.id)
        if existing is not None:
            return existing
        stance = await self.generator.generate_persona_stance(persona.key, prompt.text)
        await self.db.save_response_if_absent(
            PromptResponseRecord(
                prompt_id=prompt_id,
                user_id=bot.id,
                text=stance or persona.fallback_stance,
                created_at=self.clock(),
            )
        )
        response = await self.db.get_response(prompt_id, bot.id)
        assert response is not None
        logger.info("User %d assigned %s to prompt %d", assigner_id, persona.username, prompt_id)
        return response

    # ------------------------------------------------------------------
    # Prompt authoring
    # ------------------------------------------------------------------

    async def submit_user_prompt(
        self, user_id: int, text: str, duration_minutes: int | None = None
    ) -> PromptRecord:
        """Create a user prompt, paid for from the user's token balance."""
        body = (text or "").strip()
        if len(body) < MIN_PROMPT_CHARS:
            raise EmptyContent(f"Prompt must be at least {MIN_PROMPT_CHARS} characters")
        if await self.db.get_user(user_id) is None:
            raise NotFoundError(f"User {user_id} not found")
        await self.ledger.spend(
            user_id,
            self.prompt_cost_tokens,
            TransactionKind.SPEND_CUSTOMIZATION,
            reason="user_prompt",
        )

        now = self.clock()
        minutes = duration_minutes or self.user_prompt_minutes
        prompt = PromptRecord(
            text=body,
            category="user",
            source=PromptSource.USER,
            created_by=user_id,
            scheduled_for=now + timedelta(minutes=minutes),
            created_at=now,
        )
        prompt.id = await self.db.create_prompt(prompt)
        logger.info("User %d submitted prompt %d", user_id, prompt.id)
        return prompt

    async def post_admin_prompt(
        self,
        admin_id: int | None,
        text: str,
        category: str = "random",
        duration_minutes: int = 10,
    ) -> PromptRecord:
        body = (text or "").strip()
        if not body:
            raise EmptyContent("Prompt text is empty")
        now = self.clock()
        prompt = PromptRecord(
            text=body,
            category=category,
            source=PromptSource.ADMIN,
            created_by=admin_id,
            scheduled_for=now + timedelta(minutes=duration_minutes),
            created_at=now,
        )
        prompt.id = await self.db.create_prompt(prompt)
        logger.info("Admin prompt %d scheduled for %s", prompt.id, prompt.scheduled_for)
        return prompt

    async def reschedule_prompt(self, prompt_id: int, scheduled_for: datetime) -> PromptRecord:
        if not await self.db.reschedule_prompt(prompt_id, scheduled_for):
            if await self.db.get_prompt(prompt_id) is None:
                raise NotFoundError(f"Prompt {prompt_id} not found")
            raise PromptNotActive(f"Prompt {prompt_id} was already claimed")
        prompt = await self.db.get_prompt(prompt_id)
        assert prompt is not None
        return prompt
