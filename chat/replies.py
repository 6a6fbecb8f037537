"""Persona Reply Coordinator.

After a message lands in an active triad room, each persona in the triad
may answer once. Two guards keep concurrent triggers from producing
duplicate replies:

1. a short-TTL lease per (triad, persona) in the ``locks`` table;
2. a cooldown on the persona's own latest message, re-checked while
   holding the lease.
"""

from __future__ import annotations

import logging
import random
import re
import uuid
from datetime import datetime, timedelta
from typing import Callable

from chat.broadcast import EVENT_MESSAGE, Broadcaster, deliver
from data.database import ArenaDatabase
from data.models import MessageRecord, TriadRecord, UserRecord, utcnow
from errors import NotFoundError
from evaluation.analysis import MessageAnalyzer
from personas.generation import ContentGenerator
from personas.registry import Persona, PersonaRegistry

logger = logging.getLogger(__name__)

SNIPPET_WORDS = 24
ECHO_THRESHOLD = 0.8

_TOKEN_RE = re.compile(r"[a-z0-9']+")


def _words(text: str) -> set[str]:
    return set(_TOKEN_RE.findall(text.lower()))


def is_echo(candidate: str, reference: str | None) -> bool:
    """True when *candidate* mostly repeats *reference*."""
    if not reference:
        return False
    a, b = _words(candidate), _words(reference)
    if not a or not b:
        return False
    if a <= b or b <= a:
        return True
    return len(a & b) / len(a | b) > ECHO_THRESHOLD


def snippet(text: str, max_words: int = SNIPPET_WORDS) -> str:
    return " ".join(text.split()[:max_words])


def bounded_transcript(
    messages: list[MessageRecord],
    names: dict[int, str],
    max_chars: int,
) -> str:
    """Newest lines that fit in *max_chars*, returned oldest first."""
    lines: list[str] = []
    used = 0
    for msg in reversed(messages):
        if msg.sender_id is None:
            continue
        name = names.get(msg.sender_id, f"user{msg.sender_id}")
        line = f"{name}: {msg.content}"
        if lines and used + len(line) + 1 > max_chars:
            break
        lines.append(line[:max_chars])
        used += len(line) + 1
    return "\n".join(reversed(lines))


class PersonaReplyCoordinator:
    def __init__(
        self,
        db: ArenaDatabase,
        generator: ContentGenerator,
        analyzer: MessageAnalyzer,
        *,
        registry: PersonaRegistry | None = None,
        broadcaster: Broadcaster | None = None,
        clock: Callable[[], datetime] = utcnow,
        cooldown_sec: float = 1.5,
        lease_ttl_sec: float = 20.0,
        transcript_messages: int = 80,
        transcript_chars: int = 4000,
        rng: random.Random | None = None,
    ) -> None:
        self.db = db
        self.generator = generator
        self.analyzer = analyzer
        self.registry = registry or generator.registry
        self.broadcaster = broadcaster
        self.clock = clock
        self.cooldown_sec = cooldown_sec
        self.lease_ttl_sec = lease_ttl_sec
        self.transcript_messages = transcript_messages
        self.transcript_chars = transcript_chars
        self.rng = rng or random.Random()

    async def trigger_persona_replies(
        self,
        room_id: int,
        triad_id: int,
        prompt_id: int,
        exclude_user_id: int | None = None,
        cooldown_sec: float | None = None,
        seeded_ids: frozenset[int] = frozenset(),
    ) -> list[MessageRecord]:
        """Let every persona in the triad reply at most once; returns posted replies.

        Messages in *seeded_ids* (a persona's opening stance) do not start
        the cooldown.
        """
        triad = await self.db.get_triad(triad_id)
        if triad is None:
            raise NotFoundError(f"Triad {triad_id} not found")
        if not triad.is_open(self.clock()):
            logger.debug("Triad %d is not open; no persona replies", triad_id)
            return []
        prompt = await self.db.get_prompt(prompt_id)
        prompt_text = prompt.text if prompt else ""
        cooldown = self.cooldown_sec if cooldown_sec is None else cooldown_sec

        users = await self.db.get_users(triad.participants)
        posted: list[MessageRecord] = []
        for uid in triad.participants:
            user = users.get(uid)
            if user is None or not user.is_bot or uid == exclude_user_id:
                continue
            if user.persona_key not in self.registry:
                continue
            persona = self.registry.get(user.persona_key)  # type: ignore[arg-type]
            reply = await self._reply_as(
                triad, room_id, prompt_text, user, persona, users, cooldown, seeded_ids
            )
            if reply is not None:
                posted.append(reply)
        return posted

    async def _reply_as(
        self,
        triad: TriadRecord,
        room_id: int,
        prompt_text: str,
        bot: UserRecord,
        persona: Persona,
        users: dict[int, UserRecord],
        cooldown: float,
        seeded_ids: frozenset[int] = frozenset(),
    ) -> MessageRecord | None:
        assert triad.id is not None and bot.id is not None
        key = f"reply:{triad.id}:{bot.id}"
        holder = uuid.uuid4().hex
        if not await self.db.try_acquire_lock(
            key, holder, self.clock(), timedelta(seconds=self.lease_ttl_sec)
        ):
            logger.debug("%s reply lease held for triad %d", persona.username, triad.id)
            return None
        try:
            own_last = await self.db.last_message_by(triad.id, bot.id)
            if own_last is not None and own_last.id not in seeded_ids:
                elapsed = (self.clock() - own_last.created_at).total_seconds()
                if elapsed < cooldown:
                    logger.debug(
                        "%s on cooldown in triad %d (%.1fs < %.1fs)",
                        persona.username, triad.id, elapsed, cooldown,
                    )
                    return None

            history = await self.db.get_triad_messages(triad.id, last=self.transcript_messages)
            names = {uid: u.username for uid, u in users.items()}
            transcript = bounded_transcript(history, names, self.transcript_chars)
            latest_other = next(
                (
                    m for m in reversed(history)
                    if m.sender_id is not None and m.sender_id != bot.id
                ),
                None,
            )

            text = await self.generator.generate_persona_reply(persona.key, prompt_text, transcript)
            if text and (
                is_echo(text, own_last.content if own_last else None)
                or is_echo(text, latest_other.content if latest_other else None)
            ):
                logger.debug("Dropping echoed reply from %s", persona.username)
                text = None
            if not text:
                text = persona.fallback_reply(
                    snippet(latest_other.content) if latest_other else "", self.rng
                )

            now = self.clock()
            if not triad.is_open(now):
                logger.debug("Triad %d closed while %s was composing", triad.id, persona.username)
                return None
            return await self._post(room_id, triad, bot.id, text, now)
        finally:
            await self.db.release_lock(key, holder)

    async def _post(
        self, room_id: int, triad: TriadRecord, sender_id: int, text: str, now: datetime
    ) -> MessageRecord:
        analysis = await self.analyzer.analyze(text)
        message = MessageRecord(
            room_id=room_id,
            sender_id=sender_id,
            content=text,
            triad_id=triad.id,
            prompt_id=triad.prompt_id,
            sentiment=analysis.sentiment,
            tags=analysis.tags,
            word_count=analysis.word_count,
            created_at=now,
        )
        message.id = await self.db.save_message(message)
        await self.db.add_room_participant(room_id, sender_id)
        await self.db.touch_room(room_id, now, analysis.tags)
        await deliver(self.broadcaster, room_id, EVENT_MESSAGE, message.model_dump(mode="json"))
        logger.info("Persona %d replied in triad %d", sender_id, triad.id)
        return message
