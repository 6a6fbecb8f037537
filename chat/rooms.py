"""Room message ingestion and read-side helpers.

``post_message`` is the only way a live chat message gets persisted. It
enforces the triad time window, runs moderation, attaches analysis,
publishes the message and hands persona replies to a background task.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Iterable

from chat.broadcast import (
    EVENT_MESSAGE,
    EVENT_MESSAGE_REJECTED,
    EVENT_TRIAD_LOCKED,
    Broadcaster,
    deliver,
)
from chat.replies import PersonaReplyCoordinator
from data.database import ArenaDatabase
from data.models import MessageRecord, TriadRecord, utcnow
from errors import EmptyContent, MessageRejected, NotFoundError, TimeWindowClosed
from evaluation.analysis import MessageAnalyzer
from evaluation.moderation import ModerationGate
from scheduling.tasks import BackgroundTasks

logger = logging.getLogger(__name__)


def merge_message_feeds(
    existing: Iterable[MessageRecord], incoming: Iterable[MessageRecord]
) -> list[MessageRecord]:
    """Union of two message feeds, deduplicated by id, in creation order.

    Live pushes and history pages can overlap or arrive out of order.
    """
    by_id: dict[int, MessageRecord] = {}
    for msg in list(existing) + list(incoming):
        if msg.id is None:
            continue
        by_id.setdefault(msg.id, msg)
    return sorted(by_id.values(), key=lambda m: (m.created_at, m.id))


class RoomService:
    def __init__(
        self,
        db: ArenaDatabase,
        analyzer: MessageAnalyzer,
        moderation: ModerationGate,
        *,
        replies: PersonaReplyCoordinator | None = None,
        broadcaster: Broadcaster | None = None,
        tasks: BackgroundTasks | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.analyzer = analyzer
        self.moderation = moderation
        self.replies = replies
        self.broadcaster = broadcaster
        self.tasks = tasks or BackgroundTasks()
        self.clock = clock

    async def post_message(
        self,
        room_id: int,
        sender_id: int,
        content: str,
        triad_id: int | None = None,
        prompt_id: int | None = None,
    ) -> MessageRecord:
        """Persist and broadcast a chat message.

        Raises
        ------
        TimeWindowClosed
            The room's triad is past its window (or already finished).
        MessageRejected
            Moderation refused the text, or the sender is not in the triad.
        """
        text = (content or "").strip()
        if not text:
            raise EmptyContent("Message is empty")
        room = await self.db.get_room(room_id)
        if room is None:
            raise NotFoundError(f"Room {room_id} not found")

        triad = await self._resolve_triad(room_id, triad_id)
        if triad is not None:
            await self._ensure_open(triad, room_id, self.clock())
            if sender_id not in triad.participants:
                raise MessageRejected("Not a participant in this debate")

        verdict = await self.moderation.check(text)
        if not verdict.allowed:
            logger.info("Message from user %d in room %d rejected: %s", sender_id, room_id, verdict.reason)
            await deliver(
                self.broadcaster,
                room_id,
                EVENT_MESSAGE_REJECTED,
                {"userId": sender_id, "reason": verdict.reason},
            )
            raise MessageRejected(verdict.reason)

        analysis = await self.analyzer.analyze(text)
        # moderation may have outlasted the window
        now = self.clock()
        if triad is not None:
            await self._ensure_open(triad, room_id, now)
        message = MessageRecord(
            room_id=room_id,
            sender_id=sender_id,
            content=text,
            triad_id=triad.id if triad else None,
            prompt_id=triad.prompt_id if triad else prompt_id,
            sentiment=analysis.sentiment,
            tags=analysis.tags,
            word_count=analysis.word_count,
            created_at=now,
        )
        message.id = await self.db.save_message(message)
        await self.db.add_room_participant(room_id, sender_id)
        await self.db.touch_room(room_id, now, analysis.tags)
        await deliver(self.broadcaster, room_id, EVENT_MESSAGE, message.model_dump(mode="json"))

        if triad is not None and self.replies is not None:
            self.tasks.spawn(
                self.replies.trigger_persona_replies(
                    room_id, triad.id, triad.prompt_id, exclude_user_id=sender_id  # type: ignore[arg-type]
                ),
                name=f"persona-replies-{triad.id}",
            )
        return message

    async def _ensure_open(self, triad: TriadRecord, room_id: int, now: datetime) -> None:
        if triad.is_open(now):
            return
        await deliver(
            self.broadcaster,
            room_id,
            EVENT_TRIAD_LOCKED,
            {"triadId": triad.id, "endsAt": triad.ends_at.isoformat()},
        )
        raise TimeWindowClosed()

    async def _resolve_triad(self, room_id: int, triad_id: int | None) -> TriadRecord | None:
        if triad_id is None:
            return await self.db.find_latest_triad_for_room(room_id)
        triad = await self.db.get_triad(triad_id)
        if triad is None or triad.room_id != room_id:
            raise NotFoundError(f"Triad {triad_id} not found in room {room_id}")
        return triad

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    async def list_messages(
        self, room_id: int, since: datetime | None = None, limit: int = 200
    ) -> list[MessageRecord]:
        return await self.db.get_room_messages(room_id, since=since, limit=limit)

    async def triad_intro(self, triad_id: int) -> list[dict[str, Any]]:
        """Each participant's opening take, in participant order."""
        triad = await self.db.get_triad(triad_id)
        if triad is None:
            raise NotFoundError(f"Triad {triad_id} not found")
        users = await self.db.get_users(triad.participants)
        intro: list[dict[str, Any]] = []
        for uid in triad.participants:
            user = users.get(uid)
            response = await self.db.get_response(triad.prompt_id, uid)
            intro.append(
                {
                    "user_id": uid,
                    "username": user.username if user else f"user{uid}",
                    "is_bot": bool(user and user.is_bot),
                    "text": response.text if response else "",
                }
            )
        return intro

    async def current_triad_for(self, user_id: int) -> TriadRecord | None:
        triad = await self.db.find_active_triad_for_user(user_id)
        if triad is None or not triad.is_open(self.clock()):
            return None
        return triad
