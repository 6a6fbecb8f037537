"""Pydantic models mirroring the SQLite schema."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PromptSource(str, Enum):
    """Who put a prompt into the pool."""

    AI = "ai"
    USER = "user"
    ADMIN = "admin"


class TriadStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    FINISHED = "finished"


class TransactionKind(str, Enum):
    EARN_PARTICIPATION = "earn_participation"
    EARN_WIN = "earn_win"
    SPEND_BOOST = "spend_boost"
    SPEND_CUSTOMIZATION = "spend_customization"
    ADMIN_ADJUST = "admin_adjust"


class UserRecord(BaseModel):
    """Row in the ``users`` table. Personas are users with ``is_bot`` set."""

    id: int | None = None
    username: str
    is_bot: bool = False
    persona_key: str | None = None
    is_admin: bool = False
    created_at: datetime = Field(default_factory=utcnow)


class PromptRecord(BaseModel):
    """Row in the ``prompts`` table."""

    id: int | None = None
    text: str
    category: str = "random"
    source: PromptSource = PromptSource.AI
    created_by: int | None = None
    scheduled_for: datetime
    active: bool = True
    claimed_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)


class PromptResponseRecord(BaseModel):
    """Row in the ``prompt_responses`` table (one per prompt and user)."""

    id: int | None = None
    prompt_id: int
    user_id: int
    text: str
    created_at: datetime = Field(default_factory=utcnow)


class Rubric(BaseModel):
    defense: int = 0
    evidence: int = 0
    logic: int = 0
    responsiveness: int = 0
    clarity: int = 0


class UserScore(BaseModel):
    """One participant's grade inside a triad."""

    user_id: int
    score: int = 50
    rubric: Rubric | None = None
    feedback: str = ""


class TriadRecord(BaseModel):
    """Row in the ``triads`` table."""

    id: int | None = None
    prompt_id: int
    room_id: int
    participants: list[int]
    persona_key: str | None = None
    started_at: datetime = Field(default_factory=utcnow)
    duration_sec: int = 600
    ended_at: datetime | None = None
    status: TriadStatus = TriadStatus.PENDING
    score: int = 0
    user_scores: list[UserScore] = Field(default_factory=list)
    group_feedback: str = ""
    is_winner: bool = False
    winner_user_id: int | None = None
    rubric_posted_at: datetime | None = None

    @property
    def ends_at(self) -> datetime:
        return self.started_at + timedelta(seconds=self.duration_sec)

    def is_open(self, now: datetime) -> bool:
        return self.status == TriadStatus.ACTIVE and now < self.ends_at


class RoomRecord(BaseModel):
    """Row in the ``rooms`` table plus its participant and tag sets."""

    id: int | None = None
    name: str
    is_group: bool = True
    participants: list[int] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    last_message_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)


class MessageRecord(BaseModel):
    """Row in the ``messages`` table. ``sender_id`` is None for system posts."""

    id: int | None = None
    room_id: int
    sender_id: int | None = None
    content: str
    triad_id: int | None = None
    prompt_id: int | None = None
    sentiment: float = 0.0
    tags: list[str] = Field(default_factory=list)
    word_count: int = 0
    created_at: datetime = Field(default_factory=utcnow)


class TokenTransactionRecord(BaseModel):
    """Row in the append-only ``token_transactions`` ledger."""

    id: int | None = None
    user_id: int
    amount: int
    kind: TransactionKind
    metadata_json: str = "{}"
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def metadata(self) -> dict[str, Any]:
        return json.loads(self.metadata_json)


class BotAssignmentRecord(BaseModel):
    """Row in the ``bot_assignments`` table."""

    id: int | None = None
    prompt_id: int
    assigner_id: int
    bot_user_id: int
    persona_key: str
    created_at: datetime = Field(default_factory=utcnow)
