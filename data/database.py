"""Async SQLite database layer using aiosqlite.

Handles schema creation and the queries the scheduling engine relies on.
The two single-writer-wins mutations (claiming a prompt, taking a named
lock) are conditional UPDATE/UPSERT statements whose affected-row count
tells the caller whether it won; nothing here reads and then writes.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterable

import aiosqlite

from data.models import (
    BotAssignmentRecord,
    MessageRecord,
    PromptRecord,
    PromptResponseRecord,
    PromptSource,
    RoomRecord,
    TokenTransactionRecord,
    TriadRecord,
    TriadStatus,
    UserRecord,
    UserScore,
)

logger = logging.getLogger(__name__)

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS users (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    username    TEXT    NOT NULL,
    is_bot      INTEGER NOT NULL DEFAULT 0,
    persona_key TEXT    UNIQUE,
    is_admin    INTEGER NOT NULL DEFAULT 0,
    created_at  TEXT    NOT NULL
);

CREATE TABLE IF NOT EXISTS prompts (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    text          TEXT    NOT NULL,
    category      TEXT    NOT NULL DEFAULT 'random',
    source        TEXT    NOT NULL DEFAULT 'ai',
    created_by    INTEGER REFERENCES users(id),
    scheduled_for TEXT    NOT NULL,
    active        INTEGER NOT NULL DEFAULT 1,
    claimed_at    TEXT,
    created_at    TEXT    NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_prompts_active ON prompts(active, scheduled_for);

CREATE TABLE IF NOT EXISTS prompt_responses (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    prompt_id   INTEGER NOT NULL REFERENCES prompts(id),
    user_id     INTEGER NOT NULL REFERENCES users(id),
    text        TEXT    NOT NULL,
    created_at  TEXT    NOT NULL,
    UNIQUE (prompt_id, user_id)
);

CREATE TABLE IF NOT EXISTS rooms (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    name            TEXT    NOT NULL,
    is_group        INTEGER NOT NULL DEFAULT 1,
    last_message_at TEXT,
    created_at      TEXT    NOT NULL
);

CREATE TABLE IF NOT EXISTS room_participants (
    room_id  INTEGER NOT NULL REFERENCES rooms(id),
    user_id  INTEGER NOT NULL REFERENCES users(id),
    position INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (room_id, user_id)
);

CREATE TABLE IF NOT EXISTS room_tags (
    room_id INTEGER NOT NULL REFERENCES rooms(id),
    tag     TEXT    NOT NULL,
    PRIMARY KEY (room_id, tag)
);

CREATE TABLE IF NOT EXISTS triads (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    prompt_id        INTEGER NOT NULL REFERENCES prompts(id),
    room_id          INTEGER NOT NULL REFERENCES rooms(id),
    participants     TEXT    NOT NULL DEFAULT '[]',
    persona_key      TEXT,
    started_at       TEXT    NOT NULL,
    duration_sec     INTEGER NOT NULL DEFAULT 600,
    ends_at          TEXT    NOT NULL,
    ended_at         TEXT,
    status           TEXT    NOT NULL DEFAULT 'pending',
    score            INTEGER NOT NULL DEFAULT 0,
    user_scores      TEXT    NOT NULL DEFAULT '[]',
    group_feedback   TEXT    NOT NULL DEFAULT '',
    is_winner        INTEGER NOT NULL DEFAULT 0,
    winner_user_id   INTEGER REFERENCES users(id),
    rubric_posted_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_triads_prompt ON triads(prompt_id);
CREATE INDEX IF NOT EXISTS idx_triads_status ON triads(status, ends_at);

CREATE TABLE IF NOT EXISTS messages (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    room_id     INTEGER NOT NULL REFERENCES rooms(id),
    sender_id   INTEGER REFERENCES users(id),
    content     TEXT    NOT NULL,
    triad_id    INTEGER REFERENCES triads(id),
    prompt_id   INTEGER REFERENCES prompts(id),
    sentiment   REAL    NOT NULL DEFAULT 0.0,
    tags        TEXT    NOT NULL DEFAULT '[]',
    word_count  INTEGER NOT NULL DEFAULT 0,
    created_at  TEXT    NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_messages_room ON messages(room_id, created_at);
CREATE INDEX IF NOT EXISTS idx_messages_triad ON messages(triad_id, created_at);

CREATE TABLE IF NOT EXISTS token_transactions (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id     INTEGER NOT NULL REFERENCES users(id),
    amount      INTEGER NOT NULL,
    kind        TEXT    NOT NULL,
    metadata    TEXT    NOT NULL DEFAULT '{}',
    created_at  TEXT    NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_ledger_user ON token_transactions(user_id);

CREATE TABLE IF NOT EXISTS bot_assignments (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    prompt_id   INTEGER NOT NULL REFERENCES prompts(id),
    assigner_id INTEGER NOT NULL REFERENCES users(id),
    bot_user_id INTEGER NOT NULL REFERENCES users(id),
    persona_key TEXT    NOT NULL,
    created_at  TEXT    NOT NULL
);

CREATE TABLE IF NOT EXISTS locks (
    key          TEXT PRIMARY KEY,
    holder       TEXT NOT NULL,
    locked_until TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS counters (
    key   TEXT PRIMARY KEY,
    value INTEGER NOT NULL DEFAULT 0
);
"""


def _ts(value: datetime) -> str:
    """Fixed-width UTC timestamp so string comparison in SQL is chronological."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _opt_ts(value: datetime | None) -> str | None:
    return _ts(value) if value is not None else None


def _user(r: aiosqlite.Row) -> UserRecord:
    return UserRecord(
        id=r["id"],
        username=r["username"],
        is_bot=r["is_bot"],
        persona_key=r["persona_key"],
        is_admin=r["is_admin"],
        created_at=r["created_at"],
    )


def _prompt(r: aiosqlite.Row) -> PromptRecord:
    return PromptRecord(
        id=r["id"],
        text=r["text"],
        category=r["category"],
        source=r["source"],
        created_by=r["created_by"],
        scheduled_for=r["scheduled_for"],
        active=r["active"],
        claimed_at=r["claimed_at"],
        created_at=r["created_at"],
    )


def _response(r: aiosqlite.Row) -> PromptResponseRecord:
    return PromptResponseRecord(
        id=r["id"],
        prompt_id=r["prompt_id"],
        user_id=r["user_id"],
        text=r["text"],
        created_at=r["created_at"],
    )


def _triad(r: aiosqlite.Row) -> TriadRecord:
    return TriadRecord(
        id=r["id"],
        prompt_id=r["prompt_id"],
        room_id=r["room_id"],
        participants=json.loads(r["participants"]),
        persona_key=r["persona_key"],
        started_at=r["started_at"],
        duration_sec=r["duration_sec"],
        ended_at=r["ended_at"],
        status=r["status"],
        score=r["score"],
        user_scores=json.loads(r["user_scores"]),
        group_feedback=r["group_feedback"],
        is_winner=r["is_winner"],
        winner_user_id=r["winner_user_id"],
        rubric_posted_at=r["rubric_posted_at"],
    )


def _message(r: aiosqlite.Row) -> MessageRecord:
    return MessageRecord(
        id=r["id"],
        room_id=r["room_id"],
        sender_id=r["sender_id"],
        content=r["content"],
        triad_id=r["triad_id"],
        prompt_id=r["prompt_id"],
        sentiment=r["sentiment"],
        tags=json.loads(r["tags"]),
        word_count=r["word_count"],
        created_at=r["created_at"],
    )


def _transaction(r: aiosqlite.Row) -> TokenTransactionRecord:
    return TokenTransactionRecord(
        id=r["id"],
        user_id=r["user_id"],
        amount=r["amount"],
        kind=r["kind"],
        metadata_json=r["metadata"],
        created_at=r["created_at"],
    )


class ArenaDatabase:
    """Async wrapper around an SQLite database for the debate arena."""

    def __init__(self, db_path: str | Path = "data/arena.db") -> None:
        self.db_path = Path(db_path)
        self._conn: aiosqlite.Connection | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Open connection and ensure schema exists."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(str(self.db_path))
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA busy_timeout = 5000")
        await self._conn.executescript(_SCHEMA)
        await self._conn.commit()
        logger.info("Database connected: %s", self.db_path)

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._conn

    async def _fetchall(self, sql: str, params: Iterable[Any] = ()) -> list[aiosqlite.Row]:
        cur = await self.conn.execute(sql, tuple(params))
        return list(await cur.fetchall())

    async def _fetchone(self, sql: str, params: Iterable[Any] = ()) -> aiosqlite.Row | None:
        cur = await self.conn.execute(sql, tuple(params))
        return await cur.fetchone()

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def create_user(self, record: UserRecord) -> int:
        cur = await self.conn.execute(
            "INSERT INTO users (username, is_bot, persona_key, is_admin, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (
                record.username,
                int(record.is_bot),
                record.persona_key,
                int(record.is_admin),
                _ts(record.created_at),
            ),
        )
        await self.conn.commit()
        return cur.lastrowid  # type: ignore[return-value]

    async def get_user(self, user_id: int) -> UserRecord | None:
        row = await self._fetchone("SELECT * FROM users WHERE id = ?", (user_id,))
        return _user(row) if row else None

    async def get_users(self, user_ids: Iterable[int]) -> dict[int, UserRecord]:
        ids = list(dict.fromkeys(user_ids))
        if not ids:
            return {}
        marks = ", ".join("?" for _ in ids)
        rows = await self._fetchall(f"SELECT * FROM users WHERE id IN ({marks})", ids)
        return {r["id"]: _user(r) for r in rows}

    async def ensure_persona_user(self, persona_key: str, username: str) -> UserRecord:
        """Return the bot user for *persona_key*, creating it on first use."""
        await self.conn.execute(
            "INSERT OR IGNORE INTO users (username, is_bot, persona_key, is_admin, created_at) "
            "VALUES (?, 1, ?, 0, ?)",
            (username, persona_key, _ts(datetime.now(timezone.utc))),
        )
        await self.conn.commit()
        row = await self._fetchone("SELECT * FROM users WHERE persona_key = ?", (persona_key,))
        assert row is not None
        return _user(row)

    async def list_bot_user_ids(self) -> set[int]:
        rows = await self._fetchall("SELECT id FROM users WHERE is_bot = 1")
        return {r["id"] for r in rows}

    # ------------------------------------------------------------------
    # Prompts
    # ------------------------------------------------------------------

    async def create_prompt(self, record: PromptRecord) -> int:
        ids = await self.create_prompts([record])
        return ids[0]

    async def create_prompts(self, records: list[PromptRecord]) -> list[int]:
        """Insert a batch of prompts in one transaction and return their ids."""
        ids: list[int] = []
        for record in records:
            cur = await self.conn.execute(
                "INSERT INTO prompts (text, category, source, created_by, scheduled_for, "
                "active, claimed_at, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    record.text,
                    record.category,
                    record.source.value,
                    record.created_by,
                    _ts(record.scheduled_for),
                    int(record.active),
                    _opt_ts(record.claimed_at),
                    _ts(record.created_at),
                ),
            )
            ids.append(cur.lastrowid)  # type: ignore[arg-type]
        await self.conn.commit()
        return ids

    async def get_prompt(self, prompt_id: int) -> PromptRecord | None:
        row = await self._fetchone("SELECT * FROM prompts WHERE id = ?", (prompt_id,))
        return _prompt(row) if row else None

    async def list_open_prompts(
        self,
        now: datetime,
        *,
        exclude_source: PromptSource | None = None,
        limit: int | None = None,
    ) -> list[PromptRecord]:
        """Active prompts whose deadline is still in the future, soonest first."""
        sql = "SELECT * FROM prompts WHERE active = 1 AND scheduled_for > ?"
        params: list[Any] = [_ts(now)]
        if exclude_source is not None:
            sql += " AND source != ?"
            params.append(exclude_source.value)
        sql += " ORDER BY scheduled_for, id"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [_prompt(r) for r in await self._fetchall(sql, params)]

    async def list_due_prompts(self, now: datetime) -> list[PromptRecord]:
        rows = await self._fetchall(
            "SELECT * FROM prompts WHERE active = 1 AND scheduled_for <= ? "
            "ORDER BY scheduled_for, id",
            (_ts(now),),
        )
        return [_prompt(r) for r in rows]

    async def claim_prompt(self, prompt_id: int, now: datetime) -> bool:
        """Flip ``active`` off if it is still on. True only for the single winner."""
        cur = await self.conn.execute(
            "UPDATE prompts SET active = 0, claimed_at = ? WHERE id = ? AND active = 1",
            (_ts(now), prompt_id),
        )
        await self.conn.commit()
        return cur.rowcount == 1

    async def reschedule_prompt(self, prompt_id: int, scheduled_for: datetime) -> bool:
        cur = await self.conn.execute(
            "UPDATE prompts SET scheduled_for = ? WHERE id = ? AND active = 1",
            (_ts(scheduled_for), prompt_id),
        )
        await self.conn.commit()
        return cur.rowcount == 1

    # ------------------------------------------------------------------
    # Prompt responses
    # ------------------------------------------------------------------

    async def save_response(self, record: PromptResponseRecord) -> int:
        """Insert a response; raises ``sqlite3.IntegrityError`` on a duplicate."""
        cur = await self.conn.execute(
            "INSERT INTO prompt_responses (prompt_id, user_id, text, created_at) "
            "VALUES (?, ?, ?, ?)",
            (record.prompt_id, record.user_id, record.text, _ts(record.created_at)),
        )
        await self.conn.commit()
        return cur.lastrowid  # type: ignore[return-value]

    async def save_response_if_absent(self, record: PromptResponseRecord) -> bool:
        cur = await self.conn.execute(
            "INSERT OR IGNORE INTO prompt_responses (prompt_id, user_id, text, created_at) "
            "VALUES (?, ?, ?, ?)",
            (record.prompt_id, record.user_id, record.text, _ts(record.created_at)),
        )
        await self.conn.commit()
        return cur.rowcount == 1

    async def get_response(self, prompt_id: int, user_id: int) -> PromptResponseRecord | None:
        row = await self._fetchone(
            "SELECT * FROM prompt_responses WHERE prompt_id = ? AND user_id = ?",
            (prompt_id, user_id),
        )
        return _response(row) if row else None

    async def list_responses(self, prompt_id: int) -> list[PromptResponseRecord]:
        rows = await self._fetchall(
            "SELECT * FROM prompt_responses WHERE prompt_id = ? ORDER BY created_at, id",
            (prompt_id,),
        )
        return [_response(r) for r in rows]

    # ------------------------------------------------------------------
    # Bot assignments
    # ------------------------------------------------------------------

    async def save_bot_assignment(self, record: BotAssignmentRecord) -> int:
        cur = await self.conn.execute(
            "INSERT INTO bot_assignments (prompt_id, assigner_id, bot_user_id, persona_key, "
            "created_at) VALUES (?, ?, ?, ?, ?)",
            (
                record.prompt_id,
                record.assigner_id,
                record.bot_user_id,
                record.persona_key,
                _ts(record.created_at),
            ),
        )
        await self.conn.commit()
        return cur.lastrowid  # type: ignore[return-value]

    async def list_bot_assignments(self, prompt_id: int) -> list[BotAssignmentRecord]:
        rows = await self._fetchall(
            "SELECT * FROM bot_assignments WHERE prompt_id = ? ORDER BY created_at, id",
            (prompt_id,),
        )
        return [
            BotAssignmentRecord(
                id=r["id"],
                prompt_id=r["prompt_id"],
                assigner_id=r["assigner_id"],
                bot_user_id=r["bot_user_id"],
                persona_key=r["persona_key"],
                created_at=r["created_at"],
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Rooms
    # ------------------------------------------------------------------

    async def create_room(self, record: RoomRecord) -> int:
        cur = await self.conn.execute(
            "INSERT INTO rooms (name, is_group, last_message_at, created_at) VALUES (?, ?, ?, ?)",
            (
                record.name,
                int(record.is_group),
                _opt_ts(record.last_message_at),
                _ts(record.created_at),
            ),
        )
        room_id: int = cur.lastrowid  # type: ignore[assignment]
        await self.conn.executemany(
            "INSERT OR IGNORE INTO room_participants (room_id, user_id, position) VALUES (?, ?, ?)",
            [(room_id, uid, pos) for pos, uid in enumerate(record.participants)],
        )
        await self.conn.commit()
        return room_id

    async def get_room(self, room_id: int) -> RoomRecord | None:
        row = await self._fetchone("SELECT * FROM rooms WHERE id = ?", (room_id,))
        if row is None:
            return None
        members = await self._fetchall(
            "SELECT user_id FROM room_participants WHERE room_id = ? ORDER BY position, user_id",
            (room_id,),
        )
        tags = await self._fetchall(
            "SELECT tag FROM room_tags WHERE room_id = ? ORDER BY tag", (room_id,)
        )
        return RoomRecord(
            id=row["id"],
            name=row["name"],
            is_group=row["is_group"],
            participants=[m["user_id"] for m in members],
            tags=[t["tag"] for t in tags],
            last_message_at=row["last_message_at"],
            created_at=row["created_at"],
        )

    async def add_room_participant(self, room_id: int, user_id: int) -> bool:
        cur = await self.conn.execute(
            "INSERT OR IGNORE INTO room_participants (room_id, user_id, position) "
            "VALUES (?, ?, (SELECT COUNT(*) FROM room_participants WHERE room_id = ?))",
            (room_id, user_id, room_id),
        )
        await self.conn.commit()
        return cur.rowcount == 1

    async def touch_room(self, room_id: int, when: datetime, tags: Iterable[str] = ()) -> None:
        """Bump last activity and fold *tags* into the room's tag set."""
        await self.conn.execute(
            "UPDATE rooms SET last_message_at = ? WHERE id = ?", (_ts(when), room_id)
        )
        await self.conn.executemany(
            "INSERT OR IGNORE INTO room_tags (room_id, tag) VALUES (?, ?)",
            [(room_id, t) for t in tags],
        )
        await self.conn.commit()

    # ------------------------------------------------------------------
    # Triads
    # ------------------------------------------------------------------

    async def create_triad(self, record: TriadRecord) -> int:
        cur = await self.conn.execute(
            "INSERT INTO triads (prompt_id, room_id, participants, persona_key, started_at, "
            "duration_sec, ends_at, status, score, user_scores, group_feedback, is_winner) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                record.prompt_id,
                record.room_id,
                json.dumps(record.participants),
                record.persona_key,
                _ts(record.started_at),
                record.duration_sec,
                _ts(record.ends_at),
                record.status.value,
                record.score,
                json.dumps([s.model_dump() for s in record.user_scores]),
                record.group_feedback,
                int(record.is_winner),
            ),
        )
        await self.conn.commit()
        return cur.lastrowid  # type: ignore[return-value]

    async def get_triad(self, triad_id: int) -> TriadRecord | None:
        row = await self._fetchone("SELECT * FROM triads WHERE id = ?", (triad_id,))
        return _triad(row) if row else None

    async def get_triads(self, triad_ids: Iterable[int]) -> list[TriadRecord]:
        ids = list(triad_ids)
        if not ids:
            return []
        marks = ", ".join("?" for _ in ids)
        rows = await self._fetchall(
            f"SELECT * FROM triads WHERE id IN ({marks}) ORDER BY started_at, id", ids
        )
        return [_triad(r) for r in rows]

    async def list_triads_for_prompt(self, prompt_id: int) -> list[TriadRecord]:
        rows = await self._fetchall(
            "SELECT * FROM triads WHERE prompt_id = ? ORDER BY started_at, id", (prompt_id,)
        )
        return [_triad(r) for r in rows]

    async def find_active_triad_for_room(self, room_id: int) -> TriadRecord | None:
        row = await self._fetchone(
            "SELECT * FROM triads WHERE room_id = ? AND status = 'active' "
            "ORDER BY started_at DESC, id DESC LIMIT 1",
            (room_id,),
        )
        return _triad(row) if row else None

    async def find_latest_triad_for_room(self, room_id: int) -> TriadRecord | None:
        row = await self._fetchone(
            "SELECT * FROM triads WHERE room_id = ? ORDER BY started_at DESC, id DESC LIMIT 1",
            (room_id,),
        )
        return _triad(row) if row else None

    async def find_active_triad_for_user(self, user_id: int) -> TriadRecord | None:
        row = await self._fetchone(
            "SELECT * FROM triads WHERE status = 'active' AND EXISTS "
            "(SELECT 1 FROM json_each(triads.participants) WHERE value = ?) "
            "ORDER BY started_at DESC, id DESC LIMIT 1",
            (user_id,),
        )
        return _triad(row) if row else None

    async def list_triads_needing_grading(self, now: datetime) -> list[TriadRecord]:
        """Expired actives, plus finished triads whose per-user scores are missing."""
        rows = await self._fetchall(
            "SELECT * FROM triads WHERE (status = 'active' AND ends_at <= ?) "
            "OR (status = 'finished' AND user_scores = '[]') ORDER BY started_at, id",
            (_ts(now),),
        )
        return [_triad(r) for r in rows]

    async def list_expired_active_triads(self, now: datetime) -> list[TriadRecord]:
        rows = await self._fetchall(
            "SELECT * FROM triads WHERE status = 'active' AND ends_at <= ? "
            "ORDER BY started_at, id",
            (_ts(now),),
        )
        return [_triad(r) for r in rows]

    async def save_user_scores(
        self, triad_id: int, user_scores: list[UserScore], group_feedback: str
    ) -> None:
        await self.conn.execute(
            "UPDATE triads SET user_scores = ?, group_feedback = ? WHERE id = ?",
            (json.dumps([s.model_dump() for s in user_scores]), group_feedback, triad_id),
        )
        await self.conn.commit()

    async def save_provisional_outcome(
        self, triad_id: int, score: int, winner_user_id: int | None
    ) -> None:
        await self.conn.execute(
            "UPDATE triads SET score = ?, winner_user_id = ? WHERE id = ? AND status = 'active'",
            (score, winner_user_id, triad_id),
        )
        await self.conn.commit()

    async def finish_triad(self, triad_id: int, ended_at: datetime, is_winner: bool) -> bool:
        """Move an active triad to finished. True only for the caller that did it."""
        cur = await self.conn.execute(
            "UPDATE triads SET status = ?, ended_at = ?, is_winner = ? "
            "WHERE id = ? AND status = 'active'",
            (TriadStatus.FINISHED.value, _ts(ended_at), int(is_winner), triad_id),
        )
        await self.conn.commit()
        return cur.rowcount == 1

    async def mark_rubric_posted(self, triad_id: int, when: datetime) -> bool:
        cur = await self.conn.execute(
            "UPDATE triads SET rubric_posted_at = ? WHERE id = ? AND rubric_posted_at IS NULL",
            (_ts(when), triad_id),
        )
        await self.conn.commit()
        return cur.rowcount == 1

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def save_message(self, record: MessageRecord) -> int:
        cur = await self.conn.execute(
            "INSERT INTO messages (room_id, sender_id, content, triad_id, prompt_id, "
            "sentiment, tags, word_count, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                record.room_id,
                record.sender_id,
                record.content,
                record.triad_id,
                record.prompt_id,
                record.sentiment,
                json.dumps(record.tags),
                record.word_count,
                _ts(record.created_at),
            ),
        )
        await self.conn.commit()
        return cur.lastrowid  # type: ignore[return-value]

    async def get_room_messages(
        self, room_id: int, since: datetime | None = None, limit: int = 200
    ) -> list[MessageRecord]:
        sql = "SELECT * FROM messages WHERE room_id = ?"
        params: list[Any] = [room_id]
        if since is not None:
            sql += " AND created_at > ?"
            params.append(_ts(since))
        sql += " ORDER BY created_at, id LIMIT ?"
        params.append(limit)
        return [_message(r) for r in await self._fetchall(sql, params)]

    async def get_triad_messages(
        self,
        triad_id: int,
        *,
        before: datetime | None = None,
        last: int | None = None,
    ) -> list[MessageRecord]:
        """Messages of a triad in creation order; *last* keeps only the newest N."""
        sql = "SELECT * FROM messages WHERE triad_id = ?"
        params: list[Any] = [triad_id]
        if before is not None:
            sql += " AND created_at < ?"
            params.append(_ts(before))
        if last is not None:
            sql = f"SELECT * FROM ({sql} ORDER BY created_at DESC, id DESC LIMIT ?)"
            params.append(last)
        sql += " ORDER BY created_at, id"
        return [_message(r) for r in await self._fetchall(sql, params)]

    async def last_message_by(self, triad_id: int, sender_id: int) -> MessageRecord | None:
        row = await self._fetchone(
            "SELECT * FROM messages WHERE triad_id = ? AND sender_id = ? "
            "ORDER BY created_at DESC, id DESC LIMIT 1",
            (triad_id, sender_id),
        )
        return _message(row) if row else None

    # ------------------------------------------------------------------
    # Token ledger
    # ------------------------------------------------------------------

    async def save_transaction(self, record: TokenTransactionRecord) -> int:
        cur = await self.conn.execute(
            "INSERT INTO token_transactions (user_id, amount, kind, metadata, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (
                record.user_id,
                record.amount,
                record.kind.value,
                record.metadata_json,
                _ts(record.created_at),
            ),
        )
        await self.conn.commit()
        return cur.lastrowid  # type: ignore[return-value]

    async def get_balance(self, user_id: int) -> int:
        row = await self._fetchone(
            "SELECT COALESCE(SUM(amount), 0) AS balance FROM token_transactions WHERE user_id = ?",
            (user_id,),
        )
        return int(row["balance"]) if row else 0

    async def list_transactions(
        self, user_id: int | None = None, *, triad_id: int | None = None, limit: int = 100
    ) -> list[TokenTransactionRecord]:
        sql = "SELECT * FROM token_transactions WHERE 1 = 1"
        params: list[Any] = []
        if user_id is not None:
            sql += " AND user_id = ?"
            params.append(user_id)
        if triad_id is not None:
            sql += " AND json_extract(metadata, '$.triad_id') = ?"
            params.append(triad_id)
        sql += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)
        return [_transaction(r) for r in await self._fetchall(sql, params)]

    async def leaderboard(self, limit: int = 50) -> list[dict[str, Any]]:
        rows = await self._fetchall(
            "SELECT u.id AS user_id, u.username AS username, SUM(t.amount) AS balance "
            "FROM token_transactions t JOIN users u ON u.id = t.user_id "
            "WHERE u.is_bot = 0 GROUP BY u.id ORDER BY balance DESC, u.id LIMIT ?",
            (limit,),
        )
        return [
            {"user_id": r["user_id"], "username": r["username"], "balance": r["balance"]}
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Locks and counters
    # ------------------------------------------------------------------

    async def try_acquire_lock(
        self, key: str, holder: str, now: datetime, ttl: timedelta
    ) -> bool:
        """Take *key* until ``now + ttl`` unless someone else holds it past *now*."""
        cur = await self.conn.execute(
            "INSERT INTO locks (key, holder, locked_until) VALUES (?, ?, ?) "
            "ON CONFLICT(key) DO UPDATE SET holder = excluded.holder, "
            "locked_until = excluded.locked_until WHERE locks.locked_until <= ?",
            (key, holder, _ts(now + ttl), _ts(now)),
        )
        await self.conn.commit()
        return cur.rowcount == 1

    async def release_lock(self, key: str, holder: str) -> None:
        await self.conn.execute(
            "DELETE FROM locks WHERE key = ? AND holder = ?", (key, holder)
        )
        await self.conn.commit()

    async def next_counter(self, key: str) -> int:
        """Atomically advance a named counter and return its previous value."""
        cur = await self.conn.execute(
            "INSERT INTO counters (key, value) VALUES (?, 1) "
            "ON CONFLICT(key) DO UPDATE SET value = value + 1 RETURNING value",
            (key,),
        )
        row = await cur.fetchone()
        await self.conn.commit()
        assert row is not None
        return int(row["value"]) - 1
