"""Tests for the data layer (database + models)."""

from __future__ import annotations

import asyncio
import sqlite3
from datetime import timedelta

import pytest

from data.database import ArenaDatabase
from data.models import (
    MessageRecord,
    PromptResponseRecord,
    RoomRecord,
    TokenTransactionRecord,
    TransactionKind,
    TriadRecord,
    TriadStatus,
    UserRecord,
    UserScore,
)


class TestModels:
    def test_triad_window(self, clock):
        triad = TriadRecord(
            prompt_id=1, room_id=1, participants=[1, 2], started_at=clock(),
            duration_sec=600, status=TriadStatus.ACTIVE,
        )
        assert triad.ends_at == clock() + timedelta(seconds=600)
        assert triad.is_open(clock())
        assert not triad.is_open(clock() + timedelta(seconds=600))

    def test_finished_triad_is_never_open(self, clock):
        triad = TriadRecord(
            prompt_id=1, room_id=1, participants=[1], started_at=clock(),
            status=TriadStatus.FINISHED,
        )
        assert not triad.is_open(clock())

    def test_transaction_metadata_property(self):
        tx = TokenTransactionRecord(
            user_id=1, amount=5, kind=TransactionKind.EARN_WIN, metadata_json='{"triad_id": 3}'
        )
        assert tx.metadata == {"triad_id": 3}


class TestUsers:
    @pytest.mark.asyncio
    async def test_create_and_get_user(self, test_db: ArenaDatabase):
        uid = await test_db.create_user(UserRecord(username="alice"))
        user = await test_db.get_user(uid)
        assert user is not None
        assert user.username == "alice"
        assert user.is_bot is False

    @pytest.mark.asyncio
    async def test_ensure_persona_user_is_idempotent(self, test_db: ArenaDatabase):
        first = await test_db.ensure_persona_user("witty", "WittyBot")
        second = await test_db.ensure_persona_user("witty", "WittyBot")
        assert first.id == second.id
        assert first.is_bot
        assert await test_db.list_bot_user_ids() == {first.id}


class TestPrompts:
    @pytest.mark.asyncio
    async def test_claim_prompt_only_once(self, test_db, add_prompt, clock):
        pid = await add_prompt(minutes=-1)
        assert await test_db.claim_prompt(pid, clock()) is True
        assert await test_db.claim_prompt(pid, clock()) is False
        prompt = await test_db.get_prompt(pid)
        assert prompt is not None and prompt.active is False
        assert prompt.claimed_at == clock()

    @pytest.mark.asyncio
    async def test_concurrent_claims_have_one_winner(self, test_db, add_prompt, clock):
        pid = await add_prompt(minutes=-1)
        results = await asyncio.gather(*(test_db.claim_prompt(pid, clock()) for _ in range(5)))
        assert results.count(True) == 1

    @pytest.mark.asyncio
    async def test_open_and_due_listing(self, test_db, add_prompt, clock):
        due = await add_prompt(minutes=-5)
        later = await add_prompt(minutes=20)
        sooner = await add_prompt(minutes=10)
        open_ids = [p.id for p in await test_db.list_open_prompts(clock())]
        assert open_ids == [sooner, later]
        assert [p.id for p in await test_db.list_due_prompts(clock())] == [due]

    @pytest.mark.asyncio
    async def test_reschedule_only_while_active(self, test_db, add_prompt, clock):
        pid = await add_prompt()
        assert await test_db.reschedule_prompt(pid, clock() + timedelta(hours=1))
        await test_db.claim_prompt(pid, clock())
        assert not await test_db.reschedule_prompt(pid, clock() + timedelta(hours=2))


class TestResponses:
    @pytest.mark.asyncio
    async def test_duplicate_response_raises(self, test_db, add_prompt, add_user):
        pid = await add_prompt()
        uid = await add_user("bob")
        await test_db.save_response(PromptResponseRecord(prompt_id=pid, user_id=uid, text="one"))
        with pytest.raises(sqlite3.IntegrityError):
            await test_db.save_response(
                PromptResponseRecord(prompt_id=pid, user_id=uid, text="two")
            )

    @pytest.mark.asyncio
    async def test_save_if_absent_keeps_first(self, test_db, add_prompt, add_user):
        pid = await add_prompt()
        uid = await add_user("bob")
        rec = PromptResponseRecord(prompt_id=pid, user_id=uid, text="first")
        assert await test_db.save_response_if_absent(rec)
        assert not await test_db.save_response_if_absent(rec.model_copy(update={"text": "second"}))
        stored = await test_db.get_response(pid, uid)
        assert stored is not None and stored.text == "first"


class TestTriadsAndMessages:
    async def _triad(self, db: ArenaDatabase, clock, participants: list[int]) -> TriadRecord:
        room_id = await db.create_room(RoomRecord(name="r", participants=participants))
        triad = TriadRecord(
            prompt_id=1, room_id=room_id, participants=participants,
            started_at=clock(), status=TriadStatus.ACTIVE,
        )
        triad.id = await db.create_triad(triad)
        return triad

    @pytest.mark.asyncio
    async def test_finish_triad_is_conditional(self, test_db, clock):
        triad = await self._triad(test_db, clock, [1, 2])
        assert await test_db.finish_triad(triad.id, clock(), True)
        assert not await test_db.finish_triad(triad.id, clock(), False)
        stored = await test_db.get_triad(triad.id)
        assert stored.status == TriadStatus.FINISHED
        assert stored.is_winner is True

    @pytest.mark.asyncio
    async def test_user_scores_round_trip(self, test_db, clock):
        triad = await self._triad(test_db, clock, [1, 2])
        await test_db.save_user_scores(
            triad.id, [UserScore(user_id=1, score=70), UserScore(user_id=2, score=40)], "ok"
        )
        stored = await test_db.get_triad(triad.id)
        assert [s.score for s in stored.user_scores] == [70, 40]
        assert stored.group_feedback == "ok"

    @pytest.mark.asyncio
    async def test_find_active_triad_for_user(self, test_db, clock):
        triad = await self._triad(test_db, clock, [4, 5])
        found = await test_db.find_active_triad_for_user(5)
        assert found is not None and found.id == triad.id
        assert await test_db.find_active_triad_for_user(6) is None

    @pytest.mark.asyncio
    async def test_triad_messages_last_and_before(self, test_db, clock):
        triad = await self._triad(test_db, clock, [1, 2])
        for i in range(4):
            await test_db.save_message(
                MessageRecord(
                    room_id=triad.room_id, sender_id=1, content=f"m{i}", triad_id=triad.id,
                    created_at=clock() + timedelta(seconds=i),
                )
            )
        last_two = await test_db.get_triad_messages(triad.id, last=2)
        assert [m.content for m in last_two] == ["m2", "m3"]
        before = await test_db.get_triad_messages(triad.id, before=clock() + timedelta(seconds=2))
        assert [m.content for m in before] == ["m0", "m1"]

    @pytest.mark.asyncio
    async def test_touch_room_aggregates_tags(self, test_db, clock):
        room_id = await test_db.create_room(RoomRecord(name="r", participants=[1]))
        await test_db.touch_room(room_id, clock(), ["question"])
        await test_db.touch_room(room_id, clock(), ["question", "evidence"])
        room = await test_db.get_room(room_id)
        assert room.tags == ["evidence", "question"]
        assert room.last_message_at == clock()


class TestLocksAndCounters:
    @pytest.mark.asyncio
    async def test_lock_respects_ttl(self, test_db, clock):
        ttl = timedelta(seconds=5)
        assert await test_db.try_acquire_lock("k", "a", clock(), ttl)
        assert not await test_db.try_acquire_lock("k", "b", clock() + timedelta(seconds=1), ttl)
        assert await test_db.try_acquire_lock("k", "b", clock() + timedelta(seconds=5), ttl)

    @pytest.mark.asyncio
    async def test_release_only_by_holder(self, test_db, clock):
        ttl = timedelta(seconds=5)
        await test_db.try_acquire_lock("k", "a", clock(), ttl)
        await test_db.release_lock("k", "someone-else")
        assert not await test_db.try_acquire_lock("k", "b", clock(), ttl)
        await test_db.release_lock("k", "a")
        assert await test_db.try_acquire_lock("k", "b", clock(), ttl)

    @pytest.mark.asyncio
    async def test_counter_advances(self, test_db):
        assert [await test_db.next_counter("c") for _ in range(3)] == [0, 1, 2]


class TestLedgerQueries:
    @pytest.mark.asyncio
    async def test_balance_is_sum_and_leaderboard_skips_bots(self, test_db, add_user):
        alice = await add_user("alice")
        bot = (await test_db.ensure_persona_user("trash", "TrashTalkBot")).id
        for uid, amount in [(alice, 30), (alice, -10), (bot, 50)]:
            await test_db.save_transaction(
                TokenTransactionRecord(user_id=uid, amount=amount, kind=TransactionKind.ADMIN_ADJUST)
            )
        assert await test_db.get_balance(alice) == 20
        board = await test_db.leaderboard()
        assert board == [{"user_id": alice, "username": "alice", "balance": 20}]
