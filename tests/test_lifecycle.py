"""Tests for the Triad Lifecycle Evaluator (grading + settlement)."""

from __future__ import annotations

import asyncio
import json
from datetime import timedelta

import pytest

from chat.broadcast import EVENT_TRIAD_LOCKED
from data.models import MessageRecord, RoomRecord, TransactionKind, TriadRecord, TriadStatus
from evaluation.lifecycle import RUBRIC_TAG, pick_winner


def _grade(score: int) -> str:
    return json.dumps(
        {
            "per_user": [
                {
                    "userIndex": i,
                    "defense": score,
                    "evidence": score,
                    "logic": score,
                    "responsiveness": score,
                    "clarity": score,
                    "feedback": f"scored {score}",
                }
                for i in range(3)
            ],
            "group_feedback": "lively",
        }
    )


def grading_handler(messages):
    """STRONG transcripts score 90 across the board, anything else 40."""
    return _grade(90 if "STRONG" in messages[-1]["content"] else 40)


@pytest.fixture
def grading_provider(make_provider):
    return make_provider(handler=grading_handler)


@pytest.fixture
def make_triad(test_db, add_user, add_prompt, clock):
    counter = {"n": 0}

    async def _make(prompt_id: int | None = None, lines: list[str] | None = None, humans: int = 2):
        if prompt_id is None:
            prompt_id = await add_prompt(minutes=-1)
        users = []
        for _ in range(humans):
            counter["n"] += 1
            users.append(await add_user(f"debater{counter['n']}"))
        room_id = await test_db.create_room(RoomRecord(name="r", participants=users))
        triad = TriadRecord(
            prompt_id=prompt_id, room_id=room_id, participants=users,
            started_at=clock(), status=TriadStatus.ACTIVE,
        )
        triad.id = await test_db.create_triad(triad)
        for i, line in enumerate(lines or []):
            await test_db.save_message(
                MessageRecord(
                    room_id=room_id, sender_id=users[i % len(users)], content=line,
                    triad_id=triad.id, prompt_id=prompt_id,
                    created_at=clock() + timedelta(seconds=i + 1),
                )
            )
        return triad

    return _make


async def _credits(db, triad_id):
    return await db.list_transactions(triad_id=triad_id)


class TestPickWinner:
    def test_highest_score_then_earliest_then_lowest_id(self, clock):
        def t(i, score, offset):
            return TriadRecord(
                id=i, prompt_id=1, room_id=1, participants=[1], score=score,
                started_at=clock() + timedelta(seconds=offset),
            )

        assert pick_winner([t(1, 40, 0), t(2, 70, 5)]).id == 2
        assert pick_winner([t(3, 70, 5), t(2, 70, 0)]).id == 2
        assert pick_winner([t(5, 70, 0), t(4, 70, 0)]).id == 4
        assert pick_winner([]) is None


class TestEvaluateExpiredTriads:
    @pytest.mark.asyncio
    async def test_empty_transcript_gives_neutral_scores(
        self, make_services, grading_provider, make_triad, test_db, clock
    ):
        services = make_services(grading_provider)
        triad = await make_triad(lines=[])
        clock.advance(seconds=601)

        result = await services.evaluator.evaluate_expired_triads()

        stored = await test_db.get_triad(triad.id)
        assert stored.status == TriadStatus.FINISHED
        assert [s.score for s in stored.user_scores] == [50, 50]
        assert stored.score == 50
        assert stored.is_winner is True
        assert stored.ended_at == clock()
        assert grading_provider.call_log == []
        assert result.settled == [triad.id]

    @pytest.mark.asyncio
    async def test_single_winner_and_credits_per_prompt(
        self, make_services, grading_provider, make_triad, add_prompt, test_db, clock
    ):
        services = make_services(grading_provider)
        pid = await add_prompt(minutes=-1)
        weak = await make_triad(pid, ["meh", "fine I guess"])
        strong = await make_triad(pid, ["STRONG opening with data", "STRONG rebuttal"])
        clock.advance(seconds=601)

        result = await services.evaluator.evaluate_expired_triads()

        weak_now = await test_db.get_triad(weak.id)
        strong_now = await test_db.get_triad(strong.id)
        assert strong_now.is_winner and not weak_now.is_winner
        assert strong_now.score == 90 and weak_now.score == 40
        assert result.winners == {pid: strong.id}

        for uid in strong.participants:
            assert await services.ledger.balance(uid) == 30
        for uid in weak.participants:
            assert await services.ledger.balance(uid) == 10
        kinds = {tx.kind for tx in await _credits(test_db, strong.id)}
        assert kinds == {TransactionKind.EARN_WIN}

    @pytest.mark.asyncio
    async def test_settlement_is_idempotent(
        self, make_services, grading_provider, make_triad, test_db, clock
    ):
        services = make_services(grading_provider)
        triad = await make_triad(lines=["STRONG point"])
        clock.advance(seconds=601)

        await services.evaluator.evaluate_expired_triads()
        second = await services.evaluator.evaluate_expired_triads()

        assert second.settled == []
        assert len(await _credits(test_db, triad.id)) == len(triad.participants)

    @pytest.mark.asyncio
    async def test_concurrent_evaluations_credit_once(
        self, make_services, grading_provider, make_triad, test_db, clock
    ):
        services = make_services(grading_provider)
        triad = await make_triad(lines=["STRONG point", "counterpoint"])
        clock.advance(seconds=601)

        await asyncio.gather(
            services.evaluator.evaluate_expired_triads(),
            services.evaluator.evaluate_expired_triads(),
        )
        assert len(await _credits(test_db, triad.id)) == 2

    @pytest.mark.asyncio
    async def test_tie_goes_to_earliest_start(
        self, make_services, grading_provider, make_triad, add_prompt, test_db, clock
    ):
        services = make_services(grading_provider)
        pid = await add_prompt(minutes=-1)
        first = await make_triad(pid, [])
        clock.advance(seconds=1)
        second = await make_triad(pid, [])
        clock.advance(seconds=601)

        await services.evaluator.evaluate_expired_triads()
        assert (await test_db.get_triad(first.id)).is_winner
        assert not (await test_db.get_triad(second.id)).is_winner

    @pytest.mark.asyncio
    async def test_staggered_siblings_settle_together_with_one_winner(
        self, make_services, grading_provider, make_triad, add_prompt, test_db, clock
    ):
        services = make_services(grading_provider)
        pid = await add_prompt(minutes=-1)
        early = await make_triad(pid, ["meh"])
        clock.advance(seconds=5)
        late = await make_triad(pid, ["STRONG closing argument"])

        clock.advance(seconds=597)
        waiting = await services.evaluator.evaluate_expired_triads()
        assert waiting.settled == []
        assert (await test_db.get_triad(early.id)).status == TriadStatus.ACTIVE

        clock.advance(seconds=4)
        result = await services.evaluator.evaluate_expired_triads()

        assert sorted(result.settled) == sorted([early.id, late.id])
        assert result.winners == {pid: late.id}
        triads = await test_db.list_triads_for_prompt(pid)
        assert [t.id for t in triads if t.is_winner] == [late.id]

    @pytest.mark.asyncio
    async def test_later_sibling_never_takes_a_settled_win(
        self, make_services, grading_provider, make_triad, add_prompt, test_db, clock
    ):
        services = make_services(grading_provider)
        pid = await add_prompt(minutes=-1)
        first = await make_triad(pid, ["meh"])
        clock.advance(seconds=601)
        await services.evaluator.evaluate_expired_triads()
        assert (await test_db.get_triad(first.id)).is_winner

        leftover = await make_triad(pid, ["STRONG point", "STRONG reply"])
        clock.advance(seconds=601)
        result = await services.evaluator.evaluate_expired_triads()

        assert result.settled == [leftover.id]
        assert result.winners == {}
        stored = await test_db.get_triad(leftover.id)
        assert stored.status == TriadStatus.FINISHED and not stored.is_winner
        for uid in leftover.participants:
            assert await services.ledger.balance(uid) == 10

    @pytest.mark.asyncio
    async def test_grader_failure_degrades_to_neutral_and_still_finishes(
        self, make_services, failing_provider, make_triad, test_db, clock
    ):
        services = make_services(failing_provider)
        triad = await make_triad(lines=["a real argument", "a real reply"])
        clock.advance(seconds=601)

        await services.evaluator.evaluate_expired_triads()

        stored = await test_db.get_triad(triad.id)
        assert stored.status == TriadStatus.FINISHED
        assert [s.score for s in stored.user_scores] == [50, 50]

    @pytest.mark.asyncio
    async def test_active_triad_inside_window_is_untouched(
        self, make_services, grading_provider, make_triad, test_db, clock
    ):
        services = make_services(grading_provider)
        triad = await make_triad(lines=["STRONG"])
        clock.advance(seconds=599)

        result = await services.evaluator.evaluate_expired_triads()
        assert result.graded == [] and result.settled == []
        assert (await test_db.get_triad(triad.id)).status == TriadStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_transcript_excludes_late_and_system_messages(
        self, services, make_triad, test_db, clock
    ):
        triad = await make_triad(lines=["on time"])
        await test_db.save_message(
            MessageRecord(
                room_id=triad.room_id, sender_id=triad.participants[0], content="too late",
                triad_id=triad.id, created_at=triad.ends_at + timedelta(seconds=1),
            )
        )
        await test_db.save_message(
            MessageRecord(
                room_id=triad.room_id, sender_id=None, content="system note",
                triad_id=triad.id, created_at=clock() + timedelta(seconds=5),
            )
        )
        transcript = await services.evaluator.build_transcript(triad)
        assert transcript.endswith(": on time")
        assert transcript.startswith("#0 ")
        assert "too late" not in transcript and "system note" not in transcript

    @pytest.mark.asyncio
    async def test_backfill_on_finished_triad_never_credits(
        self, make_services, grading_provider, make_triad, test_db, clock
    ):
        services = make_services(grading_provider)
        triad = await make_triad(lines=["STRONG"])
        await test_db.finish_triad(triad.id, clock(), False)

        result = await services.evaluator.evaluate_expired_triads()

        stored = await test_db.get_triad(triad.id)
        assert result.graded == [triad.id]
        assert [s.score for s in stored.user_scores] == [90, 90]
        assert stored.is_winner is False
        assert await _credits(test_db, triad.id) == []

    @pytest.mark.asyncio
    async def test_rubric_summary_posted_once_and_room_locked(
        self, make_services, grading_provider, make_triad, test_db, broadcaster, clock
    ):
        services = make_services(grading_provider)
        triad = await make_triad(lines=["STRONG"])
        inbox = broadcaster.subscribe(triad.room_id)
        clock.advance(seconds=601)

        await services.evaluator.evaluate_expired_triads()
        await services.evaluator.evaluate_expired_triads()
        assert await services.evaluator.post_rubric_summary(triad.id) is None

        summaries = [
            m for m in await test_db.get_triad_messages(triad.id) if RUBRIC_TAG in m.tags
        ]
        assert len(summaries) == 1
        assert summaries[0].sender_id is None
        body = json.loads(summaries[0].content)
        assert body["groupScore"] == 90 and body["isWinner"] is True
        assert len(body["perUser"]) == 2

        events = []
        while not inbox.empty():
            events.append(inbox.get_nowait().event)
        assert events.count(EVENT_TRIAD_LOCKED) == 1
