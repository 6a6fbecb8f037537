"""Tests for the Response Collector and prompt authoring."""

from __future__ import annotations

from datetime import timedelta

import pytest

from data.models import PromptSource, TransactionKind
from errors import (
    AlreadyResponded,
    EmptyContent,
    InsufficientTokens,
    NotFoundError,
    PromptNotActive,
)


class TestSubmitResponse:
    @pytest.mark.asyncio
    async def test_response_is_stored_trimmed(self, services, add_prompt, add_user, test_db):
        pid = await add_prompt()
        uid = await add_user("ana")
        record = await services.collector.submit_response(pid, uid, "  Trail mix  ")
        assert record.id is not None
        assert (await test_db.get_response(pid, uid)).text == "Trail mix"

    @pytest.mark.asyncio
    async def test_second_response_is_rejected(self, services, add_prompt, add_user):
        pid = await add_prompt()
        uid = await add_user("ana")
        await services.collector.submit_response(pid, uid, "Chips")
        with pytest.raises(AlreadyResponded):
            await services.collector.submit_response(pid, uid, "Actually, pretzels")

    @pytest.mark.asyncio
    async def test_empty_response(self, services, add_prompt, add_user):
        pid = await add_prompt()
        with pytest.raises(EmptyContent):
            await services.collector.submit_response(pid, await add_user("ana"), "   ")

    @pytest.mark.asyncio
    async def test_unknown_prompt(self, services, add_user):
        with pytest.raises(NotFoundError):
            await services.collector.submit_response(999, await add_user("ana"), "hi")

    @pytest.mark.asyncio
    async def test_past_deadline_is_rejected(self, services, add_prompt, add_user, clock):
        pid = await add_prompt(minutes=10)
        uid = await add_user("late")
        clock.advance(minutes=10)
        with pytest.raises(PromptNotActive):
            await services.collector.submit_response(pid, uid, "Sorry I'm late")

    @pytest.mark.asyncio
    async def test_claimed_prompt_is_rejected(self, services, add_prompt, add_user, test_db, clock):
        pid = await add_prompt(minutes=10)
        await test_db.claim_prompt(pid, clock())
        with pytest.raises(PromptNotActive):
            await services.collector.submit_response(pid, await add_user("ana"), "hi")


class TestUnassignedQueue:
    @pytest.mark.asyncio
    async def test_respondents_then_assigners_without_bots(
        self, services, add_prompt, add_user
    ):
        pid = await add_prompt()
        a = await add_user("a")
        b = await add_user("b")
        c = await add_user("c")
        await services.collector.submit_response(pid, b, "first")
        await services.collector.submit_response(pid, a, "second")
        await services.collector.assign_bot(pid, c, "witty")
        await services.collector.assign_bot(pid, a, "professor")

        assert await services.collector.unassigned_queue(pid) == [b, a, c]


class TestAssignBot:
    @pytest.mark.asyncio
    async def test_stance_saved_once(self, services, add_prompt, add_user, test_db, mock_provider):
        pid = await add_prompt()
        first = await services.collector.assign_bot(pid, await add_user("a"), "trash")
        second = await services.collector.assign_bot(pid, await add_user("b"), "trash")

        assert first.text == "A sharp, well-argued point."
        assert second.id == first.id
        assert len(mock_provider.call_log) == 1
        assert len(await test_db.list_bot_assignments(pid)) == 2

    @pytest.mark.asyncio
    async def test_fallback_stance_without_provider(self, make_services, add_prompt, add_user):
        services = make_services(None)
        pid = await add_prompt()
        response = await services.collector.assign_bot(pid, await add_user("a"), "witty")
        assert response.text == "Going bold."

    @pytest.mark.asyncio
    async def test_unknown_persona(self, services, add_prompt, add_user):
        pid = await add_prompt()
        with pytest.raises(NotFoundError):
            await services.collector.assign_bot(pid, await add_user("a"), "pirate")


class TestPromptAuthoring:
    @pytest.mark.asyncio
    async def test_user_prompt_costs_tokens(self, services, add_user, clock):
        uid = await add_user("author")
        await services.ledger.credit(uid, 25, TransactionKind.EARN_WIN)

        prompt = await services.collector.submit_user_prompt(uid, "Is cereal a soup?")

        assert prompt.source == PromptSource.USER
        assert prompt.created_by == uid
        assert prompt.scheduled_for == clock() + timedelta(minutes=10)
        assert await services.ledger.balance(uid) == 15
        (spend, _) = await services.ledger.history(uid)
        assert spend.kind == TransactionKind.SPEND_CUSTOMIZATION
        assert spend.amount == -10
        assert spend.metadata["reason"] == "user_prompt"

    @pytest.mark.asyncio
    async def test_user_prompt_requires_balance(self, services, add_user, test_db, clock):
        uid = await add_user("broke")
        with pytest.raises(InsufficientTokens):
            await services.collector.submit_user_prompt(uid, "Is cereal a soup?")
        assert await test_db.list_open_prompts(clock()) == []

    @pytest.mark.asyncio
    async def test_user_prompt_too_short(self, services, add_user):
        with pytest.raises(EmptyContent):
            await services.collector.submit_user_prompt(await add_user("a"), "why")

    @pytest.mark.asyncio
    async def test_user_prompt_unknown_user(self, services):
        with pytest.raises(NotFoundError):
            await services.collector.submit_user_prompt(404, "Is cereal a soup?")

    @pytest.mark.asyncio
    async def test_admin_prompt_is_free(self, services, clock):
        prompt = await services.collector.post_admin_prompt(
            None, "Best road trip snack?", category="food", duration_minutes=15
        )
        assert prompt.source == PromptSource.ADMIN
        assert prompt.scheduled_for == clock() + timedelta(minutes=15)

    @pytest.mark.asyncio
    async def test_reschedule_open_and_claimed(self, services, add_prompt, test_db, clock):
        pid = await add_prompt(minutes=10)
        moved = await services.collector.reschedule_prompt(pid, clock() + timedelta(hours=1))
        assert moved.scheduled_for == clock() + timedelta(hours=1)

        await test_db.claim_prompt(pid, clock())
        with pytest.raises(PromptNotActive):
            await services.collector.reschedule_prompt(pid, clock())
        with pytest.raises(NotFoundError):
            await services.collector.reschedule_prompt(999, clock())
