"""Shared fixtures for the test suite.

Provides a MockProvider that simulates LLM responses without network calls,
a controllable clock, a temporary database and fully wired services.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import pytest
import pytest_asyncio

from chat.broadcast import RoomBroadcaster
from cli import Services, build_services
from config import ArenaConfig
from data.database import ArenaDatabase
from data.models import PromptRecord, PromptSource, UserRecord
from personas.llm_provider import LLMProvider, ModerationResult


# ---------------------------------------------------------------------------
# Mock LLM providers
# ---------------------------------------------------------------------------

class MockProvider(LLMProvider):
    """Deterministic mock provider for testing – no network calls.

    ``responses`` cycle in order. ``handler`` (if given) picks the reply
    from the messages instead. Any text containing a ``flagged`` word fails
    moderation.
    """

    name = "mock"
    supports_moderation = True

    def __init__(
        self,
        responses: list[str] | None = None,
        *,
        handler: Callable[[list[dict[str, str]]], str] | None = None,
        flagged: set[str] | None = None,
        model: str = "mock-v1",
    ) -> None:
        # Bypass API-key validation
        self.model = model
        self.timeout = 30
        self.max_retries = 1
        self.api_key = "mock-key"

        self._responses = responses or ["A sharp, well-argued point."]
        self._handler = handler
        self._flagged = {w.lower() for w in (flagged or set())}
        self._call_count = 0
        self.call_log: list[dict[str, Any]] = []
        self.moderated: list[str] = []

    async def _call_api(
        self,
        messages: list[dict[str, str]],
        *,
        model: str,
        temperature: float,
        max_tokens: int,
        **kwargs: Any,
    ) -> dict[str, Any]:
        self.call_log.append(
            {"messages": messages, "model": model, "temperature": temperature, "max_tokens": max_tokens}
        )
        if self._handler is not None:
            text = self._handler(messages)
        else:
            text = self._responses[self._call_count % len(self._responses)]
        self._call_count += 1
        return {"text": text, "tokens_used": len(text.split()) * 2, "raw": {}}

    async def moderate(self, text: str) -> ModerationResult:
        self.moderated.append(text)
        words = set(text.lower().split())
        hits = words & self._flagged
        return ModerationResult(allowed=not hits, categories={"flagged_words": sorted(hits)})


class FailingProvider(MockProvider):
    """Every call errors, including moderation."""

    name = "failing"

    async def _call_api(self, messages, *, model, temperature, max_tokens, **kwargs):
        self.call_log.append({"messages": messages})
        raise RuntimeError("upstream unavailable")

    async def moderate(self, text: str) -> ModerationResult:
        raise RuntimeError("moderation endpoint down")


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------

class Clock:
    """A frozen clock that tests move forward by hand."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs: float) -> datetime:
        self.now += timedelta(seconds=seconds, **kwargs)
        return self.now


@pytest.fixture
def clock() -> Clock:
    return Clock(datetime(2026, 3, 14, 12, 0, tzinfo=timezone.utc))


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_provider() -> MockProvider:
    return MockProvider()


@pytest.fixture
def make_provider() -> type[MockProvider]:
    return MockProvider


@pytest.fixture
def failing_provider() -> FailingProvider:
    return FailingProvider()


@pytest.fixture
def config(tmp_path) -> ArenaConfig:
    cfg = ArenaConfig()
    cfg.database.path = str(tmp_path / "arena.db")
    return cfg


@pytest_asyncio.fixture
async def test_db(tmp_path) -> ArenaDatabase:
    """Temporary on-disk SQLite database."""
    db = ArenaDatabase(db_path=tmp_path / "test_arena.db")
    await db.connect()
    yield db
    await db.close()


@pytest.fixture
def broadcaster() -> RoomBroadcaster:
    return RoomBroadcaster()


@pytest.fixture
def make_services(
    config: ArenaConfig, test_db: ArenaDatabase, clock: Clock, broadcaster: RoomBroadcaster
) -> Callable[..., Services]:
    """Build services around the shared db/clock with a chosen provider."""

    def _make(provider: LLMProvider | None = None, **overrides: Any) -> Services:
        cfg = config.model_copy(deep=True)
        for section, values in overrides.items():
            current = getattr(cfg, section)
            setattr(cfg, section, current.model_copy(update=values))
        return build_services(cfg, provider, db=test_db, broadcaster=broadcaster, clock=clock)

    return _make


@pytest.fixture
def services(make_services, mock_provider: MockProvider) -> Services:
    return make_services(mock_provider)


@pytest.fixture
def add_user(test_db: ArenaDatabase):
    async def _add(username: str, **kwargs: Any) -> int:
        return await test_db.create_user(UserRecord(username=username, **kwargs))

    return _add


@pytest.fixture
def add_prompt(test_db: ArenaDatabase, clock: Clock):
    async def _add(
        text: str = "Which snack wins a road trip?",
        *,
        minutes: float = 10,
        source: PromptSource = PromptSource.AI,
        category: str = "food",
    ) -> int:
        return await test_db.create_prompt(
            PromptRecord(
                text=text,
                category=category,
                source=source,
                scheduled_for=clock() + timedelta(minutes=minutes),
                created_at=clock(),
            )
        )

    return _add
