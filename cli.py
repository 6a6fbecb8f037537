#!/usr/bin/env python3
"""Command-line interface for the debate arena scheduling engine.

Usage examples:
    python cli.py sweep
    python cli.py add-user alice
    python cli.py respond 3 1 "Pineapple belongs on pizza"
    python cli.py say 7 1 "Sweetness balances the salt."
    python cli.py leaderboard --limit 10
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

import click

from chat.broadcast import Broadcaster, HttpRelayBroadcaster, RoomBroadcaster
from chat.replies import PersonaReplyCoordinator
from chat.rooms import RoomService
from config import ArenaConfig, load_config
from data.database import ArenaDatabase
from data.models import UserRecord, utcnow
from errors import ArenaError, ConfigurationError
from evaluation import (
    MessageAnalyzer,
    ModerationGate,
    TokenLedger,
    TranscriptGrader,
    TriadLifecycleEvaluator,
)
from personas import ContentGenerator, LLMProvider, PersonaRegistry, create_provider
from scheduling import (
    BackgroundTasks,
    PromptPoolManager,
    ResponseCollector,
    SweepRunner,
    TriadScheduler,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _build_provider(cfg: ArenaConfig) -> LLMProvider | None:
    """Provider from config, or None when its credentials are missing."""
    kwargs: dict[str, Any] = {
        "timeout": cfg.api.timeout,
        "max_retries": cfg.api.max_retries,
    }
    if cfg.api.api_key_env:
        kwargs["api_key_env"] = cfg.api.api_key_env
    if cfg.api.model:
        kwargs["model"] = cfg.api.model
    try:
        return create_provider(cfg.api.provider, **kwargs)
    except ConfigurationError as exc:
        logger.warning("LLM provider unavailable: %s", exc)
        return None


@dataclass
class Services:
    """Everything a command needs, wired from one config."""

    db: ArenaDatabase
    broadcaster: Broadcaster
    tasks: BackgroundTasks
    ledger: TokenLedger
    collector: ResponseCollector
    rooms: RoomService
    pool: PromptPoolManager
    scheduler: TriadScheduler
    evaluator: TriadLifecycleEvaluator
    sweep: SweepRunner


def build_services(
    cfg: ArenaConfig,
    provider: LLMProvider | None = None,
    *,
    db: ArenaDatabase | None = None,
    broadcaster: Broadcaster | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> Services:
    db = db or ArenaDatabase(cfg.database.path)
    if broadcaster is None:
        if cfg.broadcast.relay_url:
            broadcaster = HttpRelayBroadcaster(cfg.broadcast.relay_url, timeout=cfg.broadcast.timeout)
        else:
            broadcaster = RoomBroadcaster()
    gen = cfg.generation
    registry = PersonaRegistry()
    generator = ContentGenerator(
        provider,
        registry,
        prompt_model=gen.prompt_model,
        reply_model=gen.reply_model,
        prompt_temperature=gen.prompt_temperature,
        reply_temperature=gen.reply_temperature,
        reply_max_tokens=gen.reply_max_tokens,
        stance_max_tokens=gen.stance_max_tokens,
    )
    analyzer = MessageAnalyzer(provider, llm_tags=gen.llm_tags, model=gen.reply_model)
    tasks = BackgroundTasks()
    ledger = TokenLedger(db, clock=clock)
    replies = PersonaReplyCoordinator(
        db,
        generator,
        analyzer,
        registry=registry,
        broadcaster=broadcaster,
        clock=clock,
        cooldown_sec=cfg.replies.cooldown_sec,
        lease_ttl_sec=cfg.replies.lease_ttl_sec,
        transcript_messages=cfg.replies.transcript_messages,
        transcript_chars=cfg.replies.transcript_chars,
    )
    collector = ResponseCollector(
        db,
        ledger,
        generator,
        registry=registry,
        clock=clock,
        prompt_cost_tokens=cfg.rewards.prompt_cost_tokens,
        user_prompt_minutes=cfg.rewards.user_prompt_minutes,
    )
    rooms = RoomService(
        db,
        analyzer,
        ModerationGate(
            provider, enabled=cfg.moderation.enabled, on_error=cfg.moderation.on_error
        ),
        replies=replies,
        broadcaster=broadcaster,
        tasks=tasks,
        clock=clock,
    )
    pool = PromptPoolManager(
        db,
        generator,
        categories=gen.categories,
        clock=clock,
        spacing_sec=cfg.pool.spacing_sec,
        jitter_sec=cfg.pool.jitter_sec,
        lock_ttl_sec=cfg.pool.lock_ttl_sec,
        max_attempts=cfg.pool.max_attempts,
    )
    scheduler = TriadScheduler(
        db,
        collector,
        generator,
        analyzer,
        registry=registry,
        replies=replies,
        tasks=tasks,
        clock=clock,
        duration_sec=cfg.triads.duration_sec,
        kickoff_cooldown_sec=cfg.triads.kickoff_cooldown_sec,
    )
    evaluator = TriadLifecycleEvaluator(
        db,
        TranscriptGrader(provider, model=gen.grading_model),
        ledger,
        broadcaster=broadcaster,
        clock=clock,
        win_tokens=cfg.rewards.win_tokens,
        participation_tokens=cfg.rewards.participation_tokens,
    )
    return Services(
        db=db,
        broadcaster=broadcaster,
        tasks=tasks,
        ledger=ledger,
        collector=collector,
        rooms=rooms,
        pool=pool,
        scheduler=scheduler,
        evaluator=evaluator,
        sweep=SweepRunner(pool, scheduler, evaluator, pool_target=cfg.pool.target),
    )


def _run(ctx: click.Context, action: Callable[[Services], Awaitable[Any]]) -> Any:
    """Connect, run *action*, wait for background replies, close."""
    cfg: ArenaConfig = ctx.obj["config"]

    async def _main() -> Any:
        services = build_services(cfg, _build_provider(cfg))
        await services.db.connect()
        try:
            return await action(services)
        finally:
            await services.tasks.drain()
            if isinstance(services.broadcaster, HttpRelayBroadcaster):
                await services.broadcaster.aclose()
            await services.db.close()

    try:
        return asyncio.run(_main())
    except ArenaError as exc:
        raise click.ClickException(str(exc)) from exc


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

@click.group()
@click.option("--config", "config_path", default=None, help="Path to YAML config")
@click.option("--log-level", default=None, help="Logging level (overrides config)")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, log_level: str | None) -> None:
    """Debate Arena – prompt pool, triad scheduling and settlement."""
    cfg = load_config(config_path)
    _setup_logging(log_level or cfg.logging.level)
    ctx.ensure_object(dict)
    ctx.obj["config"] = cfg


# ---- engine ---------------------------------------------------------------

@cli.command()
@click.pass_context
def sweep(ctx: click.Context) -> None:
    """Top up the pool, schedule due prompts and settle expired triads."""
    result = _run(ctx, lambda s: s.sweep.run())
    _echo_json(result.to_dict())
    if not result.ok:
        ctx.exit(1)


@cli.command("ensure-pool")
@click.option("--target", default=None, type=int, help="Open prompts to keep")
@click.pass_context
def ensure_pool(ctx: click.Context, target: int | None) -> None:
    """Generate prompts until the open pool reaches its target."""
    goal = target or ctx.obj["config"].pool.target
    result = _run(ctx, lambda s: s.pool.ensure_pool_target(goal))
    _echo_json(result.to_dict())


@cli.command()
@click.pass_context
def schedule(ctx: click.Context) -> None:
    """Claim due prompts and create their triads."""
    result = _run(ctx, lambda s: s.scheduler.schedule_due_prompts())
    _echo_json(result.to_dict())


@cli.command("schedule-leftovers")
@click.argument("prompt_id", type=int)
@click.pass_context
def schedule_leftovers(ctx: click.Context, prompt_id: int) -> None:
    """Place users left without a triad on an already claimed prompt."""
    result = _run(ctx, lambda s: s.scheduler.schedule_leftovers(prompt_id))
    _echo_json(result.to_dict())


@cli.command()
@click.pass_context
def evaluate(ctx: click.Context) -> None:
    """Grade and settle triads past their time window."""
    result = _run(ctx, lambda s: s.evaluator.evaluate_expired_triads())
    _echo_json(result.to_dict())


# ---- users and prompts ----------------------------------------------------

@cli.command("add-user")
@click.argument("username")
@click.option("--admin", is_flag=True, help="Grant admin rights")
@click.pass_context
def add_user(ctx: click.Context, username: str, admin: bool) -> None:
    """Create a human user."""
    user_id = _run(
        ctx, lambda s: s.db.create_user(UserRecord(username=username, is_admin=admin))
    )
    click.echo(f"Created user #{user_id} ({username})")


@cli.command()
@click.argument("prompt_id", type=int)
@click.argument("user_id", type=int)
@click.argument("text")
@click.pass_context
def respond(ctx: click.Context, prompt_id: int, user_id: int, text: str) -> None:
    """Submit USER_ID's take on PROMPT_ID."""
    record = _run(ctx, lambda s: s.collector.submit_response(prompt_id, user_id, text))
    click.echo(f"Response #{record.id} recorded")


@cli.command("assign-bot")
@click.argument("prompt_id", type=int)
@click.argument("user_id", type=int)
@click.argument("persona")
@click.pass_context
def assign_bot(ctx: click.Context, prompt_id: int, user_id: int, persona: str) -> None:
    """Attach PERSONA (witty, professor, trash) to PROMPT_ID for USER_ID."""
    record = _run(ctx, lambda s: s.collector.assign_bot(prompt_id, user_id, persona))
    click.echo(f"{persona}: {record.text}")


@cli.command("submit-prompt")
@click.argument("user_id", type=int)
@click.argument("text")
@click.option("--minutes", default=None, type=int, help="Minutes until the deadline")
@click.pass_context
def submit_prompt(ctx: click.Context, user_id: int, text: str, minutes: int | None) -> None:
    """Spend tokens to put USER_ID's own prompt up for debate."""
    prompt = _run(ctx, lambda s: s.collector.submit_user_prompt(user_id, text, minutes))
    click.echo(f"Prompt #{prompt.id} closes at {prompt.scheduled_for.isoformat()}")


@cli.command("admin-prompt")
@click.argument("text")
@click.option("--category", default="random", help="Prompt category")
@click.option("--minutes", default=10, type=int, help="Minutes until the deadline")
@click.option("--admin-id", default=None, type=int, help="Authoring admin user id")
@click.pass_context
def admin_prompt(
    ctx: click.Context, text: str, category: str, minutes: int, admin_id: int | None
) -> None:
    """Post an admin prompt."""
    prompt = _run(
        ctx, lambda s: s.collector.post_admin_prompt(admin_id, text, category, minutes)
    )
    click.echo(f"Prompt #{prompt.id} closes at {prompt.scheduled_for.isoformat()}")


@cli.command()
@click.argument("prompt_id", type=int)
@click.option("--minutes", required=True, type=int, help="New deadline, minutes from now")
@click.pass_context
def reschedule(ctx: click.Context, prompt_id: int, minutes: int) -> None:
    """Move an open prompt's deadline."""
    when = utcnow() + timedelta(minutes=minutes)
    prompt = _run(ctx, lambda s: s.collector.reschedule_prompt(prompt_id, when))
    click.echo(f"Prompt #{prompt.id} now closes at {prompt.scheduled_for.isoformat()}")


@cli.command("list-prompts")
@click.option("--limit", default=20, type=int, help="Number of prompts to list")
@click.pass_context
def list_prompts(ctx: click.Context, limit: int) -> None:
    """List open prompts, soonest deadline first."""
    prompts = _run(ctx, lambda s: s.db.list_open_prompts(utcnow(), limit=limit))
    if not prompts:
        click.echo("No open prompts.")
        return
    click.echo(f"{'ID':>5}  {'Source':<6} {'Closes (UTC)':<20} {'Prompt'}")
    click.echo(f"{'─' * 5}  {'─' * 6} {'─' * 20} {'─' * 40}")
    for p in prompts:
        closes = p.scheduled_for.strftime("%Y-%m-%d %H:%M:%S")
        click.echo(f"{p.id:>5}  {p.source.value:<6} {closes:<20} {p.text[:60]}")


# ---- rooms and triads -----------------------------------------------------

@cli.command("list-triads")
@click.argument("prompt_id", type=int)
@click.pass_context
def list_triads(ctx: click.Context, prompt_id: int) -> None:
    """List the triads created for PROMPT_ID."""
    triads = _run(ctx, lambda s: s.db.list_triads_for_prompt(prompt_id))
    if not triads:
        click.echo("No triads found.")
        return
    click.echo(f"{'ID':>5}  {'Room':>5}  {'Status':<9} {'Score':>5}  {'Win':<3}  Participants")
    for t in triads:
        click.echo(
            f"{t.id:>5}  {t.room_id:>5}  {t.status.value:<9} {t.score:>5}  "
            f"{'yes' if t.is_winner else '':<3}  {t.participants}"
        )


@cli.command()
@click.argument("room_id", type=int)
@click.argument("user_id", type=int)
@click.argument("text")
@click.pass_context
def say(ctx: click.Context, room_id: int, user_id: int, text: str) -> None:
    """Post a chat message to ROOM_ID as USER_ID."""
    message = _run(ctx, lambda s: s.rooms.post_message(room_id, user_id, text))
    click.echo(f"Message #{message.id} posted (tags: {', '.join(message.tags) or '-'})")


@cli.command()
@click.argument("room_id", type=int)
@click.option("--limit", default=50, type=int, help="Number of messages to show")
@click.pass_context
def messages(ctx: click.Context, room_id: int, limit: int) -> None:
    """Show a room's message history."""
    history = _run(ctx, lambda s: s.rooms.list_messages(room_id, limit=limit))
    for m in history:
        sender = "system" if m.sender_id is None else f"#{m.sender_id}"
        click.echo(f"[{m.created_at.strftime('%H:%M:%S')}] {sender}: {m.content}")


@cli.command()
@click.argument("triad_id", type=int)
@click.pass_context
def intro(ctx: click.Context, triad_id: int) -> None:
    """Show every participant's opening take for TRIAD_ID."""
    entries = _run(ctx, lambda s: s.rooms.triad_intro(triad_id))
    for e in entries:
        tag = " (bot)" if e["is_bot"] else ""
        click.echo(f"{e['username']}{tag}: {e['text']}")


# ---- tokens ---------------------------------------------------------------

@cli.command()
@click.argument("user_id", type=int)
@click.pass_context
def balance(ctx: click.Context, user_id: int) -> None:
    """Show USER_ID's token balance."""
    amount = _run(ctx, lambda s: s.ledger.balance(user_id))
    click.echo(f"User #{user_id}: {amount} tokens")


@cli.command()
@click.option("--limit", default=20, type=int, help="Number of users to show")
@click.pass_context
def leaderboard(ctx: click.Context, limit: int) -> None:
    """Top human balances."""
    rows = _run(ctx, lambda s: s.ledger.leaderboard(limit))
    if not rows:
        click.echo("No balances yet.")
        return
    for rank, row in enumerate(rows, start=1):
        click.echo(f"{rank:>3}. {row['username']:<20} {row['balance']:>6}")


@cli.command()
@click.argument("user_id", type=int)
@click.argument("amount", type=int)
@click.option("--reason", default="", help="Why the balance is being adjusted")
@click.pass_context
def adjust(ctx: click.Context, user_id: int, amount: int, reason: str) -> None:
    """Add (or with a negative AMOUNT, remove) tokens by hand."""
    _run(ctx, lambda s: s.ledger.adjust(user_id, amount, reason))
    click.echo(f"Adjusted user #{user_id} by {amount:+d}")


# ---------------------------------------------------------------------------

if __name__ == "__main__":
    cli()
