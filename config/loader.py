"""Load the YAML configuration into typed pydantic models.

Every section has defaults, so a missing file or a partial file still yields
a complete ``ArenaConfig``. API keys are never read from YAML; the config
only names the environment variable that holds them.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent / "default.yaml"


class DatabaseConfig(BaseModel):
    path: str = "data/arena.db"


class ApiConfig(BaseModel):
    """Which LLM backend to talk to and how patiently."""

    provider: str = "openai"
    model: str | None = None
    api_key_env: str | None = None
    timeout: int = 30
    max_retries: int = 2


class GenerationConfig(BaseModel):
    prompt_model: str | None = None
    reply_model: str | None = None
    grading_model: str | None = None
    prompt_temperature: float = 1.05
    reply_temperature: float = 0.8
    reply_max_tokens: int = 140
    stance_max_tokens: int = 20
    llm_tags: bool = False
    categories: list[str] = Field(
        default_factory=lambda: [
            "sports", "pop_culture", "tv_film", "music", "gaming", "food",
            "internet_trends", "tech", "politics", "ethics", "economics",
            "science", "society", "humor", "random",
        ]
    )


class PoolConfig(BaseModel):
    target: int = 5
    spacing_sec: int = 600
    jitter_sec: int = 0
    lock_ttl_sec: float = 5.0
    max_attempts: int = 3


class TriadConfig(BaseModel):
    duration_sec: int = 600
    kickoff_cooldown_sec: float = 20.0


class RepliesConfig(BaseModel):
    cooldown_sec: float = 1.5
    lease_ttl_sec: float = 20.0
    transcript_messages: int = 80
    transcript_chars: int = 4000


class RewardsConfig(BaseModel):
    win_tokens: int = 30
    participation_tokens: int = 10
    prompt_cost_tokens: int = 10
    user_prompt_minutes: int = 10


class ModerationConfig(BaseModel):
    enabled: bool = True
    # "block" rejects messages the collaborator could not check
    on_error: str = "block"


class BroadcastConfig(BaseModel):
    relay_url: str | None = None
    timeout: float = 5.0


class LoggingConfig(BaseModel):
    level: str = "INFO"


class ArenaConfig(BaseModel):
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)
    generation: GenerationConfig = Field(default_factory=GenerationConfig)
    pool: PoolConfig = Field(default_factory=PoolConfig)
    triads: TriadConfig = Field(default_factory=TriadConfig)
    replies: RepliesConfig = Field(default_factory=RepliesConfig)
    rewards: RewardsConfig = Field(default_factory=RewardsConfig)
    moderation: ModerationConfig = Field(default_factory=ModerationConfig)
    broadcast: BroadcastConfig = Field(default_factory=BroadcastConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_config(path: str | Path | None = None) -> ArenaConfig:
    """Read *path* (or the bundled default) and validate it.

    A missing file is not an error: the defaults are returned and a warning
    is logged.
    """
    p = Path(path) if path else DEFAULT_CONFIG_PATH
    if not p.exists():
        logger.warning("Config not found: %s. Using defaults.", p)
        return ArenaConfig()
    with open(p, encoding="utf-8") as f:
        raw: dict[str, Any] = yaml.safe_load(f) or {}
    return ArenaConfig.model_validate(raw)
