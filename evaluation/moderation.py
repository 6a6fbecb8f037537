"""Moderation gate consulted before any live chat message is persisted.

Policy: fail closed. When the collaborator errors the message is refused
with ``MODERATION_UNAVAILABLE`` unless the config explicitly opts into
``on_error: allow``. Enabling moderation on a provider without a
moderation endpoint is refused when the gate is built; with no provider
at all the check raises ``ConfigurationError``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from errors import ConfigurationError
from personas.llm_provider import LLMProvider

logger = logging.getLogger(__name__)

MODERATION_UNAVAILABLE = "moderation unavailable"
MODERATION_FLAGGED = "message flagged by moderation"


@dataclass(frozen=True)
class ModerationVerdict:
    allowed: bool
    reason: str = ""
    categories: dict[str, Any] = field(default_factory=dict)


class ModerationGate:
    """Decides whether a chat message may be stored and broadcast."""

    def __init__(
        self,
        provider: LLMProvider | None,
        *,
        enabled: bool = True,
        on_error: str = "block",
    ) -> None:
        if on_error not in ("block", "allow"):
            raise ValueError(f"on_error must be 'block' or 'allow', got {on_error!r}")
        if enabled and provider is not None and not provider.supports_moderation:
            raise ConfigurationError(
                f"Moderation is enabled but provider {provider.name!r} cannot moderate; "
                "use an openai provider or set moderation.enabled to false"
            )
        self.provider = provider
        self.enabled = enabled
        self.on_error = on_error

    async def check(self, text: str) -> ModerationVerdict:
        if not self.enabled:
            return ModerationVerdict(allowed=True)
        if self.provider is None:
            raise ConfigurationError("Moderation is enabled but no provider is configured")
        try:
            result = await self.provider.moderate(text)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Moderation call failed (%s); policy=%s", exc, self.on_error)
            if self.on_error == "allow":
                return ModerationVerdict(allowed=True, reason=MODERATION_UNAVAILABLE)
            return ModerationVerdict(allowed=False, reason=MODERATION_UNAVAILABLE)
        if not result.allowed:
            return ModerationVerdict(
                allowed=False, reason=MODERATION_FLAGGED, categories=result.categories
            )
        return ModerationVerdict(allowed=True, categories=result.categories)
