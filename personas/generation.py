"""Content-generation collaborator: debate prompts, persona stances and replies.

Persona-facing calls never raise into the caller. A provider error, an
empty completion or the skip sentinel all come back as ``None`` so the
caller can fall back to canned text. Prompt generation returns an empty
list on failure and raises only when no provider is configured at all.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any

from errors import ConfigurationError
from personas.llm_provider import LLMProvider
from personas.registry import SKIP_SENTINEL, PersonaRegistry

logger = logging.getLogger(__name__)

_SKIP_RE = re.compile(r"\[\s*skip\s*\]", re.IGNORECASE)
_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)

_PROMPT_SYSTEM = """\
You generate timely, fun, open-ended debate prompts for casual group chats.
Return ONLY a JSON array of objects {"text": string, "category": string}. No prose, no markdown.
Every prompt must be a question that invites reasoning (Which, Who, How, Why, What, Rank, Defend).
Avoid yes/no phrasing. Keep prompts under about 120 characters, neutral and arguable.
Mix at least three fun prompts (sports, pop culture, food, music, gaming) with at most two
serious ones (tech, politics, ethics, economics, science). Family-friendly; no hate,
harassment or defamation. No emojis, hashtags, dates or spoilers.
"""


@dataclass(frozen=True)
class PromptDraft:
    text: str
    category: str


def _loads_safe(text: str) -> Any:
    try:
        return json.loads(text)
    except (TypeError, ValueError):
        return None


def parse_json_safe(content: str | None, *, expect: type = list) -> Any:
    """Pull a JSON array/object out of *content*, tolerating fences and chatter."""
    text = (content or "").strip()
    candidates = [text]
    fenced = _FENCE_RE.search(text)
    if fenced:
        candidates.append(fenced.group(1).strip())
    open_ch, close_ch = ("[", "]") if expect is list else ("{", "}")
    start, end = text.find(open_ch), text.rfind(close_ch)
    if start != -1 and end > start:
        candidates.append(text[start:end + 1])
    for candidate in candidates:
        parsed = _loads_safe(candidate)
        if isinstance(parsed, expect):
            return parsed
    return None


class ContentGenerator:
    """Wraps an ``LLMProvider`` with the arena's generation prompts.

    Parameters
    ----------
    provider : LLMProvider | None
        Backend used for every call; ``None`` means generation is not configured.
    registry : PersonaRegistry
        Source of persona system prompts.
    """

    def __init__(
        self,
        provider: LLMProvider | None,
        registry: PersonaRegistry | None = None,
        *,
        prompt_model: str | None = None,
        reply_model: str | None = None,
        prompt_temperature: float = 1.05,
        reply_temperature: float = 0.8,
        reply_max_tokens: int = 140,
        stance_max_tokens: int = 20,
    ) -> None:
        self.provider = provider
        self.registry = registry or PersonaRegistry()
        self.prompt_model = prompt_model
        self.reply_model = reply_model
        self.prompt_temperature = prompt_temperature
        self.reply_temperature = reply_temperature
        self.reply_max_tokens = reply_max_tokens
        self.stance_max_tokens = stance_max_tokens

    # ------------------------------------------------------------------
    # Prompts
    # ------------------------------------------------------------------

    async def generate_prompts(
        self, categories: list[str], count: int = 5
    ) -> list[PromptDraft]:
        if self.provider is None:
            raise ConfigurationError("No LLM provider configured for prompt generation")
        user = (
            f"Generate {count} timely, specific, open-ended debate prompts. "
            f"Categories to draw from: {', '.join(categories)}. "
            f'Each item needs a "category" from that list and must read as a question.'
        )
        try:
            resp = await self.provider.generate(
                [
                    {"role": "system", "content": _PROMPT_SYSTEM},
                    {"role": "user", "content": user},
                ],
                model=self.prompt_model,
                temperature=self.prompt_temperature,
                max_tokens=800,
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("Prompt generation failed: %s", exc)
            return []

        items = parse_json_safe(resp.text, expect=list) or []
        drafts: list[PromptDraft] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            text = str(item.get("text") or "").strip()
            if not text:
                continue
            category = str(item.get("category") or "random").strip() or "random"
            drafts.append(PromptDraft(text=text[:200], category=category))
        if not drafts:
            logger.warning("Prompt generation returned no usable prompts")
        return drafts

    # ------------------------------------------------------------------
    # Personas
    # ------------------------------------------------------------------

    async def generate_persona_stance(self, persona_key: str, prompt_text: str) -> str | None:
        """A stance of at most eight words, or None."""
        if self.provider is None:
            return None
        persona = self.registry.get(persona_key)
        system = (
            f"{persona.system_prompt}\n"
            "Your task: reply ONLY with a short take on the prompt (max 8 words). "
            "No reasons, no setup, no emojis, no hashtags. You will defend it later."
        )
        return await self._complete(
            system,
            f"Prompt: {prompt_text}\nRespond with stance only.",
            max_tokens=self.stance_max_tokens,
        )

    async def generate_persona_reply(
        self, persona_key: str, prompt_text: str, transcript: str
    ) -> str | None:
        """A chat reply in the persona's voice, or None on failure or skip."""
        if self.provider is None:
            return None
        persona = self.registry.get(persona_key)
        user = (
            "You are in a chat room; keep the conversation going around each "
            f"participant's take on the prompt.\nPrompt: {prompt_text}\n\n"
            f"Recent chat (oldest first):\n{transcript}\n\n"
            "Respond naturally with your take and defend it."
        )
        return await self._complete(persona.system_prompt, user, max_tokens=self.reply_max_tokens)

    async def _complete(self, system: str, user: str, *, max_tokens: int) -> str | None:
        assert self.provider is not None
        try:
            resp = await self.provider.generate(
                [
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
                model=self.reply_model,
                temperature=self.reply_temperature,
                max_tokens=max_tokens,
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("Persona generation failed: %s", exc)
            return None
        text = resp.text.strip()
        if not text or _SKIP_RE.search(text):
            return None
        return text


__all__ = ["ContentGenerator", "PromptDraft", "SKIP_SENTINEL", "parse_json_safe"]
