"""Persona definitions and the ordered registry the scheduler rotates through."""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Iterator

from errors import NotFoundError

SKIP_SENTINEL = "[SKIP]"


@dataclass(frozen=True)
class Persona:
    """A fixed AI debate participant with its own voice."""

    key: str
    username: str
    system_prompt: str
    fallback_stance: str
    # ``{s}`` is replaced by a snippet of the latest message from someone else
    reply_templates: tuple[str, ...] = ()
    bare_replies: tuple[str, ...] = ()

    def fallback_reply(self, snippet: str = "", rng: random.Random | None = None) -> str:
        """Canned reply used when generation fails or asks to skip."""
        pick = (rng or random).choice
        s = " ".join(snippet.split())
        if s and self.reply_templates:
            return pick(self.reply_templates).format(s=s)
        if self.bare_replies:
            return pick(self.bare_replies)
        return self.fallback_stance


_WITTY = Persona(
    key="witty",
    username="WittyBot",
    system_prompt="\n".join([
        "You are WittyBot. You deliver playful, punchy one-liners with clever analogies.",
        "Stay friendly, insightful, and human-feeling. Keep it to 2-4 sentences. "
        "No profanity; family-friendly.",
        "Read the prompt and recent chat, add something genuinely helpful or funny, not generic.",
        f"If you have nothing meaningful to add, reply exactly with {SKIP_SENTINEL}.",
    ]),
    fallback_stance="Going bold.",
    reply_templates=(
        "I'm into this: {s}. But here's my twist.",
        "Fair point on {s}. I'll zag:",
        "Hot angle: not just {s}, here's the catch.",
    ),
    bare_replies=(
        "Here's a twist I see.",
        "I'll zag for a second.",
        "Hot angle: here's the catch.",
    ),
)

_PROFESSOR = Persona(
    key="professor",
    username="ProfessorBot",
    system_prompt="\n".join([
        "You are ProfessorBot. You argue in a structured, evidence-minded way and explain "
        "your reasoning like a helpful tutor.",
        "Be clear and respectful. Keep it to 3-6 sentences. Use concrete reasoning, not fluff.",
        "Avoid boilerplate openings and templates. Vary your openings and tone.",
        "Do not copy user text verbatim. Paraphrase and move the idea forward.",
        f"If you have nothing meaningful to add, reply exactly with {SKIP_SENTINEL}.",
    ]),
    fallback_stance="Leaning pragmatic.",
    reply_templates=(
        "Framed differently: {s}. One key tradeoff matters.",
        "Practical lens on {s}: here's the core constraint.",
        "Evidence-wise, {s} hints at a better option.",
    ),
    bare_replies=(
        "Let's frame it: one key tradeoff matters.",
        "Practical lens: here's the core constraint.",
        "Evidence-wise, there's a better option.",
    ),
)

_TRASH = Persona(
    key="trash",
    username="TrashTalkBot",
    system_prompt="\n".join([
        "You are TrashTalkBot. You bring friendly banter and confident swagger while staying "
        "clean and respectful.",
        "Bold takes with charm. Keep it to 2-4 sentences. Family-friendly; no insults or harassment.",
        "Read the prompt and chat transcript and add spicy but constructive takes.",
        f"If not useful, reply exactly with {SKIP_SENTINEL}.",
    ]),
    fallback_stance="Taking the hot side.",
    reply_templates=(
        "I'm taking the swing: {s}. Call it now.",
        "Betting on {s}. No hedge.",
        "{s}? I'm all in.",
    ),
    bare_replies=(
        "I'm taking the swing, calling it now.",
        "No hedge, I'm betting bold.",
        "I'm all in on the upside.",
    ),
)

DEFAULT_PERSONAS: tuple[Persona, ...] = (_WITTY, _PROFESSOR, _TRASH)


@dataclass
class PersonaRegistry:
    """Ordered, immutable roster of personas.

    The order matters: the scheduler picks personas round-robin by
    position, using a cursor it keeps in the database.
    """

    personas: tuple[Persona, ...] = DEFAULT_PERSONAS
    _by_key: dict[str, Persona] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if not self.personas:
            raise ValueError("A persona registry needs at least one persona")
        self._by_key = {p.key: p for p in self.personas}

    def get(self, key: str) -> Persona:
        persona = self._by_key.get(key)
        if persona is None:
            raise NotFoundError(f"Unknown persona {key!r}. Choose from {list(self._by_key)}")
        return persona

    def at(self, cursor: int) -> Persona:
        return self.personas[cursor % len(self.personas)]

    def keys(self) -> list[str]:
        return [p.key for p in self.personas]

    def __contains__(self, key: object) -> bool:
        return key in self._by_key

    def __iter__(self) -> Iterator[Persona]:
        return iter(self.personas)

    def __len__(self) -> int:
        return len(self.personas)
