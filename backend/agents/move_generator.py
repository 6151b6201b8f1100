"""
Move Generator: LLM-powered decisions for automated players.

Uses the move model (text-only) for:
  1. Clues         : one short word that fits the secret word (or bluffs it, for the imposter)
  2. Action choice : give a clue, or call a meeting because someone looks suspicious
  3. Votes         : pick who to eject during a meeting

All methods are stateless; everything a bot may know arrives in the MoveContext.
Every failure is raised as ExternalServiceError so the engines can fall back.
"""
import logging
import re
from typing import List, Optional, Protocol

from config import Settings, settings as default_settings
from models.errors import ExternalServiceError
from models.game import MoveContext, MoveDecision, MoveDecisionKind, VoteCandidate
from services.gemini_client import GeminiTextClient, parse_json_reply

logger = logging.getLogger(__name__)


class MoveGenerator(Protocol):
    async def generate_clue(self, context: MoveContext) -> str: ...

    async def decide_action(self, context: MoveContext) -> MoveDecision: ...

    async def decide_vote(self, context: MoveContext, candidates: List[VoteCandidate]) -> Optional[str]: ...


# ── Role-specific prompt fragments ────────────────────────────────────────────

_CIVILIAN = (
    "You know the secret word: {word}.\n"
    "Give clues that prove to the others you know it, without making it so obvious "
    "that the imposter can guess it."
)

_IMPOSTER = (
    "You are the IMPOSTER. You do NOT know the secret word; you only know the category"
    "{hint_line}.\n"
    "Read the other clues, infer what the word probably is, and blend in. Never admit "
    "you are the imposter."
)

_BASE_SYSTEM = """You are {name}, a player in the party game "Imposter" played in a group chat.

Category: {category}
{role}

ABSOLUTE RULES:
- Stay in character as a regular player. Never mention being an AI.
- A clue is ONE word. Never repeat a clue that was already used.

CURRENT GAME STATE:
{game_state}"""


def _format_state(ctx: MoveContext) -> str:
    lines = "\n".join(
        f'  {c.player_name}: "{c.content}"'
        for c in ctx.recent_clues
    ) or "  (no clues yet)"
    used = ", ".join(sorted(ctx.used_moves)) or "(none)"
    return (
        f"Round: {ctx.round}\n"
        f"Recent clues:\n{lines}\n"
        f"Already used (forbidden): {used}"
    )


def _build_system(ctx: MoveContext) -> str:
    if ctx.is_imposter:
        role = _IMPOSTER.format(hint_line=f' and a hint: "{ctx.hint}"' if ctx.hint else "")
    else:
        role = _CIVILIAN.format(word=ctx.word)
    return _BASE_SYSTEM.format(
        name=ctx.player_name,
        category=ctx.category,
        role=role,
        game_state=_format_state(ctx),
    )


_WORD = re.compile(r"[^\W_][\w'-]*", re.UNICODE)


def extract_clue(response: str) -> Optional[str]:
    """First word-like token of a free-text reply, or None."""
    match = _WORD.search(response.strip().strip('"'))
    return match.group(0) if match else None


def parse_candidate(response: str, candidates: List[VoteCandidate]) -> Optional[str]:
    """Return the id of the first candidate whose name appears in a free-text reply."""
    cleaned = response.strip().rstrip(".").lower()
    # Longest names first so "Bot 10" is not read as "Bot 1"
    for c in sorted(candidates, key=lambda c: len(c.name), reverse=True):
        if c.name.lower() in cleaned:
            return c.id
    return None


class GeminiMoveGenerator:

    def __init__(self, client: GeminiTextClient, settings: Optional[Settings] = None):
        self.client = client
        self.settings = settings or default_settings

    async def _ask(self, ctx: MoveContext, prompt: str, service: str, temperature: float = 0.8) -> str:
        return await self.client.generate(
            prompt,
            model=self.settings.move_model,
            service=service,
            system=_build_system(ctx),
            temperature=temperature,
        )

    async def generate_clue(self, context: MoveContext) -> str:
        prompt = (
            "It is your turn. Reply with ONLY your one-word clue "
            "(no punctuation, no explanation)."
        )
        response = await self._ask(context, prompt, "move_generator.clue")
        clue = extract_clue(response)
        if not clue:
            raise ExternalServiceError("move_generator.clue", f"no clue in {response[:80]!r}")
        logger.info("[move_generator] %s clue: %s", context.player_name, clue)
        return clue

    async def decide_action(self, context: MoveContext) -> MoveDecision:
        meeting_line = (
            f"You may call a meeting ({context.meetings_left} left) if one clue looks "
            "clearly off, but only do so when you are fairly sure."
            if context.meetings_left > 0 and context.recent_clues
            else "You cannot call a meeting right now; give a clue."
        )
        prompt = (
            f"It is your turn. {meeting_line}\n\n"
            "Return ONLY valid JSON with no markdown fences, either\n"
            '{"action": "clue", "clue": "<one word>"}\n'
            "or\n"
            '{"action": "vote", "reason": "<one sentence>"}'
        )
        response = await self._ask(context, prompt, "move_generator.action")
        data = parse_json_reply(response, "move_generator.action")
        if not isinstance(data, dict):
            raise ExternalServiceError("move_generator.action", f"expected an object, got {data!r}")

        action = str(data.get("action", "")).lower()
        if action == "vote":
            reason = str(data.get("reason") or "Something does not add up.")
            logger.info("[move_generator] %s wants a meeting: %s", context.player_name, reason)
            return MoveDecision(kind=MoveDecisionKind.VOTE_INTENT, reason=reason)
        if action == "clue":
            clue = extract_clue(str(data.get("clue") or ""))
            if clue:
                return MoveDecision(kind=MoveDecisionKind.CLUE, text=clue)
        raise ExternalServiceError("move_generator.action", f"unusable decision {data!r}")

    async def decide_vote(self, context: MoveContext, candidates: List[VoteCandidate]) -> Optional[str]:
        if not candidates:
            return None
        names = ", ".join(c.name for c in candidates)
        strategy = (
            "Vote for someone else to deflect suspicion, toward whoever the others seem to suspect."
            if context.is_imposter
            else "Vote for the player whose clues fit the secret word least."
        )
        prompt = (
            f"A MEETING has been called. Vote to eject the imposter.\n"
            f"Options: {names}\n\n"
            f"Strategy: {strategy} Never vote for yourself.\n\n"
            f"Reply with ONLY the player name you vote to eject."
        )
        response = await self._ask(context, prompt, "move_generator.vote", temperature=0.6)
        target = parse_candidate(response, candidates)
        if target is None:
            logger.warning(
                "[move_generator] %s vote reply did not name a candidate: %r",
                context.player_name, response[:80],
            )
        return target
