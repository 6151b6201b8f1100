"""
Word Provider: supplies the secret word, its category and an imposter hint for a round.

GeminiWordProvider asks the word model for a fresh round as JSON. When the model
is unavailable or replies with junk it falls back to the built-in word bank
(unless settings.word_bank_fallback is off, in which case the failure propagates
and start_game aborts).
"""
import logging
import random
from typing import Any, Dict, List, Optional, Protocol

from config import Settings, settings as default_settings
from models.errors import ExternalServiceError
from models.game import RoundContent
from services.gemini_client import GeminiTextClient, parse_json_reply

logger = logging.getLogger(__name__)


class WordProvider(Protocol):
    async def generate_round(self) -> RoundContent: ...


# ── Fallback word bank (used when LLM generation fails) ───────────────────────
# hint: a loosely related word given to the imposter only
WORD_BANK: List[Dict[str, str]] = [
    {"category": "Food", "word": "Pizza", "hint": "Oven"},
    {"category": "Food", "word": "Sushi", "hint": "Ocean"},
    {"category": "Food", "word": "Pancake", "hint": "Breakfast"},
    {"category": "Animals", "word": "Penguin", "hint": "Ice"},
    {"category": "Animals", "word": "Giraffe", "hint": "Savanna"},
    {"category": "Animals", "word": "Octopus", "hint": "Ink"},
    {"category": "Places", "word": "Airport", "hint": "Suitcase"},
    {"category": "Places", "word": "Library", "hint": "Quiet"},
    {"category": "Places", "word": "Casino", "hint": "Luck"},
    {"category": "Sports", "word": "Tennis", "hint": "Net"},
    {"category": "Sports", "word": "Surfing", "hint": "Board"},
    {"category": "Household", "word": "Toaster", "hint": "Kitchen"},
    {"category": "Household", "word": "Umbrella", "hint": "Weather"},
    {"category": "Music", "word": "Violin", "hint": "Strings"},
    {"category": "Jobs", "word": "Firefighter", "hint": "Ladder"},
    {"category": "Movies", "word": "Titanic", "hint": "Iceberg"},
]

_PROMPT = (
    "You are setting up a round of the party game 'Imposter'. Every player but one "
    "learns a secret word; the imposter only learns the category and a vague hint.\n\n"
    "Pick a well-known, concrete secret word (one or two words) from an everyday "
    "category. The hint must be loosely related to the word without giving it away.\n"
    "{avoid}"
    "Return ONLY valid JSON with no markdown fences:\n"
    '{{"word": "...", "category": "...", "hint": "..."}}'
)


def _validate_round(data: Any) -> RoundContent:
    if not isinstance(data, dict):
        raise ExternalServiceError("word_provider", f"expected an object, got {type(data).__name__}")
    word = str(data.get("word") or "").strip()
    category = str(data.get("category") or "").strip()
    hint = str(data.get("hint") or "").strip() or None
    if not word or not category:
        raise ExternalServiceError("word_provider", f"missing word/category in {data!r}")
    return RoundContent(word=word, category=category, hint=hint)


class WordBankProvider:
    """Picks a random entry from WORD_BANK. Never fails."""

    def __init__(self, bank: Optional[List[Dict[str, str]]] = None):
        self.bank = bank or WORD_BANK

    async def generate_round(self) -> RoundContent:
        return RoundContent(**random.choice(self.bank))


class GeminiWordProvider:

    def __init__(
        self,
        client: GeminiTextClient,
        settings: Optional[Settings] = None,
        fallback: Optional[WordProvider] = None,
    ):
        self.client = client
        self.settings = settings or default_settings
        self.fallback = fallback if fallback is not None else (
            WordBankProvider() if self.settings.word_bank_fallback else None
        )
        # Avoid repeating recent words within this process
        self._recent: List[str] = []

    async def generate_round(self) -> RoundContent:
        avoid = ""
        if self._recent:
            avoid = f"Do NOT use any of these words: {', '.join(self._recent[-10:])}.\n\n"
        try:
            raw = await self.client.generate(
                _PROMPT.format(avoid=avoid),
                model=self.settings.word_model,
                service="word_provider",
                temperature=1.0,
                max_output_tokens=200,
            )
            content = _validate_round(parse_json_reply(raw, "word_provider"))
        except ExternalServiceError as exc:
            if self.fallback is None:
                raise
            logger.warning("[word_provider] %s: using word bank", exc)
            content = await self.fallback.generate_round()

        self._recent.append(content.word)
        logger.info("[word_provider] Round content ready (category=%s)", content.category)
        return content
