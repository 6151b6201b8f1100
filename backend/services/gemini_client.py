"""
Shared async Gemini text client used by the word provider and the move generator.

Failures surface as ExternalServiceError; callers decide how to degrade.
"""
import json
import logging
import re
from typing import Any, Optional

from google import genai
from google.genai import types

from config import Settings, settings as default_settings
from models.errors import ExternalServiceError

logger = logging.getLogger(__name__)

_FENCE_OPEN = re.compile(r"^```[a-zA-Z]*\n?")
_FENCE_CLOSE = re.compile(r"\n?```$")


def strip_code_fences(raw: str) -> str:
    """Strip optional markdown code fences (```json or ``` with any language tag)."""
    text = raw.strip()
    if text.startswith("```"):
        text = _FENCE_OPEN.sub("", text)
        text = _FENCE_CLOSE.sub("", text.strip())
    return text.strip()


def parse_json_reply(raw: str, service: str) -> Any:
    try:
        return json.loads(strip_code_fences(raw))
    except json.JSONDecodeError as exc:
        raise ExternalServiceError(service, f"unparseable reply {raw[:80]!r}") from exc


class GeminiTextClient:
    """Thin wrapper around genai.Client.aio, one instance per process."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or default_settings
        self._client: Optional[genai.Client] = None

    def _get_client(self, service: str) -> genai.Client:
        if self._client is None:
            if not self.settings.gemini_api_key:
                raise ExternalServiceError(service, "GEMINI_API_KEY not set")
            self._client = genai.Client(api_key=self.settings.gemini_api_key)
        return self._client

    async def generate(
        self,
        prompt: str,
        *,
        model: str,
        service: str,
        system: Optional[str] = None,
        temperature: float = 0.7,
        max_output_tokens: int = 300,
    ) -> str:
        client = self._get_client(service)
        try:
            response = await client.aio.models.generate_content(
                model=model,
                contents=prompt,
                config=types.GenerateContentConfig(
                    system_instruction=system,
                    temperature=temperature,
                    max_output_tokens=max_output_tokens,
                ),
            )
        except Exception as exc:
            logger.error("[%s] Gemini call failed: %s", service, exc)
            raise ExternalServiceError(service, str(exc)) from exc

        text = response.text
        if not text or not text.strip():
            raise ExternalServiceError(service, "empty reply")
        return text.strip()
