import json
import logging
import math
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp

from cardclash.config import settings

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], Awaitable[None]]

DISTRACTOR_RESPONSE_FORMAT = {
    "type": "json_schema",
    "json_schema": {
        "name": "distractor_set",
        "schema": {
            "type": "object",
            "properties": {
                "distractors": {
                    "type": "array",
                    "items": {
                        "type": "array",
                        "items": {"type": "string"},
                        "minItems": 3,
                        "maxItems": 3,
                    },
                }
            },
            "required": ["distractors"],
            "additionalProperties": False,
        },
    },
}


class DistractorGenerationError(Exception):
    """The distractor service could not produce a usable answer."""


def batch_size_for(card_count: int) -> int:
    """Large decks are split into two or three requests."""
    if 100 < card_count <= 150:
        return math.ceil(card_count / 3)
    if 50 < card_count <= 100:
        return math.ceil(card_count / 2)
    return max(1, card_count)


class DistractorGenerator:
    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        system_prompt: Optional[str] = None,
        timeout_seconds: Optional[int] = None,
    ):
        self.api_key = api_key or settings.openai_api_key
        self.model = model or settings.distractor_model
        self.base_url = base_url or settings.openai_api_url
        self.system_prompt = system_prompt or settings.distractor_system_prompt
        self.timeout_seconds = timeout_seconds or settings.distractor_timeout_seconds

    async def generate(
        self, cards: List[Dict[str, str]], on_progress: Optional[ProgressCallback] = None
    ) -> List[Any]:
        """Return one list of three distractors per card, in input order."""
        if not self.api_key:
            raise DistractorGenerationError("OpenAI API key not configured")
        if not cards:
            return []

        batch_size = batch_size_for(len(cards))
        batch_count = math.ceil(len(cards) / batch_size)
        all_distractors: List[Any] = []

        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            for index, start in enumerate(range(0, len(cards), batch_size), start=1):
                batch = cards[start:start + batch_size]
                if on_progress is not None:
                    await on_progress(index, batch_count)
                distractors = await self._generate_batch(session, batch)
                if len(distractors) != len(batch):
                    # Entries can't be matched to cards; leave the whole batch unset.
                    logger.warning(
                        "Expected %d distractor sets in batch %d/%d, got %d",
                        len(batch), index, batch_count, len(distractors)
                    )
                    distractors = [None] * len(batch)
                all_distractors.extend(distractors)

        return all_distractors

    async def _generate_batch(self, session: aiohttp.ClientSession, batch: List[Dict[str, str]]) -> List[Any]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json"
        }
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": self.system_prompt},
                {"role": "user", "content": json.dumps(batch)}
            ],
            "response_format": DISTRACTOR_RESPONSE_FORMAT,
        }

        async with session.post(self.base_url, headers=headers, json=payload) as response:
            if response.status != 200:
                body = await response.text()
                logger.warning("Distractor API error %s: %s", response.status, body[:200])
                raise DistractorGenerationError(f"Distractor API returned {response.status}")
            data = await response.json()

        try:
            content = data["choices"][0]["message"]["content"]
            parsed = json.loads(content)
            distractors = parsed["distractors"]
        except (KeyError, IndexError, TypeError, json.JSONDecodeError) as e:
            raise DistractorGenerationError("Failed to parse distractor response") from e

        if not isinstance(distractors, list):
            raise DistractorGenerationError("Distractor response is not a list")
        return distractors


# Global instance
distractor_generator = DistractorGenerator()


async def generate_distractors(
    cards: List[Dict[str, str]], on_progress: Optional[ProgressCallback] = None
) -> List[Any]:
    """Convenience function used by the distractor coordinator."""
    return await distractor_generator.generate(cards, on_progress=on_progress)
