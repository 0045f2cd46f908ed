import os
from typing import List

from dotenv import load_dotenv

load_dotenv()

DEFAULT_SYSTEM_PROMPT = (
    "You write multiple-choice distractors for flashcards. "
    "For every flashcard in the JSON array you receive, return exactly three "
    "plausible but incorrect answers that match the style and length of the "
    "real answer. Never repeat the real answer. Keep the order of the input."
)


class Settings:
    """Process configuration read from the environment (and ``.env``)."""

    def __init__(self):
        self.host = os.getenv("HOST", "0.0.0.0")
        self.port = int(os.getenv("PORT", "8000"))
        self.log_level = os.getenv("LOG_LEVEL", "INFO").upper()
        self.cors_origins: List[str] = [
            origin.strip()
            for origin in os.getenv("CORS_ORIGINS", "*").split(",")
            if origin.strip()
        ]

        self.room_code_length = max(3, int(os.getenv("ROOM_CODE_LENGTH", "4")))
        self.countdown_seconds = max(1, int(os.getenv("COUNTDOWN_SECONDS", "3")))
        self.results_seconds = max(1, int(os.getenv("RESULTS_SECONDS", "5")))

        self.openai_api_key = os.getenv("OPENAI_API_KEY", "").strip() or None
        self.openai_api_url = os.getenv(
            "OPENAI_API_URL", "https://api.openai.com/v1/chat/completions"
        ).strip()
        self.distractor_model = os.getenv("DISTRACTOR_MODEL", "gpt-4.1-mini").strip()
        self.distractor_system_prompt = (
            os.getenv("DISTRACTOR_SYSTEM_PROMPT", "").strip() or DEFAULT_SYSTEM_PROMPT
        )
        self.distractor_timeout_seconds = max(
            5, int(os.getenv("DISTRACTOR_TIMEOUT_SECONDS", "60"))
        )


settings = Settings()
