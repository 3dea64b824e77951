"""Client for the external AI text generation service (OpenAI chat completions)."""
import logging
import os
from typing import Optional

import httpx
from dotenv import load_dotenv

from readlog.errors import AIServiceUnavailable

load_dotenv()
logger = logging.getLogger("readlog.ai")

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")

DEFAULT_PREFERENCES = {
    "language": "cs",
    "style": "academic",
    "length": "medium",
}

MAX_TOKENS = {"short": 800, "medium": 1200, "long": 2000}


def build_author_prompt(author: str, preferences: dict) -> str:
    language = "Czech" if preferences["language"] == "cs" else "English"
    return (
        f"Write a {preferences['length']} {preferences['style']} summary of the author {author}: "
        f"their life, major works and literary significance. Answer in {language}."
    )


class AuthorSummaryClient:
    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None,
                 base_url: Optional[str] = None, timeout: float = 60.0):
        self.api_key = api_key if api_key is not None else OPENAI_API_KEY
        self.model = model or OPENAI_MODEL
        self.base_url = (base_url or OPENAI_BASE_URL).rstrip("/")
        self.timeout = timeout

    def generate(self, author: str, preferences: Optional[dict] = None) -> str:
        if not self.api_key:
            raise AIServiceUnavailable("OPENAI_API_KEY is not configured.")
        preferences = {**DEFAULT_PREFERENCES, **(preferences or {})}
        creative = preferences["style"] == "creative"
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": "You are a literary expert writing concise author profiles."},
                {"role": "user", "content": build_author_prompt(author, preferences)},
            ],
            "temperature": 0.8 if creative else 0.3,
            "max_tokens": MAX_TOKENS.get(preferences["length"], MAX_TOKENS["medium"]),
        }
        try:
            response = httpx.post(
                f"{self.base_url}/chat/completions",
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
            response.raise_for_status()
            return response.json()["choices"][0]["message"]["content"].strip()
        except httpx.HTTPStatusError as e:
            logger.error(f"AI generation failed with status {e.response.status_code}")
            raise AIServiceUnavailable() from e
        except (httpx.HTTPError, KeyError, IndexError, ValueError) as e:
            logger.error(f"AI generation failed: {e}")
            raise AIServiceUnavailable() from e


def get_summary_client() -> AuthorSummaryClient:
    return AuthorSummaryClient()
