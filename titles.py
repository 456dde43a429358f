"""Session title generation from the first user message."""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Protocol

from utils import log

if TYPE_CHECKING:
    from google.genai import Client as GenAIClient

MAX_TITLE_CHARS = 20

TITLE_PROMPT = """You generate short conversation titles.
Given the user's first message, reply with a concise title that:
1. is at most {limit} characters long
2. captures the user's main intent or question
3. uses the same language as the message
4. has no punctuation and no quotes
Reply with the title only.

MESSAGE: {message}"""


class Titler(Protocol):
    def generate_title(self, text: str) -> str: ...


def truncate_title(text: str, limit: int = MAX_TITLE_CHARS) -> str:
    """First line of the message, cut to ``limit`` characters."""
    line = text.strip().splitlines()[0] if text.strip() else ""
    return line[:limit].strip()


class TruncatingTitler:
    """Offline titler: the start of the message is the title."""

    def __init__(self, limit: int = MAX_TITLE_CHARS):
        self.limit = limit

    def generate_title(self, text: str) -> str:
        return truncate_title(text, self.limit)


class GeminiTitler:
    """Titles from Google Gemini, falling back to truncation on any failure."""

    def __init__(self, api_key: str, model: str = "gemini-2.5-flash", limit: int = MAX_TITLE_CHARS):
        self.api_key = api_key
        self.model = model
        self.limit = limit
        self._client: GenAIClient | None = None
        self._lock = threading.Lock()

    def _get_client(self) -> GenAIClient:
        """Get or create the GenAI client (thread-safe)."""
        if self._client is None:
            with self._lock:
                if self._client is None:  # Double-check after acquiring lock
                    from google import genai

                    self._client = genai.Client(api_key=self.api_key)
        return self._client

    def generate_title(self, text: str) -> str:
        try:
            response = self._get_client().models.generate_content(
                model=self.model,
                contents=TITLE_PROMPT.format(limit=self.limit, message=text),
            )
            title = (response.text or "").strip().strip("\"'")
            if title:
                return title[: self.limit]
        except Exception as e:
            log(f"Title generation error: {e}")
        return truncate_title(text, self.limit)
