"""Thin async wrapper around Google Gemini for JSON-producing prompts."""

import logging
from typing import Any, List, Optional

import google.generativeai as genai

from app.config import settings

logger = logging.getLogger(__name__)


class GeminiError(Exception):
    """Raised when Gemini is not configured or returns nothing usable."""


def clean_json_response(text: str) -> str:
    """
    Strip markdown fences and surrounding chatter from a model response.

    Returns the first balanced JSON object or array found in the text.
    """
    cleaned = (text or "").strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned[7:]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    cleaned = cleaned.strip()

    starts = [index for index in (cleaned.find("{"), cleaned.find("[")) if index != -1]
    if not starts:
        return cleaned
    start = min(starts)

    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(cleaned)):
        char = cleaned[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in "{[":
            depth += 1
        elif char in "}]":
            depth -= 1
            if depth == 0:
                return cleaned[start:index + 1]

    return cleaned[start:]


class GeminiClient:
    """One configured GenerativeModel, created lazily on first use."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model_name: Optional[str] = None,
        temperature: float = 0.1,
    ):
        self.api_key = api_key or settings.GOOGLE_API_KEY
        self.model_name = model_name or settings.GEMINI_MODEL
        self.temperature = temperature
        self._model = None

    @property
    def model(self):
        if self._model is None:
            if not self.api_key:
                raise GeminiError("GOOGLE_API_KEY is not configured")
            genai.configure(api_key=self.api_key)
            self._model = genai.GenerativeModel(self.model_name)
        return self._model

    async def generate_json(self, parts: List[Any]) -> str:
        """Send prompt parts (text and inline images) and return cleaned JSON text."""
        response = await self.model.generate_content_async(
            parts,
            generation_config={
                "response_mime_type": "application/json",
                "temperature": self.temperature,
            },
        )
        text = response.text
        if not text:
            raise GeminiError("No response from Gemini")
        return clean_json_response(text)


def image_part(data: bytes, mime_type: str = "image/jpeg") -> dict:
    return {"mime_type": mime_type, "data": data}
