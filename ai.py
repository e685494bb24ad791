from __future__ import annotations

import json
import logging
import re
from typing import Any, Optional, Protocol, Sequence, Union

import google.generativeai as genai

from config import Settings


logger = logging.getLogger(__name__)

_CODE_FENCE = re.compile(r"```(?:json)?\n?")

Contents = Union[str, Sequence[Any]]


class TextGenerator(Protocol):
    def generate(self, contents: Contents) -> str: ...


class GeminiClient:
    def __init__(self, api_key: str, model_name: str) -> None:
        genai.configure(api_key=api_key)
        self.model_name = model_name
        self._model = genai.GenerativeModel(model_name=model_name)

    def generate(self, contents: Contents) -> str:
        response = self._model.generate_content(contents)
        return response.text


def build_ai_client(settings: Settings) -> Optional[GeminiClient]:
    if not settings.gemini_api_key:
        logger.warning("ai_disabled: reason=missing_api_key")
        return None
    return GeminiClient(settings.gemini_api_key, settings.gemini_model)


def strip_code_fences(text: str) -> str:
    return _CODE_FENCE.sub("", text or "").strip()


def parse_json_response(text: str) -> Any:
    return json.loads(strip_code_fences(text))
