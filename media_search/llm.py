"""Chat/completion service over an OpenAI-compatible API."""

import logging
import os
import re

from openai import OpenAI, OpenAIError
from PIL import Image

from config import CHAT_MODEL, LLM_API_KEY_ENV, LLM_BASE_URL, LLM_TIMEOUT, VISION_MODEL
from errors import ChatError
from thumbnails import jpeg_data_url

logger = logging.getLogger(__name__)

_NUMBER_RE = re.compile(r"\d+")


def numbered_list(items: list[str]) -> str:
    return "\n".join(f"{i}. {item}" for i, item in enumerate(items, 1))


def parse_selection(response: str, count: int) -> list[int]:
    """Parse a numbered-selection reply into zero-based indices.

    The reply is either numbers ("1, 3") or the token "none". Numbers outside
    1..count are ignored; order of first mention is kept.
    """
    numbers = [int(n) for n in _NUMBER_RE.findall(response)]
    picked: list[int] = []
    for n in numbers:
        if 1 <= n <= count and n - 1 not in picked:
            picked.append(n - 1)
    if not picked and "none" in response.lower():
        return []
    return picked


class ChatService:
    def __init__(
        self,
        client: OpenAI | None = None,
        model: str = CHAT_MODEL,
        vision_model: str = VISION_MODEL,
    ):
        self._client = client
        self.model = model
        self.vision_model = vision_model

    def openai_client(self) -> OpenAI:
        if self._client is None:
            api_key = os.environ.get(LLM_API_KEY_ENV)
            if not api_key:
                raise ChatError(f"{LLM_API_KEY_ENV} is not set")
            self._client = OpenAI(base_url=LLM_BASE_URL, api_key=api_key, timeout=LLM_TIMEOUT)
        return self._client

    def _create(self, model: str, messages: list[dict], temperature: float,
                max_tokens: int) -> str:
        try:
            response = self.openai_client().chat.completions.create(
                model=model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except OpenAIError as exc:
            raise ChatError(str(exc)) from exc
        if not response.choices:
            raise ChatError("Empty response")
        content = (response.choices[0].message.content or "").strip()
        if not content:
            raise ChatError("Empty response")
        return content

    def complete(self, prompt: str, system: str | None = None,
                 temperature: float = 0.1, max_tokens: int = 1024) -> str:
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        return self._create(self.model, messages, temperature, max_tokens)

    def describe_frames(self, frames: list[Image.Image], prompt: str,
                        max_tokens: int = 200) -> str:
        content: list[dict] = [{"type": "text", "text": prompt}]
        for frame in frames:
            content.append({"type": "image_url", "image_url": {"url": jpeg_data_url(frame)}})
        messages = [{"role": "user", "content": content}]
        return self._create(self.vision_model, messages, 0.2, max_tokens)

    def select(self, instruction: str, candidates: list[str]) -> list[int]:
        """Ask which numbered candidates satisfy instruction. Zero-based indices."""
        prompt = (
            f"{instruction}\n\n"
            f"{numbered_list(candidates)}\n\n"
            "Reply with ONLY the matching numbers separated by commas (e.g. 1, 3), "
            "or the word none if nothing matches."
        )
        response = self.complete(prompt, temperature=0.0, max_tokens=100)
        picked = parse_selection(response, len(candidates))
        logger.debug("Selection reply %r -> %s", response, picked)
        return picked
