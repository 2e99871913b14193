"""Speech transcription via an OpenAI-compatible Whisper endpoint."""

import logging
from dataclasses import dataclass
from pathlib import Path

from openai import OpenAI, OpenAIError

from config import TRANSCRIPTION_MODEL
from errors import ChatError, TranscriptionError
from llm import ChatService

logger = logging.getLogger(__name__)


@dataclass
class Transcript:
    text: str
    language: str | None = None


class SpeechTranscriber:
    def __init__(self, client: OpenAI | None = None, model: str = TRANSCRIPTION_MODEL,
                 chat: ChatService | None = None):
        # Shares the chat service's lazily-built client (same API key and base URL).
        self._client = client
        self._chat = chat or ChatService(client=client)
        self.model = model

    def transcribe(self, audio_path: Path) -> Transcript:
        try:
            client = self._client or self._chat.openai_client()
            with open(audio_path, "rb") as f:
                result = client.audio.transcriptions.create(
                    model=self.model,
                    file=f,
                    response_format="verbose_json",
                )
        except (OpenAIError, ChatError, OSError) as exc:
            raise TranscriptionError(str(exc)) from exc

        text = (getattr(result, "text", "") or "").strip()
        language = getattr(result, "language", None)
        logger.debug("Transcribed %s: %d chars (%s)", audio_path, len(text), language)
        return Transcript(text=text, language=language)
