"""
Chat Service - LLM-Based Conversation Turn Generation
======================================================

ARCHITECTURAL DECISION:
- Uses the OpenAI chat completions API (gpt-4o-mini by default)
- The prompt is opaque: it is appended to a fixed persona line
- History is mapped to roles from the speaker's point of view
- Every failure raises ChatServiceError; there is no fallback text

EXTENSIBILITY:
- Any OpenAI-compatible endpoint works by changing OPENAI_API_URL
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import requests
from pydantic import BaseModel, ValidationError as PydanticValidationError

from ..config import LLMSettings, get_settings
from ...domain.exceptions import ConfigurationError, RemoteCallError

logger = logging.getLogger(__name__)


class ChatServiceError(RemoteCallError):
    """Raised when a message could not be generated."""
    pass


@dataclass(frozen=True)
class HistoryEntry:
    """One past message, tagged from the current speaker's point of view."""
    content: str
    is_from_speaker: bool


@dataclass(frozen=True)
class GeneratedMessage:
    text: str
    model: str
    usage: Optional[dict] = None


class _CompletionMessage(BaseModel):
    content: Optional[str] = None


class _CompletionChoice(BaseModel):
    message: _CompletionMessage


class _ChatCompletion(BaseModel):
    choices: list[_CompletionChoice]
    model: Optional[str] = None
    usage: Optional[dict] = None


class ChatService:
    """
    Conversation turn generator using the OpenAI chat completions API.

    USAGE:
        service = ChatService()
        result = service.generate("Acct-A", "Talk about football.", history=[])
        print(result.text)
    """

    PERSONA_TEMPLATE = (
        "You are {name} taking part in an automated maturation conversation. {prompt}"
    )

    # Most recent history entries forwarded to the model
    MAX_HISTORY = 10

    def __init__(self, settings: Optional[LLMSettings] = None):
        settings = settings or get_settings().llm
        self._api_key = settings.api_key
        self._api_url = settings.api_url
        self._model = settings.model
        self._temperature = settings.temperature
        self._max_tokens = settings.max_tokens
        self._timeout = settings.timeout_seconds

        if not self._api_key:
            logger.warning("No OPENAI_API_KEY set. Message generation will fail.")

    @property
    def model(self) -> str:
        return self._model

    def build_messages(self, speaker_name: str, prompt: str,
                       history: Sequence[HistoryEntry]) -> list[dict]:
        """Build the chat payload: persona system message, then recent history."""
        messages = [
            {
                "role": "system",
                "content": self.PERSONA_TEMPLATE.format(
                    name=speaker_name or "an assistant", prompt=prompt
                ),
            }
        ]
        for entry in list(history)[-self.MAX_HISTORY:]:
            messages.append({
                "role": "assistant" if entry.is_from_speaker else "user",
                "content": entry.content,
            })
        return messages

    def generate(self, speaker_name: str, prompt: str,
                 history: Sequence[HistoryEntry] = ()) -> GeneratedMessage:
        """
        Generate the next message for a speaker.

        Args:
            speaker_name: Display name of the chip that is talking.
            prompt: Effective prompt for the pair.
            history: Recent pair messages, oldest first.

        Returns:
            GeneratedMessage with the text, the model tag and token usage.

        Raises:
            ConfigurationError: OPENAI_API_KEY is not set.
            ChatServiceError: empty prompt, network failure or bad response.
        """
        if not self._api_key:
            raise ConfigurationError("OpenAI API key not configured (OPENAI_API_KEY).")

        if not prompt or not prompt.strip():
            raise ChatServiceError("Prompt is required")

        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

        payload = {
            "model": self._model,
            "messages": self.build_messages(speaker_name, prompt, history),
            "max_tokens": self._max_tokens,
            "temperature": self._temperature,
        }

        logger.debug(f"Generating message for {speaker_name} with {len(payload['messages'])} messages")

        try:
            response = requests.post(
                self._api_url,
                headers=headers,
                json=payload,
                timeout=self._timeout
            )
        except requests.Timeout:
            logger.warning(f"LLM API timeout while generating for {speaker_name}")
            raise ChatServiceError("OpenAI API timeout")
        except requests.RequestException as e:
            logger.warning(f"LLM API error: {e}")
            raise ChatServiceError(f"OpenAI API request failed: {e}") from e

        if not response.ok:
            logger.warning(f"LLM API returned {response.status_code}: {response.text[:200]}")
            raise ChatServiceError(f"OpenAI API error: {response.status_code} {response.text[:200]}")

        try:
            completion = _ChatCompletion.model_validate(response.json())
        except (ValueError, PydanticValidationError) as e:
            raise ChatServiceError(f"Invalid OpenAI response: {e}") from e

        text = self._extract_response_content(completion)
        if not text:
            raise ChatServiceError("Invalid OpenAI response: empty message")

        return GeneratedMessage(
            text=text,
            model=completion.model or self._model,
            usage=completion.usage,
        )

    def _extract_response_content(self, completion: _ChatCompletion) -> str:
        """Extract text content from the first choice."""
        if not completion.choices:
            return ""
        return (completion.choices[0].message.content or "").strip()
