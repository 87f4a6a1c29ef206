"""
Coach Provider Gateway

One interface over the interchangeable text-generation backends:

    provider.generate(turns, system_prompt, max_output_tokens) -> str

Backends:
- Gemini (preferred: free tier covers normal traffic)
- Claude (alternate when no Gemini key is configured)

Selection is fixed at startup. There is no mid-request failover: backends differ
in cost, latency and voice, and a single turn must not silently switch between
them. Failures surface as typed errors:

- UpstreamUnreachableError: timeout or connection failure
- UpstreamRejectedError: the backend answered with a non-2xx status
- EmptyResponseError: a 2xx answer with no text in it
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Optional, Sequence

import anthropic
import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types as genai_types

from core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class ChatTurn:
    """Provider-neutral conversation turn."""
    role: Role
    content: str


class ProviderError(Exception):
    """Base class for generation failures."""

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.provider = provider


class ProviderNotConfiguredError(ProviderError):
    pass


class UpstreamUnreachableError(ProviderError):
    pass


class UpstreamRejectedError(ProviderError):
    def __init__(self, message: str, status: int, provider: Optional[str] = None):
        super().__init__(message, provider)
        self.status = status


class EmptyResponseError(ProviderError):
    pass


class CoachProvider(ABC):
    """A backend that turns role-tagged turns plus a system instruction into text."""

    name: str = "provider"

    def __init__(self, model: str, timeout_s: float):
        self.model = model
        self.timeout_s = timeout_s

    @abstractmethod
    def generate(self, turns: Sequence[ChatTurn], system_prompt: str, max_output_tokens: int) -> str:
        ...


class GeminiProvider(CoachProvider):
    """Google Gemini via the google-genai SDK. Gemini calls the assistant side "model"."""

    name = "gemini"

    ROLE_MAP = {Role.USER: "user", Role.ASSISTANT: "model"}

    def __init__(self, api_key: str, model: str, timeout_s: float, client: Any = None):
        super().__init__(model, timeout_s)
        self.client = client or genai.Client(
            api_key=api_key,
            http_options=genai_types.HttpOptions(timeout=int(timeout_s * 1000)),
        )

    def build_contents(self, turns: Sequence[ChatTurn]) -> List[genai_types.Content]:
        return [
            genai_types.Content(
                role=self.ROLE_MAP[turn.role],
                parts=[genai_types.Part(text=turn.content)],
            )
            for turn in turns
        ]

    def generate(self, turns: Sequence[ChatTurn], system_prompt: str, max_output_tokens: int) -> str:
        config = genai_types.GenerateContentConfig(
            system_instruction=system_prompt,
            max_output_tokens=max_output_tokens,
        )
        logger.info(f"Calling Gemini with {len(turns)} messages")
        try:
            response = self.client.models.generate_content(
                model=self.model,
                contents=self.build_contents(turns),
                config=config,
            )
        except genai_errors.APIError as e:
            logger.error(f"Gemini API returned status {e.code}: {e}")
            raise UpstreamRejectedError(f"AI service error (status {e.code})", status=e.code, provider=self.name) from e
        except httpx.TransportError as e:
            logger.error(f"HTTP request to Gemini failed: {e}")
            raise UpstreamUnreachableError(f"failed to reach AI service: {e}", provider=self.name) from e

        text = ""
        if response.candidates:
            candidate = response.candidates[0]
            if candidate.content and candidate.content.parts:
                text = "".join(part.text for part in candidate.content.parts if getattr(part, "text", None))

        if not text:
            raise EmptyResponseError("no response from Gemini", provider=self.name)
        return text


class ClaudeProvider(CoachProvider):
    """Anthropic Claude via the anthropic SDK. Roles map one-to-one."""

    name = "claude"

    def __init__(self, api_key: str, model: str, timeout_s: float, client: Any = None):
        super().__init__(model, timeout_s)
        # SDK retries disabled: a failed call is reported, never replayed
        self.client = client or anthropic.Anthropic(api_key=api_key, timeout=timeout_s, max_retries=0)

    def build_messages(self, turns: Sequence[ChatTurn]) -> List[dict]:
        return [{"role": turn.role.value, "content": turn.content} for turn in turns]

    def generate(self, turns: Sequence[ChatTurn], system_prompt: str, max_output_tokens: int) -> str:
        logger.info(f"Calling Claude with {len(turns)} messages")
        try:
            response = self.client.messages.create(
                model=self.model,
                max_tokens=max_output_tokens,
                system=system_prompt,
                messages=self.build_messages(turns),
            )
        except anthropic.APIStatusError as e:
            logger.error(f"Claude API returned status {e.status_code}: {e.message}")
            raise UpstreamRejectedError(
                f"AI service error (status {e.status_code})", status=e.status_code, provider=self.name
            ) from e
        except anthropic.APIConnectionError as e:
            # APITimeoutError is a subclass
            logger.error(f"HTTP request to Claude failed: {e}")
            raise UpstreamUnreachableError(f"failed to reach AI service: {e}", provider=self.name) from e

        text = "".join(block.text for block in response.content if getattr(block, "text", None))
        if not text:
            raise EmptyResponseError("no response from Claude", provider=self.name)
        return text


def select_provider(config: Optional[Settings] = None) -> CoachProvider:
    """
    Pick the backend for this process: Gemini when configured, else Claude.

    Raises ProviderNotConfiguredError when neither key is set.
    """
    config = config or default_settings
    if config.GEMINI_API_KEY:
        logger.info(f"Gemini API key configured (length: {len(config.GEMINI_API_KEY)})")
        return GeminiProvider(
            api_key=config.GEMINI_API_KEY,
            model=config.GEMINI_MODEL,
            timeout_s=config.COACH_PROVIDER_TIMEOUT_S,
        )
    if config.CLAUDE_API_KEY:
        logger.info(f"Claude API key configured (length: {len(config.CLAUDE_API_KEY)})")
        return ClaudeProvider(
            api_key=config.CLAUDE_API_KEY,
            model=config.CLAUDE_MODEL,
            timeout_s=config.COACH_PROVIDER_TIMEOUT_S,
        )
    logger.error("No AI API key configured, coach will not work")
    raise ProviderNotConfiguredError(
        "no AI API key configured. Set GEMINI_API_KEY or CLAUDE_API_KEY in your environment"
    )
