"""Chat-completion client and helpers for decoding structured replies."""

import logging
from typing import Optional, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from podlearn.config import Settings
from podlearn.core.errors import UpstreamError

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

# Sampling temperatures by task
CLASSIFY_TEMPERATURE = 0.3
GENERATE_TEMPERATURE = 0.7


class ChatMessage(BaseModel):
    role: str
    content: str


class _ReplyMessage(BaseModel):
    role: Optional[str] = None
    content: Optional[str] = None


class _Choice(BaseModel):
    index: int = 0
    message: _ReplyMessage


class ChatCompletion(BaseModel):
    """The subset of a chat-completion reply this service reads."""

    id: Optional[str] = None
    model: Optional[str] = None
    choices: list[_Choice] = []


def strip_code_fence(text: str) -> str:
    """Remove surrounding whitespace and a Markdown code fence, if any."""
    text = text.strip()
    if text.startswith("```json"):
        text = text[len("```json"):]
    elif text.startswith("```"):
        text = text[len("```"):]
    if text.endswith("```"):
        text = text[: -len("```")]
    return text.strip()


def decode_json_reply(text: str, model: Type[T]) -> T:
    """
    Parse an LLM reply into ``model``.

    Raises:
        UpstreamError: If the reply is not valid JSON for ``model``
    """
    try:
        return model.model_validate_json(strip_code_fence(text))
    except ValidationError as e:
        raise UpstreamError(f"failed to parse LLM response as {model.__name__}: {e.error_count()} error(s)") from e


class LLMClient:
    """Client for an OpenAI-compatible ``/chat/completions`` endpoint."""

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str,
        model: str = "gpt-4o-mini",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "LLMClient":
        return cls(
            api_key=settings.llm_api_key,
            base_url=settings.llm_api_base_url,
            model=settings.llm_model,
            **kwargs,
        )

    async def chat(
        self,
        messages: list[ChatMessage],
        max_tokens: int,
        temperature: float = CLASSIFY_TEMPERATURE,
        timeout: float = 60.0,
    ) -> str:
        """
        Send a chat completion and return the first choice's content.

        Args:
            messages: Conversation, system prompt first
            max_tokens: Completion budget
            temperature: Sampling temperature
            timeout: Overall deadline for the call, in seconds

        Returns:
            Raw content string (not stripped, not parsed)

        Raises:
            UpstreamError: On transport failure, non-2xx reply or no choices
        """
        if not self.api_key:
            raise UpstreamError("LLM client is not configured")

        payload = {
            "model": self.model,
            "messages": [m.model_dump() for m in messages],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                response = await client.post(
                    f"{self.base_url}/chat/completions", json=payload, headers=headers
                )
        except httpx.HTTPError as e:
            logger.error(f"LLM request failed: {e!r}")
            raise UpstreamError(f"LLM request failed: {e!r}") from e

        if not response.is_success:
            logger.error(f"LLM API returned {response.status_code}: {response.text[:1000]}")
            raise UpstreamError(
                f"LLM API error: status={response.status_code}, body={response.text[:1000]}",
                status_code=response.status_code,
                body=response.text,
            )

        try:
            completion = ChatCompletion.model_validate_json(response.content)
        except ValidationError as e:
            raise UpstreamError("failed to decode LLM response") from e

        if not completion.choices:
            raise UpstreamError("no response from LLM")
        return completion.choices[0].message.content or ""
