from __future__ import annotations

from collections.abc import AsyncGenerator, Sequence
import logging
from typing import Any

from openai import APIError, APIStatusError, APITimeoutError, AsyncOpenAI, RateLimitError

from chatservice.domain.entities import ChatConfig, Message
from chatservice.domain.errors import ProviderError
from chatservice.services.contracts import CompletionDelta

logger = logging.getLogger(__name__)


def _provider_error(exc: APIError) -> ProviderError:
    if isinstance(exc, APITimeoutError):
        return ProviderError(str(exc), status_code=504)
    if isinstance(exc, RateLimitError):
        return ProviderError(str(exc), status_code=429)
    if isinstance(exc, APIStatusError):
        status = exc.status_code
        mapped_status = 502 if status and status >= 500 else (status or 502)
        return ProviderError(str(exc), status_code=mapped_status)
    return ProviderError(str(exc), status_code=502)


def build_chat_request(messages: Sequence[Message], config: ChatConfig) -> dict[str, Any]:
    """Translate chat history and generation parameters into a streaming chat.completions payload."""
    payload: dict[str, Any] = {
        "model": config.model.name,
        "messages": [{"role": message.role, "content": message.content} for message in messages],
        "temperature": config.temperature,
        "top_p": config.top_p,
        "n": config.n,
        "presence_penalty": config.presence_penalty,
        "frequency_penalty": config.frequency_penalty,
        "stream": True,
    }
    if config.stop:
        payload["stop"] = list(config.stop)
    if config.max_tokens:
        payload["max_tokens"] = config.max_tokens
    return payload


class OpenAICompletionProvider:
    """Completion provider backed by the OpenAI chat completions streaming API."""

    def __init__(
        self,
        api_key: str | None,
        timeout_seconds: float = 60.0,
        base_url: str | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self._client = client or AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout_seconds)

    async def open_stream(self, messages: Sequence[Message], config: ChatConfig) -> AsyncGenerator[CompletionDelta, None]:
        payload = build_chat_request(messages, config)
        logger.debug(
            "opening completion stream",
            extra={"model": config.model.name, "messages_count": len(messages)},
        )
        try:
            stream = await self._client.chat.completions.create(**payload)
        except APIError as exc:
            raise _provider_error(exc) from exc
        return self._deltas(stream)

    async def _deltas(self, stream: Any) -> AsyncGenerator[CompletionDelta, None]:
        try:
            async for chunk in stream:
                # Only the first sample is accumulated when n > 1.
                for choice in chunk.choices:
                    if choice.index == 0:
                        yield CompletionDelta(text=choice.delta.content or "")
        except APIError as exc:
            raise _provider_error(exc) from exc
        finally:
            close = getattr(stream, "close", None)
            if close is not None:
                await close()
