from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
import logging

from chatservice.core.settings import Settings
from chatservice.domain.errors import ChatServiceError
from chatservice.services.chat_stream import ChatStreamEvent
from chatservice.services.contracts import (
    ChatCompletionConfigInput,
    ChatCompletionInput,
    ChatCompletionOutput,
    ChatCompletionServiceProtocol,
)

logger = logging.getLogger(__name__)

_SENTINEL = object()


class ChatStreamService:
    """Runs a completion turn in the background and exposes its snapshots as stream events.

    Each call owns a bounded queue used as the turn's sink, so a slow reader throttles how
    fast the provider stream is drained. Abandoning the iterator cancels the turn.
    """

    def __init__(self, completion_service: ChatCompletionServiceProtocol, settings: Settings) -> None:
        self._completion_service = completion_service
        self._settings = settings

    def default_config(self) -> ChatCompletionConfigInput:
        settings = self._settings
        return ChatCompletionConfigInput(
            model=settings.chat_model,
            model_max_tokens=settings.chat_model_max_tokens,
            temperature=settings.chat_temperature,
            top_p=settings.chat_top_p,
            n=settings.chat_n,
            stop=tuple(settings.chat_stop),
            max_tokens=settings.chat_max_tokens,
            presence_penalty=settings.chat_presence_penalty,
            frequency_penalty=settings.chat_frequency_penalty,
            initial_system_message=settings.chat_initial_system_message,
        )

    async def stream_completion(self, *, chat_id: str, user_id: str, message: str) -> AsyncIterator[ChatStreamEvent]:
        payload = ChatCompletionInput(
            chat_id=chat_id,
            user_id=user_id,
            user_message=message,
            config=self.default_config(),
        )
        queue: asyncio.Queue[ChatCompletionOutput | ChatStreamEvent | object] = asyncio.Queue(
            maxsize=self._settings.chat_stream_buffer_size
        )
        task = asyncio.create_task(self._produce(payload, queue))
        try:
            while True:
                item = await queue.get()
                if item is _SENTINEL:
                    return
                if isinstance(item, ChatCompletionOutput):
                    yield {
                        "type": "snapshot",
                        "data": {"chat_id": item.chat_id, "user_id": item.user_id, "content": item.content},
                    }
                    continue
                yield item  # type: ignore[misc]
        finally:
            if not task.done():
                logger.info("stream consumer went away, cancelling turn", extra={"chat_id": chat_id})
                task.cancel()

    async def _produce(
        self,
        payload: ChatCompletionInput,
        queue: asyncio.Queue[ChatCompletionOutput | ChatStreamEvent | object],
    ) -> None:
        event: ChatStreamEvent
        try:
            async with asyncio.timeout(self._settings.chat_turn_timeout_seconds):
                output = await self._completion_service.execute(payload, queue)
            event = {
                "type": "done",
                "data": {"chat_id": output.chat_id, "user_id": output.user_id, "content": output.content},
            }
        except ChatServiceError as exc:
            event = _error_event(
                kind=exc.kind,
                phase=None if exc.phase is None else str(exc.phase),
                retryable=exc.retryable,
                message=exc.message,
            )
        except TimeoutError:
            logger.warning("chat turn timed out", extra={"chat_id": payload.chat_id})
            event = _error_event(kind="timeout", phase=None, retryable=True, message="Chat turn timed out")
        except Exception:
            logger.exception("chat stream failed", extra={"chat_id": payload.chat_id})
            event = _error_event(kind="internal", phase=None, retryable=False, message="Assistant stream failed")

        # Cancellation skips this: the consumer that cancelled us no longer reads the queue.
        await queue.put(event)
        await queue.put(_SENTINEL)


def _error_event(*, kind: str, phase: str | None, retryable: bool, message: str) -> ChatStreamEvent:
    return {"type": "error", "data": {"kind": kind, "phase": phase, "retryable": retryable, "message": message}}
