from __future__ import annotations

import asyncio
from collections.abc import Iterator
from contextlib import aclosing, contextmanager
import logging
import uuid

from chatservice.domain.entities import Chat, ChatConfig, HistoryPolicy, Message, Model
from chatservice.domain.errors import ChatCommitError, ChatNotFoundError, ChatServiceError, StoreError, TurnPhase
from chatservice.services.chat_locks import ChatLockRegistry
from chatservice.services.contracts import (
    ChatCompletionInput,
    ChatCompletionOutput,
    ChatStoreProtocol,
    CompletionProviderProtocol,
    StreamSinkProtocol,
)

logger = logging.getLogger(__name__)


@contextmanager
def _in_phase(phase: TurnPhase, chat_id: str) -> Iterator[None]:
    logger.debug("chat turn phase", extra={"chat_id": chat_id, "phase": str(phase)})
    try:
        yield
    except ChatServiceError as exc:
        logger.warning(
            "chat turn failed",
            extra={"chat_id": chat_id, "phase": str(phase), "kind": exc.kind},
        )
        raise exc.with_phase(phase) from exc


class ChatCompletionService:
    """Use case that runs one streamed chat completion turn and commits the result.

    A turn loads (or creates) the chat, appends the user message, streams the provider
    reply while publishing cumulative snapshots to the sink, then appends the assistant
    message and saves the chat once. Nothing is saved unless the stream completes, and
    turns on the same chat id are serialized through ``ChatLockRegistry``.
    """

    def __init__(
        self,
        store: ChatStoreProtocol,
        provider: CompletionProviderProtocol,
        locks: ChatLockRegistry | None = None,
        history_policy: HistoryPolicy = HistoryPolicy.REJECT,
    ) -> None:
        self._store = store
        self._provider = provider
        self._locks = locks or ChatLockRegistry()
        self._history_policy = history_policy

    async def execute(self, payload: ChatCompletionInput, sink: StreamSinkProtocol) -> ChatCompletionOutput:
        chat_id = payload.chat_id or str(uuid.uuid4())
        try:
            async with self._locks.hold(chat_id):
                return await self._run_turn(chat_id, payload, sink)
        except asyncio.CancelledError:
            logger.info("chat turn cancelled", extra={"chat_id": chat_id})
            raise

    async def _run_turn(self, chat_id: str, payload: ChatCompletionInput, sink: StreamSinkProtocol) -> ChatCompletionOutput:
        chat = await self._load_or_create(chat_id, payload)
        chat.history_policy = self._history_policy

        with _in_phase(TurnPhase.APPENDING, chat.id):
            chat.add_message(Message.create("user", payload.user_message, chat.config.model))

        with _in_phase(TurnPhase.REQUESTING, chat.id):
            stream = await self._provider.open_stream(chat.messages, chat.config)

        content = ""
        with _in_phase(TurnPhase.STREAMING, chat.id):
            async with aclosing(stream):
                async for delta in stream:
                    content += delta.text
                    await sink.put(ChatCompletionOutput(chat_id=chat.id, user_id=chat.user_id, content=content))

        with _in_phase(TurnPhase.FINALIZING, chat.id):
            chat.add_message(Message.create("assistant", content, chat.config.model))
        try:
            await self._store.save_chat(chat)
        except StoreError as exc:
            logger.warning(
                "completed reply could not be committed",
                extra={"chat_id": chat.id, "phase": str(TurnPhase.FINALIZING)},
            )
            raise ChatCommitError(exc.message, phase=TurnPhase.FINALIZING) from exc

        logger.info(
            "chat turn completed",
            extra={"chat_id": chat.id, "messages_count": len(chat.messages), "token_usage": chat.token_usage},
        )
        return ChatCompletionOutput(chat_id=chat.id, user_id=chat.user_id, content=content)

    async def _load_or_create(self, chat_id: str, payload: ChatCompletionInput) -> Chat:
        with _in_phase(TurnPhase.LOADING, chat_id):
            try:
                return await self._store.find_chat_by_id(chat_id)
            except ChatNotFoundError:
                logger.info("chat not found, creating", extra={"chat_id": chat_id})

        with _in_phase(TurnPhase.CREATING, chat_id):
            chat = self._new_chat(chat_id, payload)
            if await self._store.create_chat(chat):
                return chat
            # Another process created the chat after our lookup; continue from its stored state.
            logger.info("chat created concurrently, reloading", extra={"chat_id": chat_id})
            return await self._store.find_chat_by_id(chat_id)

    def _new_chat(self, chat_id: str, payload: ChatCompletionInput) -> Chat:
        config_input = payload.config
        model = Model(name=config_input.model, max_tokens=config_input.model_max_tokens)
        config = ChatConfig(
            model=model,
            temperature=config_input.temperature,
            top_p=config_input.top_p,
            n=config_input.n,
            stop=tuple(config_input.stop),
            max_tokens=config_input.max_tokens,
            presence_penalty=config_input.presence_penalty,
            frequency_penalty=config_input.frequency_penalty,
            initial_system_message=config_input.initial_system_message,
        )
        initial_message = Message.create("system", config_input.initial_system_message, model)
        return Chat.create(
            payload.user_id,
            initial_message,
            config,
            chat_id=chat_id,
            history_policy=self._history_policy,
        )
