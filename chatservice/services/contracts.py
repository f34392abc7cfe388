from __future__ import annotations

from collections.abc import AsyncGenerator, AsyncIterator, Sequence
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from typing import Protocol

import asyncpg

from chatservice.domain.entities import Chat, ChatConfig, Message
from chatservice.services.chat_stream import ChatStreamEvent


@dataclass(frozen=True)
class ChatCompletionConfigInput:
    model: str
    model_max_tokens: int
    temperature: float = 1.0
    top_p: float = 1.0
    n: int = 1
    stop: tuple[str, ...] = ()
    max_tokens: int = 0
    presence_penalty: float = 0.0
    frequency_penalty: float = 0.0
    initial_system_message: str = ""


@dataclass(frozen=True)
class ChatCompletionInput:
    chat_id: str
    user_id: str
    user_message: str
    config: ChatCompletionConfigInput


@dataclass(frozen=True)
class ChatCompletionOutput:
    """Chat identity plus assistant content; streamed snapshots carry the cumulative text so far."""

    chat_id: str
    user_id: str
    content: str


@dataclass(frozen=True)
class CompletionDelta:
    text: str


class DatabaseConnectionProtocol(Protocol):
    """Connection handed out inside a transaction."""

    async def execute(self, query: str, *args: object) -> str:
        """Execute a statement and return the backend status string, e.g. ``INSERT 0 1``."""


class DatabaseServiceProtocol(Protocol):
    """Abstraction for async SQL execution against the chat Postgres store."""

    async def connect(self) -> None:
        """Initialize underlying DB resources before request handling begins."""

    async def disconnect(self) -> None:
        """Release open DB resources during application shutdown."""

    async def fetchrow(self, query: str, *args: object) -> asyncpg.Record | None:
        """Execute a query and return a single row, or ``None`` when no row matches."""

    async def fetch(self, query: str, *args: object) -> Sequence[asyncpg.Record]:
        """Execute a query and return all matching rows."""

    async def execute(self, query: str, *args: object) -> str:
        """Execute a write statement and return the backend status string."""

    def transaction(self) -> AbstractAsyncContextManager[DatabaseConnectionProtocol]:
        """Open a transaction that commits when the block exits cleanly and rolls back otherwise."""


class ChatStoreProtocol(Protocol):
    """Persistence contract for chat aggregates."""

    async def find_chat_by_id(self, chat_id: str) -> Chat:
        """Load a chat, raising ``ChatNotFoundError`` when absent and ``StoreError`` on other failures."""

    async def create_chat(self, chat: Chat) -> bool:
        """Persist a freshly created chat and return ``True``; an id that already exists writes nothing and returns ``False``."""

    async def save_chat(self, chat: Chat) -> None:
        """Persist chat state and the messages appended since it was created, loaded or last saved."""


class CompletionProviderProtocol(Protocol):
    """Streaming chat completion contract for an upstream model provider."""

    async def open_stream(self, messages: Sequence[Message], config: ChatConfig) -> AsyncGenerator[CompletionDelta, None]:
        """Open a completion stream; raises ``ProviderError`` when the request is refused.

        Iterating the result yields one delta per upstream chunk and raises ``ProviderError``
        on mid-stream failures. Exhaustion marks the end of the stream.
        """


class StreamSinkProtocol(Protocol):
    """Ordered output channel for cumulative snapshots; ``asyncio.Queue`` satisfies it."""

    async def put(self, item: ChatCompletionOutput) -> None:
        """Publish one snapshot, suspending while a bounded channel is full."""


class ChatCompletionServiceProtocol(Protocol):
    """Use-case contract that runs one chat completion turn."""

    async def execute(self, payload: ChatCompletionInput, sink: StreamSinkProtocol) -> ChatCompletionOutput:
        """Run a turn, publishing snapshots to ``sink`` and returning the final reply."""


class ChatStreamServiceProtocol(Protocol):
    """Stream-event contract used by the HTTP/SSE endpoint."""

    def stream_completion(self, *, chat_id: str, user_id: str, message: str) -> AsyncIterator[ChatStreamEvent]:
        """Run one completion turn and yield snapshot events followed by ``done`` or ``error``."""
