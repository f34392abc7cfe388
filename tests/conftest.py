"""Shared test utilities and fixtures for chat service tests."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, Sequence
from contextlib import asynccontextmanager
from types import SimpleNamespace
from typing import Any

import pytest
import punq

from chatservice.core.settings import Settings
from chatservice.domain import tokens
from chatservice.domain.entities import Chat, ChatConfig, Message, Model
from chatservice.domain.errors import ChatNotFoundError, ProviderError
from chatservice.services.contracts import ChatCompletionConfigInput, ChatCompletionInput, CompletionDelta


class WordEncoding:
    """Deterministic stand-in for a tiktoken encoding: one token per whitespace-separated word."""

    def encode(self, text: str) -> list[int]:
        if "<|endoftext|>" in text:
            raise ValueError("Encountered text corresponding to disallowed special token '<|endoftext|>'")
        return list(range(len(text.split())))


@pytest.fixture(autouse=True)
def word_tokenizer(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(tokens, "get_encoding", lambda model_name: WordEncoding())


def _copy_chat(chat: Chat) -> Chat:
    return Chat(
        id=chat.id,
        user_id=chat.user_id,
        config=chat.config,
        messages=chat.messages,
        erased_messages=chat.erased_messages,
        status=chat.status,
        created_at=chat.created_at,
        updated_at=chat.updated_at,
    )


class FakeChatStore:
    """In-memory chat store that keeps detached copies, like a real database would."""

    def __init__(self) -> None:
        self.chats: dict[str, Chat] = {}
        self.find_calls: list[str] = []
        self.create_calls: list[Chat] = []
        self.save_calls: list[Chat] = []
        self.find_error: Exception | None = None
        self.create_error: Exception | None = None
        self.save_error: Exception | None = None
        self.created_elsewhere: Chat | None = None

    def seed(self, chat: Chat) -> None:
        self.chats[chat.id] = _copy_chat(chat)

    async def find_chat_by_id(self, chat_id: str) -> Chat:
        self.find_calls.append(chat_id)
        await asyncio.sleep(0)
        if self.find_error is not None:
            raise self.find_error
        chat = self.chats.get(chat_id)
        if chat is None:
            raise ChatNotFoundError(f"chat {chat_id} not found")
        return _copy_chat(chat)

    async def create_chat(self, chat: Chat) -> bool:
        await asyncio.sleep(0)
        if self.create_error is not None:
            raise self.create_error
        self.create_calls.append(_copy_chat(chat))
        if self.created_elsewhere is not None:
            self.seed(self.created_elsewhere)
        if chat.id in self.chats:
            return False
        self.chats[chat.id] = _copy_chat(chat)
        chat.mark_saved()
        return True

    async def save_chat(self, chat: Chat) -> None:
        await asyncio.sleep(0)
        if self.save_error is not None:
            raise self.save_error
        self.save_calls.append(_copy_chat(chat))
        self.chats[chat.id] = _copy_chat(chat)
        chat.mark_saved()


class FakeCompletionProvider:
    """Provider double that replays scripted deltas and can fail on open or at a given delta."""

    def __init__(
        self,
        deltas: Sequence[str] = ("Hi", " there", "!"),
        *,
        fail_on_open: Exception | None = None,
        fail_at: int | None = None,
        block_at: int | None = None,
    ) -> None:
        self.deltas = list(deltas)
        self.fail_on_open = fail_on_open
        self.fail_at = fail_at
        self.block_at = block_at
        self.requests: list[tuple[list[Message], ChatConfig]] = []
        self.closed = False
        self.blocked = asyncio.Event()

    async def open_stream(self, messages: Sequence[Message], config: ChatConfig) -> AsyncGenerator[CompletionDelta, None]:
        self.requests.append((list(messages), config))
        if self.fail_on_open is not None:
            raise self.fail_on_open
        return self._stream()

    async def _stream(self) -> AsyncGenerator[CompletionDelta, None]:
        try:
            for index, text in enumerate(self.deltas):
                if index == self.fail_at:
                    raise ProviderError("connection reset by peer", status_code=502)
                if index == self.block_at:
                    self.blocked.set()
                    await asyncio.Event().wait()
                await asyncio.sleep(0)
                yield CompletionDelta(text=text)
        finally:
            self.closed = True


class RecordingSink:
    def __init__(self) -> None:
        self.items: list[Any] = []

    async def put(self, item: Any) -> None:
        self.items.append(item)


class FakeTransactionConnection:
    def __init__(self, database: FakeDatabaseService, statements: list[tuple[str, tuple]]) -> None:
        self._database = database
        self._statements = statements

    async def execute(self, query: str, *args):
        self._statements.append((query, args))
        if "INSERT INTO chats" in query:
            if args[0] in self._database.stored_chat_ids:
                return "INSERT 0 0"
            self._database.stored_chat_ids.add(args[0])
        return "INSERT 0 1"


class FakeDatabaseService:
    """Shared fake DB service used at the external DB boundary in unit tests."""

    def __init__(self) -> None:
        self.chat_rows: dict[str, dict[str, Any]] = {}
        self.message_rows: dict[str, list[dict[str, Any]]] = {}
        self.stored_chat_ids: set[str] = set()
        self.fetchrow_calls: list[tuple[str, tuple]] = []
        self.fetch_calls: list[tuple[str, tuple]] = []
        self.execute_calls: list[tuple[str, tuple]] = []
        self.transactions: list[list[tuple[str, tuple]]] = []
        self.error: Exception | None = None

    async def connect(self) -> None:
        return None

    async def disconnect(self) -> None:
        return None

    async def fetchrow(self, query: str, *args):
        self.fetchrow_calls.append((query, args))
        if self.error is not None:
            raise self.error
        if "FROM chats" in query:
            return self.chat_rows.get(args[0])
        return None

    async def fetch(self, query: str, *args):
        self.fetch_calls.append((query, args))
        if self.error is not None:
            raise self.error
        if "FROM chat_messages" in query:
            return self.message_rows.get(args[0], [])
        return []

    async def execute(self, query: str, *args):
        self.execute_calls.append((query, args))
        if self.error is not None:
            raise self.error
        return "CREATE TABLE"

    @asynccontextmanager
    async def transaction(self):
        if self.error is not None:
            raise self.error
        statements: list[tuple[str, tuple]] = []
        self.transactions.append(statements)
        yield FakeTransactionConnection(self, statements)


def make_model(max_tokens: int = 100) -> Model:
    return Model(name="gpt-4o-mini", max_tokens=max_tokens)


def make_chat(
    *,
    chat_id: str = "chat-1",
    user_id: str = "user-1",
    max_tokens: int = 100,
    history: Sequence[tuple[str, str]] = (),
) -> Chat:
    model = make_model(max_tokens)
    config = ChatConfig(model=model, initial_system_message="You are a helpful assistant")
    chat = Chat.create(user_id, Message.create("system", "You are a helpful assistant", model), config, chat_id=chat_id)
    for role, content in history:
        chat.add_message(Message.create(role, content, model))
    return chat


def make_input(
    *,
    chat_id: str = "chat-1",
    user_id: str = "user-1",
    message: str = "Hello",
    model_max_tokens: int = 100,
) -> ChatCompletionInput:
    return ChatCompletionInput(
        chat_id=chat_id,
        user_id=user_id,
        user_message=message,
        config=ChatCompletionConfigInput(
            model="gpt-4o-mini",
            model_max_tokens=model_max_tokens,
            temperature=0.2,
            top_p=1.0,
            n=1,
            stop=("###",),
            max_tokens=256,
            initial_system_message="You are a helpful assistant",
        ),
    )


@pytest.fixture
def fake_store() -> FakeChatStore:
    return FakeChatStore()


@pytest.fixture
def fake_database_service() -> FakeDatabaseService:
    return FakeDatabaseService()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(OPENAI_API_KEY="sk-test")


def build_test_request(container: punq.Container):
    """Build a request-shaped object using a real punq container in app state."""

    return SimpleNamespace(app=SimpleNamespace(state=SimpleNamespace(container=container)))


def build_test_container(bindings: dict[object, object]) -> punq.Container:
    """Create a punq container and bind protocol/service keys to test doubles."""

    container = punq.Container()
    for key, value in bindings.items():
        container.register(key, instance=value)
    return container


