from __future__ import annotations

from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
import logging
from typing import Any

import asyncpg

from chatservice.domain.entities import Chat, ChatConfig, Message, Model
from chatservice.domain.errors import ChatNotFoundError, StoreError
from chatservice.services.contracts import DatabaseServiceProtocol

logger = logging.getLogger(__name__)

CHAT_SCHEMA_DDL = """
CREATE TABLE IF NOT EXISTS chats (
  id TEXT PRIMARY KEY,
  user_id TEXT NOT NULL,
  status TEXT NOT NULL DEFAULT 'active',
  token_usage INTEGER NOT NULL DEFAULT 0,
  model TEXT NOT NULL,
  model_max_tokens INTEGER NOT NULL,
  temperature DOUBLE PRECISION NOT NULL,
  top_p DOUBLE PRECISION NOT NULL,
  n INTEGER NOT NULL,
  stop TEXT[] NOT NULL DEFAULT '{}',
  max_tokens INTEGER NOT NULL,
  presence_penalty DOUBLE PRECISION NOT NULL,
  frequency_penalty DOUBLE PRECISION NOT NULL,
  initial_system_message TEXT NOT NULL,
  created_at TIMESTAMPTZ NOT NULL,
  updated_at TIMESTAMPTZ NOT NULL
);
CREATE TABLE IF NOT EXISTS chat_messages (
  id TEXT PRIMARY KEY,
  chat_id TEXT NOT NULL REFERENCES chats (id) ON DELETE CASCADE,
  role TEXT NOT NULL,
  content TEXT NOT NULL,
  tokens INTEGER NOT NULL,
  model TEXT NOT NULL,
  sequence INTEGER NOT NULL,
  erased BOOLEAN NOT NULL DEFAULT FALSE,
  created_at TIMESTAMPTZ NOT NULL,
  UNIQUE (chat_id, sequence)
);
"""

_INSERT_CHAT = """
INSERT INTO chats (
  id, user_id, status, token_usage, model, model_max_tokens, temperature, top_p, n, stop,
  max_tokens, presence_penalty, frequency_penalty, initial_system_message, created_at, updated_at
)
VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10::text[], $11, $12, $13, $14, $15, $16)
ON CONFLICT (id) DO NOTHING
"""

_UPDATE_CHAT = """
UPDATE chats
SET status = $2, token_usage = $3, updated_at = $4
WHERE id = $1
"""

_INSERT_MESSAGE = """
INSERT INTO chat_messages (id, chat_id, role, content, tokens, model, sequence, created_at)
VALUES (
  $1,
  $2,
  $3,
  $4,
  $5,
  $6,
  COALESCE(
    (
      SELECT MAX(m.sequence)
      FROM chat_messages m
      WHERE m.chat_id = $2
    ),
    0
  ) + 1,
  $7
)
ON CONFLICT (id) DO NOTHING
"""

_MARK_ERASED = """
UPDATE chat_messages
SET erased = TRUE
WHERE chat_id = $1 AND id = ANY($2::text[])
"""

_NOTHING_INSERTED = "INSERT 0 0"

_SELECT_CHAT = """
SELECT
  id, user_id, status, model, model_max_tokens, temperature, top_p, n, stop, max_tokens,
  presence_penalty, frequency_penalty, initial_system_message, created_at, updated_at
FROM chats
WHERE id = $1
"""

_SELECT_MESSAGES = """
SELECT id, role, content, tokens, created_at
FROM chat_messages
WHERE chat_id = $1 AND NOT erased
ORDER BY sequence ASC
"""


@contextmanager
def _store_errors(operation: str, chat_id: str) -> Iterator[None]:
    try:
        yield
    except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, RuntimeError) as exc:
        logger.warning("chat store operation failed", extra={"operation": operation, "chat_id": chat_id})
        raise StoreError(f"{operation} failed for chat {chat_id}: {exc}") from exc


class PostgresChatStore:
    """Chat aggregate persistence over the asyncpg database service.

    Messages are only ever inserted, and only those the chat reports as unsaved. Messages
    evicted from the live history are flagged ``erased`` and skipped on load. Creating a
    chat whose id is already taken writes nothing.
    """

    def __init__(self, database: DatabaseServiceProtocol) -> None:
        self._database = database

    async def ensure_schema(self) -> None:
        with _store_errors("ensure_schema", "-"):
            await self._database.execute(CHAT_SCHEMA_DDL)

    async def find_chat_by_id(self, chat_id: str) -> Chat:
        with _store_errors("find_chat_by_id", chat_id):
            row = await self._database.fetchrow(_SELECT_CHAT, chat_id)
            if row is None:
                raise ChatNotFoundError(f"chat {chat_id} not found")
            message_rows = await self._database.fetch(_SELECT_MESSAGES, chat_id)
        return self._chat_from_rows(row, message_rows)

    async def create_chat(self, chat: Chat) -> bool:
        with _store_errors("create_chat", chat.id):
            async with self._database.transaction() as connection:
                status = await connection.execute(_INSERT_CHAT, *self._chat_args(chat))
                if status == _NOTHING_INSERTED:
                    logger.info("chat already exists, skipping create", extra={"chat_id": chat.id})
                    return False
                for message in chat.unsaved_messages:
                    await connection.execute(_INSERT_MESSAGE, *self._message_args(chat, message))
        chat.mark_saved()
        logger.debug("chat created", extra={"chat_id": chat.id, "messages_count": len(chat.messages)})
        return True

    async def save_chat(self, chat: Chat) -> None:
        pending = chat.unsaved_messages
        with _store_errors("save_chat", chat.id):
            async with self._database.transaction() as connection:
                await connection.execute(_INSERT_CHAT, *self._chat_args(chat))
                await connection.execute(_UPDATE_CHAT, chat.id, chat.status, chat.token_usage, chat.updated_at)
                for message in pending:
                    await connection.execute(_INSERT_MESSAGE, *self._message_args(chat, message))
                if chat.erased_messages:
                    await connection.execute(_MARK_ERASED, chat.id, [message.id for message in chat.erased_messages])
        chat.mark_saved()
        logger.debug("chat saved", extra={"chat_id": chat.id, "inserted_messages": len(pending)})

    @staticmethod
    def _chat_args(chat: Chat) -> tuple[Any, ...]:
        config = chat.config
        return (
            chat.id,
            chat.user_id,
            chat.status,
            chat.token_usage,
            config.model.name,
            config.model.max_tokens,
            config.temperature,
            config.top_p,
            config.n,
            list(config.stop),
            config.max_tokens,
            config.presence_penalty,
            config.frequency_penalty,
            config.initial_system_message,
            chat.created_at,
            chat.updated_at,
        )

    @staticmethod
    def _message_args(chat: Chat, message: Message) -> tuple[Any, ...]:
        return (
            message.id,
            chat.id,
            message.role,
            message.content,
            message.tokens,
            message.model.name,
            message.created_at,
        )

    @staticmethod
    def _chat_from_rows(row: Mapping[str, Any], message_rows: Sequence[Mapping[str, Any]]) -> Chat:
        model = Model(name=row["model"], max_tokens=row["model_max_tokens"])
        config = ChatConfig(
            model=model,
            temperature=row["temperature"],
            top_p=row["top_p"],
            n=row["n"],
            stop=tuple(row["stop"] or ()),
            max_tokens=row["max_tokens"],
            presence_penalty=row["presence_penalty"],
            frequency_penalty=row["frequency_penalty"],
            initial_system_message=row["initial_system_message"],
        )
        messages = [
            Message(
                id=message_row["id"],
                role=message_row["role"],
                content=message_row["content"],
                tokens=message_row["tokens"],
                model=model,
                created_at=message_row["created_at"],
            )
            for message_row in message_rows
        ]
        return Chat(
            id=row["id"],
            user_id=row["user_id"],
            config=config,
            messages=messages,
            status=row["status"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
