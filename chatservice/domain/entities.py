"""Conversation data model: models, messages, chat configuration and the chat aggregate."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Literal, get_args
import uuid

from chatservice.domain.errors import BudgetExceededError, ValidationError
from chatservice.domain.tokens import count_tokens

Role = Literal["system", "user", "assistant"]
ChatStatus = Literal["active", "ended"]

_ROLES: frozenset[str] = frozenset(get_args(Role))


class HistoryPolicy(StrEnum):
    """What ``Chat.add_message`` does when a message would overflow the model budget."""

    REJECT = "reject"
    EVICT_OLDEST = "evict_oldest"


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class Model:
    name: str
    max_tokens: int


@dataclass(frozen=True)
class Message:
    """One conversation turn. ``tokens`` is computed once against ``model`` and never recomputed."""

    role: Role
    content: str
    tokens: int
    model: Model
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def create(cls, role: str, content: str, model: Model) -> Message:
        if role not in _ROLES:
            raise ValidationError(f"invalid message role: {role!r}")
        if not content:
            raise ValidationError("message content must not be empty")
        return cls(role=role, content=content, tokens=count_tokens(content, model.name), model=model)  # type: ignore[arg-type]


@dataclass(frozen=True)
class ChatConfig:
    model: Model
    temperature: float = 1.0
    top_p: float = 1.0
    n: int = 1
    stop: tuple[str, ...] = ()
    max_tokens: int = 0
    presence_penalty: float = 0.0
    frequency_penalty: float = 0.0
    initial_system_message: str = ""

    def validate(self) -> None:
        if not self.model.name.strip():
            raise ValidationError("model name must not be empty")
        if self.model.max_tokens <= 0:
            raise ValidationError("model max tokens must be positive")
        if not 0 <= self.temperature <= 2:
            raise ValidationError(f"invalid temperature: {self.temperature}")
        if not 0 <= self.top_p <= 1:
            raise ValidationError(f"invalid top_p: {self.top_p}")
        if self.n < 1:
            raise ValidationError(f"invalid n: {self.n}")
        if self.max_tokens < 0:
            raise ValidationError(f"invalid max_tokens: {self.max_tokens}")
        if not -2 <= self.presence_penalty <= 2:
            raise ValidationError(f"invalid presence_penalty: {self.presence_penalty}")
        if not -2 <= self.frequency_penalty <= 2:
            raise ValidationError(f"invalid frequency_penalty: {self.frequency_penalty}")


class Chat:
    """Conversation aggregate: bound configuration plus the ordered, append-only message history.

    The first message is always the system prompt and the summed message tokens never
    exceed ``config.model.max_tokens``. Messages dropped by ``HistoryPolicy.EVICT_OLDEST``
    are kept in ``erased_messages`` so storage can flag them instead of losing them.
    """

    def __init__(
        self,
        *,
        id: str,
        user_id: str,
        config: ChatConfig,
        messages: Iterable[Message],
        erased_messages: Iterable[Message] = (),
        status: ChatStatus = "active",
        history_policy: HistoryPolicy = HistoryPolicy.REJECT,
        created_at: datetime | None = None,
        updated_at: datetime | None = None,
        unsaved_message_ids: Iterable[str] = (),
    ) -> None:
        self.id = id
        self.user_id = user_id
        self.config = config
        self.status: ChatStatus = status
        self.history_policy = history_policy
        self.created_at = created_at or _utcnow()
        self.updated_at = updated_at or self.created_at
        self._messages = list(messages)
        self._erased_messages = list(erased_messages)
        self._unsaved_ids = set(unsaved_message_ids)

    @classmethod
    def create(
        cls,
        user_id: str,
        initial_message: Message,
        config: ChatConfig,
        *,
        chat_id: str | None = None,
        history_policy: HistoryPolicy = HistoryPolicy.REJECT,
    ) -> Chat:
        if not user_id:
            raise ValidationError("user id must not be empty")
        if initial_message.role != "system":
            raise ValidationError(f"initial message must have role 'system', got {initial_message.role!r}")
        config.validate()
        if initial_message.tokens > config.model.max_tokens:
            raise BudgetExceededError(
                f"system message uses {initial_message.tokens} tokens, "
                f"model {config.model.name} allows {config.model.max_tokens}"
            )
        return cls(
            id=chat_id or str(uuid.uuid4()),
            user_id=user_id,
            config=config,
            messages=[initial_message],
            history_policy=history_policy,
            unsaved_message_ids=[initial_message.id],
        )

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def erased_messages(self) -> tuple[Message, ...]:
        return tuple(self._erased_messages)

    @property
    def unsaved_messages(self) -> tuple[Message, ...]:
        """Messages appended since the chat was created or last saved, evicted ones included, oldest first."""
        pending = [message for message in (*self._erased_messages, *self._messages) if message.id in self._unsaved_ids]
        return tuple(sorted(pending, key=lambda message: message.created_at))

    @property
    def token_usage(self) -> int:
        return sum(message.tokens for message in self._messages)

    def add_message(self, message: Message) -> None:
        if self.status == "ended":
            raise ValidationError(f"chat {self.id} has ended")

        budget = self.config.model.max_tokens
        if self.token_usage + message.tokens <= budget:
            self._append(message)
            return

        if self.history_policy is HistoryPolicy.REJECT:
            raise BudgetExceededError(
                f"adding {message.tokens} tokens to chat {self.id} exceeds budget "
                f"({self.token_usage}/{budget})"
            )

        # The system prompt at index 0 is never evicted.
        evictable = 0
        freed = 0
        while self.token_usage - freed + message.tokens > budget and 1 + evictable < len(self._messages):
            freed += self._messages[1 + evictable].tokens
            evictable += 1
        if self.token_usage - freed + message.tokens > budget:
            raise BudgetExceededError(
                f"message of {message.tokens} tokens does not fit chat {self.id} "
                f"even after evicting history (budget {budget})"
            )

        self._erased_messages.extend(self._messages[1 : 1 + evictable])
        del self._messages[1 : 1 + evictable]
        self._append(message)

    def mark_saved(self) -> None:
        self._unsaved_ids.clear()

    def end(self) -> None:
        self.status = "ended"
        self.updated_at = _utcnow()

    def _append(self, message: Message) -> None:
        self._messages.append(message)
        self._unsaved_ids.add(message.id)
        self.updated_at = _utcnow()

    def __repr__(self) -> str:
        return f"Chat(id={self.id!r}, user_id={self.user_id!r}, messages={len(self._messages)}, status={self.status!r})"
