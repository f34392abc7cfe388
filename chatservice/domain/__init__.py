"""Conversation entities, tokenization and the error taxonomy of the chat use case."""

from chatservice.domain.entities import Chat, ChatConfig, HistoryPolicy, Message, Model
from chatservice.domain.errors import (
    BudgetExceededError,
    ChatCommitError,
    ChatNotFoundError,
    ChatServiceError,
    ProviderError,
    StoreError,
    TokenizationError,
    TurnPhase,
    ValidationError,
)

__all__ = [
    "BudgetExceededError",
    "Chat",
    "ChatCommitError",
    "ChatConfig",
    "ChatNotFoundError",
    "ChatServiceError",
    "HistoryPolicy",
    "Message",
    "Model",
    "ProviderError",
    "StoreError",
    "TokenizationError",
    "TurnPhase",
    "ValidationError",
]
