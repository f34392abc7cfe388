"""Service layer orchestrating application use-cases."""

from chatservice.services.chat_completion_service import ChatCompletionService
from chatservice.services.chat_locks import ChatLockRegistry
from chatservice.services.chat_store import PostgresChatStore
from chatservice.services.chat_stream_service import ChatStreamService
from chatservice.services.completion_provider import OpenAICompletionProvider
from chatservice.services.database_service import DatabaseService

__all__ = [
    "ChatCompletionService",
    "ChatLockRegistry",
    "ChatStreamService",
    "DatabaseService",
    "OpenAICompletionProvider",
    "PostgresChatStore",
]
