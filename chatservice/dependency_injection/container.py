from __future__ import annotations

import punq
from fastapi import Request

from chatservice.core.settings import Settings
from chatservice.services.chat_completion_service import ChatCompletionService
from chatservice.services.chat_locks import ChatLockRegistry
from chatservice.services.chat_store import PostgresChatStore
from chatservice.services.chat_stream_service import ChatStreamService
from chatservice.services.completion_provider import OpenAICompletionProvider
from chatservice.services.contracts import (
    ChatCompletionServiceProtocol,
    ChatStoreProtocol,
    ChatStreamServiceProtocol,
    CompletionProviderProtocol,
    DatabaseServiceProtocol,
)
from chatservice.services.database_service import DatabaseService


def build_container(settings: Settings) -> punq.Container:
    container = punq.Container()
    container.register(Settings, instance=settings)

    container.register(
        DatabaseServiceProtocol,
        factory=lambda: DatabaseService(
            dsn=settings.chat_db_dsn,
            reshape_schema_query=settings.reshape_schema_query,
            pool_min_size=settings.chat_db_pool_min_size,
            pool_max_size=settings.chat_db_pool_max_size,
        ),
        scope=punq.Scope.singleton,
    )
    container.register(
        CompletionProviderProtocol,
        factory=lambda: OpenAICompletionProvider(
            api_key=settings.openai_api_key,
            timeout_seconds=settings.provider_timeout_seconds,
            base_url=settings.openai_base_url,
        ),
        scope=punq.Scope.singleton,
    )
    container.register(ChatStoreProtocol, factory=PostgresChatStore, scope=punq.Scope.singleton)
    container.register(ChatLockRegistry, factory=ChatLockRegistry, scope=punq.Scope.singleton)
    container.register(
        ChatCompletionServiceProtocol,
        factory=lambda: ChatCompletionService(
            store=container.resolve(ChatStoreProtocol),
            provider=container.resolve(CompletionProviderProtocol),
            locks=container.resolve(ChatLockRegistry),
            history_policy=settings.chat_history_policy,
        ),
        scope=punq.Scope.singleton,
    )
    container.register(ChatStreamServiceProtocol, factory=ChatStreamService, scope=punq.Scope.singleton)

    return container


def get_container(request: Request) -> punq.Container:
    return request.app.state.container
