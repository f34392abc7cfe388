from chatservice.api.schemas.chat import ChatCompletionRequest, ChatStreamEvent, ErrorEventPayload, SnapshotEventPayload

__all__ = [
    "ChatCompletionRequest",
    "ChatStreamEvent",
    "ErrorEventPayload",
    "SnapshotEventPayload",
]
