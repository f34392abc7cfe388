from __future__ import annotations

import json
from typing import Literal, TypedDict


class SnapshotEventData(TypedDict):
    chat_id: str
    user_id: str
    content: str


class ErrorEventData(TypedDict):
    kind: str
    phase: str | None
    retryable: bool
    message: str


ChatStreamEventType = Literal["snapshot", "done", "error"]


class ChatStreamEvent(TypedDict):
    type: ChatStreamEventType
    data: SnapshotEventData | ErrorEventData


def encode_sse_event(event: ChatStreamEvent) -> str:
    return f"event: {event['type']}\ndata: {json.dumps(event['data'])}\n\n"
