from typing import Literal

from pydantic import BaseModel, Field


class ChatCompletionRequest(BaseModel):
    chat_id: str | None = Field(
        default=None,
        max_length=128,
        description="Conversation id; omitted or unknown ids start a new conversation under that id",
    )
    user_id: str = Field(..., min_length=1, description="Owner of the conversation")
    message: str = Field(..., min_length=1, description="User message text sent to the assistant")


class SnapshotEventPayload(BaseModel):
    chat_id: str = Field(..., description="Conversation the reply belongs to")
    user_id: str = Field(..., description="Owner of the conversation")
    content: str = Field(..., description="Cumulative assistant text generated so far in this turn")


class ErrorEventPayload(BaseModel):
    kind: str = Field(..., description="Machine-readable failure kind, e.g. provider_error or commit_error")
    phase: str | None = Field(default=None, description="Turn phase that failed")
    retryable: bool = Field(..., description="Whether replaying the whole turn may succeed")
    message: str = Field(..., description="Failure detail")


class ChatStreamEvent(BaseModel):
    type: Literal["snapshot", "done", "error"] = Field(..., description="SSE event type")
    data: SnapshotEventPayload | ErrorEventPayload
