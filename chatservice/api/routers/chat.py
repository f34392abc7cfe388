from collections.abc import AsyncIterator
import logging

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
import punq

from chatservice.api.schemas.chat import ChatCompletionRequest
from chatservice.dependency_injection import get_container
from chatservice.services.chat_stream import encode_sse_event
from chatservice.services.contracts import ChatStreamServiceProtocol

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/chat", tags=["chat"])


def get_chat_stream_service(container: punq.Container = Depends(get_container)) -> ChatStreamServiceProtocol:
    return container.resolve(ChatStreamServiceProtocol)


async def _sse_stream(
    service: ChatStreamServiceProtocol,
    payload: ChatCompletionRequest,
) -> AsyncIterator[str]:
    async for event in service.stream_completion(
        chat_id=payload.chat_id or "",
        user_id=payload.user_id,
        message=payload.message,
    ):
        yield encode_sse_event(event)


@router.post(
    "/completions/stream",
    summary="Stream an assistant reply for a chat turn",
    description=(
        "Loads or creates the conversation, streams cumulative assistant snapshots as `snapshot` events, "
        "then emits `done` once the turn is persisted or `error` with the failed phase."
    ),
)
async def stream_completion(
    payload: ChatCompletionRequest,
    service: ChatStreamServiceProtocol = Depends(get_chat_stream_service),
) -> StreamingResponse:
    logger.info("chat completion request", extra={"chat_id": payload.chat_id, "user_id": payload.user_id})
    headers = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}
    return StreamingResponse(_sse_stream(service, payload), media_type="text/event-stream", headers=headers)
