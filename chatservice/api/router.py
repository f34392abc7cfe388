from fastapi import APIRouter

from chatservice.api.routers.chat import router as chat_router

api_router = APIRouter()
api_router.include_router(chat_router)
