from fastapi import APIRouter

from estate_chat.api.v1 import changes, conversations, messages, ws

api_router = APIRouter()
api_router.include_router(conversations.router)
api_router.include_router(messages.router)
api_router.include_router(changes.router)
api_router.include_router(ws.router)
