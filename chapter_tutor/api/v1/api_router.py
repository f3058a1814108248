from fastapi import APIRouter

from chapter_tutor.api.v1.routers import cache, chat

v1_router = APIRouter(prefix="/api/v1")

v1_router.include_router(chat.router)
v1_router.include_router(cache.router)
