"""API route registration."""

from fastapi import APIRouter

from marketsnap.api.routes import health, queue, session, sync

api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])
api_router.include_router(queue.router, prefix="/queue", tags=["queue"])
api_router.include_router(sync.router, prefix="/sync", tags=["sync"])
api_router.include_router(session.router, prefix="/session", tags=["session"])
