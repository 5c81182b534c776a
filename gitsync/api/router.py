from fastapi import APIRouter

from gitsync.api.routes import connect, health, jobs, sync, webhooks

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(webhooks.router, prefix="/github", tags=["github"])
api_router.include_router(connect.router, prefix="/github/connect", tags=["github"])
api_router.include_router(jobs.router, prefix="/sync", tags=["worker"])
api_router.include_router(sync.router, tags=["sync"])
