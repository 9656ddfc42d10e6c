"""
Bitx Server - FastAPI application
Chat streaming, conversation store, Bitcoin tools and scheduled actions
"""
import asyncio
import logging

from fastapi import FastAPI

from .api import router
from .config import settings
from .database import init_db

logger = logging.getLogger(__name__)

app = FastAPI(title="Bitx")
app.include_router(router)

_background_tasks = set()


@app.on_event("startup")
async def startup():
    await init_db()
    if settings.action_scheduler_enabled:
        from .scheduler import start_action_scheduler
        task = asyncio.create_task(start_action_scheduler())
        _background_tasks.add(task)
        task.add_done_callback(_background_tasks.discard)
    else:
        logger.info("Action scheduler disabled (expecting GET /api/cron/15-min)")


@app.on_event("shutdown")
async def shutdown():
    for task in list(_background_tasks):
        task.cancel()


@app.get("/health")
async def health():
    """Health check endpoint"""
    return {"ok": True}
