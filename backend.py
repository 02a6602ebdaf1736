"""langhelper, a LINE vocabulary bot: translation, daily word pushes and nightly review."""
import asyncio
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI

from log import get_logger
from cache import load_cache, save_cache, is_cache_dirty
from routes import router
from scheduler import push_scheduler_task, reminder_task
from store import init_db

logger = get_logger("langhelper.backend")

# --- Config ---
BACKGROUND_TASKS_ENABLED = os.environ.get("LANGHELPER_BACKGROUND_TASKS", "1") != "0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    load_cache()
    tasks = []
    if BACKGROUND_TASKS_ENABLED:
        tasks.append(asyncio.create_task(push_scheduler_task()))
        tasks.append(asyncio.create_task(reminder_task()))
    logger.info("langhelper started", extra={"component": "backend", "count": len(tasks)})
    try:
        yield
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if is_cache_dirty():
            save_cache()
        logger.info("langhelper stopped", extra={"component": "backend"})


app = FastAPI(title="langhelper", lifespan=lifespan)
app.include_router(router)
