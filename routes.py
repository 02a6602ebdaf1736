"""API route handlers for langhelper."""
import sqlite3
import time
from typing import Optional

from log import get_logger

logger = get_logger("langhelper.routes")

from fastapi import APIRouter, Depends, Header, HTTPException, Request

import store
from auth import require_password
from bloom import owner_key
from cache import cache_stats
from errors import FilterCorrupt, StoreUnavailable
from handlers import handle_events
from line_client import InvalidSignatureError, parse_events
from llm import OLLAMA_MODEL, OLLAMA_URL, check_ollama_connectivity
from models import COURSES, ReminderRequest, WordPushRequest
from scheduler import run_word_push, send_daily_reminders

router = APIRouter()


@router.post("/callback", tags=["LINE"], summary="LINE webhook")
async def callback(request: Request, x_line_signature: str = Header(default="")):
    body = (await request.body()).decode("utf-8")
    try:
        events = parse_events(body, x_line_signature)
    except InvalidSignatureError:
        logger.warning("Invalid webhook signature", extra={"component": "webhook", "status_code": 400})
        raise HTTPException(400, "Invalid signature")
    except ValueError:
        logger.warning("Malformed webhook body", extra={"component": "webhook", "status_code": 400})
        raise HTTPException(400, "Malformed webhook body")

    start = time.time()
    handled = await handle_events(events)
    logger.info("Webhook handled", extra={
        "component": "webhook", "count": handled,
        "duration_ms": round((time.time() - start) * 1000),
    })
    return "OK"


@router.post("/api/word-push", tags=["Vocabulary"], summary="Push today's words to one user")
async def word_push(req: WordPushRequest, _pw=Depends(require_password)):
    if not req.userId.strip():
        raise HTTPException(400, "userId is required")
    try:
        return await run_word_push(req.userId)
    except sqlite3.Error as e:
        logger.exception("Word push failed", extra={"component": "routes", "user_id": req.userId})
        return {"status": "error", "message": f"Failed to get user config: {e}", "data": {"userId": req.userId}}


@router.post("/api/reminder", tags=["Vocabulary"], summary="Send the daily vocabulary review")
async def reminder(req: Optional[ReminderRequest] = None, _pw=Depends(require_password)):
    date = req.date if req else None
    if date:
        try:
            time.strptime(date, "%Y-%m-%d")
        except ValueError:
            raise HTTPException(400, "date must be YYYY-MM-DD")
    return await send_daily_reminders(date)


@router.get("/api/filters/{user_id}/{course}", tags=["Vocabulary"], summary="Inspect a user's word filter")
async def filter_stats(user_id: str, course: str, _pw=Depends(require_password)):
    if course not in COURSES:
        raise HTTPException(400, "Unsupported course")
    try:
        bloom = store.SqliteFilterStore().load(owner_key(user_id, course))
    except FilterCorrupt as e:
        raise HTTPException(500, f"Filter is corrupt: {e}")
    except StoreUnavailable:
        raise HTTPException(503, "Filter store unavailable")
    if bloom is None:
        raise HTTPException(404, "Filter not found")
    set_bits = bloom.set_bit_count()
    return {
        "owner": bloom.owner,
        "size": bloom.size,
        "hashCount": bloom.hash_count,
        "setBits": set_bits,
        "fillRatio": round(set_bits / bloom.size, 4),
        "estimatedFalsePositiveRate": bloom.estimated_false_positive_rate(),
        "updatedAt": bloom.updated_at,
    }


@router.get("/api/health", tags=["System"], summary="Health check with stats")
async def health_check():
    ollama_ok = await check_ollama_connectivity()
    return {
        "status": "ok" if ollama_ok else "degraded",
        "ollama": {"reachable": ollama_ok, "url": OLLAMA_URL, "model": OLLAMA_MODEL},
        "cache": cache_stats(),
        "schedules": len(store.list_schedules()),
    }
