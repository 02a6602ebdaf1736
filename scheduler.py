"""Daily word pushes and the nightly vocabulary review.

Each user gets one schedule row holding their local push time and the
equivalent UTC cron expression. ``push_scheduler_task`` polls the table and
runs :func:`run_word_push` for every schedule that is due.
"""
import asyncio
import os
import time
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Set
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from log import get_logger

logger = get_logger("langhelper.scheduler")

import store
from bloom import owner_key
from errors import LangHelperError, SupplyExhausted
from line_client import get_line_client
from llm import generate_words
from messages import format_word_push, format_word_records
from models import course_name
from supply import record_delivered, supply_words

# --- Config ---
SCHEDULER_INTERVAL = int(os.environ.get("LANGHELPER_SCHEDULER_INTERVAL", "30"))
REMINDER_TIME = os.environ.get("LANGHELPER_REMINDER_TIME", "21:00")
REMINDER_TIMEZONE = "Asia/Taipei"

_background_tasks: Set[asyncio.Task] = set()


def parse_push_time(push_time: str):
    """``"HH:MM"`` -> ``(hour, minute)``; anything else raises ValueError."""
    parsed = datetime.strptime(push_time.strip(), "%H:%M")
    return parsed.hour, parsed.minute


def _load_zone(tz: str) -> ZoneInfo:
    try:
        return ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f"invalid timezone: {tz}") from e


def utc_push_time(push_time: str, tz: str, now: Optional[datetime] = None) -> str:
    """Local push time converted to UTC ``HH:MM`` using today's offset in ``tz``."""
    try:
        hour, minute = parse_push_time(push_time)
    except ValueError as e:
        raise ValueError(f"invalid time format: {push_time}") from e
    zone = _load_zone(tz)
    now = (now or datetime.now(timezone.utc)).astimezone(zone)
    local = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    return local.astimezone(timezone.utc).strftime("%H:%M")


def daily_cron_expression(push_time: str, tz: str, now: Optional[datetime] = None) -> str:
    """Six-field cron running once a day at ``push_time`` local time, expressed in UTC."""
    hour, minute = (int(p) for p in utc_push_time(push_time, tz, now).split(":"))
    return f"cron({minute} {hour} * * ? *)"


def setup_user_push_schedule(user_id: str, push_time: str, tz: str) -> str:
    """Replace the user's schedule and fire one push right away.

    Raises ValueError for a bad time or timezone; nothing is saved then.
    """
    now = datetime.now(timezone.utc)
    cron_expression = daily_cron_expression(push_time, tz, now)
    if store.delete_schedule(user_id):
        logger.info("Replaced existing schedule", extra={"component": "scheduler", "user_id": user_id})
    store.save_schedule(user_id, push_time, tz, cron_expression)
    # The immediate push stands in for today's run once the push minute has passed
    if utc_push_time(push_time, tz, now) <= now.strftime("%H:%M"):
        store.mark_schedule_run(user_id, now.strftime("%Y-%m-%d"))
    logger.info("Created push schedule", extra={
        "component": "scheduler", "user_id": user_id, "detail": cron_expression,
    })
    trigger_immediate_push(user_id)
    return cron_expression


def trigger_immediate_push(user_id: str) -> asyncio.Task:
    """Run one word push in the background. The caller does not wait for it."""
    task = asyncio.get_running_loop().create_task(_immediate_push(user_id))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    logger.info("Triggered immediate word push", extra={"component": "scheduler", "user_id": user_id})
    return task


async def _immediate_push(user_id: str):
    try:
        result = await run_word_push(user_id)
    except Exception:
        logger.exception("Immediate word push crashed", extra={"component": "scheduler", "user_id": user_id})
        return
    if result["status"] != "success":
        logger.warning("Immediate word push failed", extra={
            "component": "scheduler", "user_id": user_id, "detail": result["message"],
        })


def _error(message: str, user_id: str = "") -> dict:
    return {"status": "error", "message": message, "data": {"userId": user_id}}


async def run_word_push(user_id: str) -> dict:
    """Generate, deliver and record today's words for one user."""
    start = time.time()
    config = store.get_user_config(user_id)
    if config is None:
        logger.warning("Word push for unknown user", extra={"component": "scheduler", "user_id": user_id})
        return _error("User config not found", user_id)
    if not config.course or config.dailyWords <= 0:
        return _error("User has not finished push settings", user_id)

    owner = owner_key(user_id, config.course)
    filter_store = store.SqliteFilterStore()
    try:
        words = await supply_words(owner, config.dailyWords, config.level, generate_words,
                                   filter_store, config.course)
    except SupplyExhausted:
        return _error("No new words available", user_id)
    except LangHelperError as e:
        logger.error("Word supply failed", extra={
            "component": "scheduler", "user_id": user_id, "detail": f"{type(e).__name__}: {e}",
        })
        return _error(f"Failed to generate words: {e}", user_id)

    text = format_word_push(course_name(config.course), words)
    if not get_line_client().push_text(user_id, text):
        # Words still count as delivered
        logger.error("Word push delivery failed", extra={"component": "scheduler", "user_id": user_id})

    try:
        record_delivered(owner, words, filter_store)
    except LangHelperError as e:
        logger.error("Failed to record delivered words", extra={
            "component": "scheduler", "user_id": user_id, "detail": str(e),
        })
        return _error(f"Failed to update bloom filter: {e}", user_id)

    duration_ms = round((time.time() - start) * 1000)
    logger.info("Word push complete", extra={
        "component": "scheduler", "user_id": user_id, "course": config.course,
        "count": len(words), "duration_ms": duration_ms,
    })
    return {
        "status": "success",
        "message": "Vocabulary generated and sent successfully",
        "data": {"userId": user_id, "course": config.course, "wordCount": len(words)},
    }


def due_schedules(now: Optional[datetime] = None) -> List[dict]:
    """Schedules whose UTC push minute has passed today and that have not run today.

    A tick that arrives late (a slow push round, a restart) still picks up
    every schedule it missed earlier in the UTC day.
    """
    now = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    current = now.strftime("%H:%M")
    today = now.strftime("%Y-%m-%d")
    due = []
    for schedule in store.list_schedules():
        if schedule["last_run_date"] == today:
            continue
        try:
            push_at = utc_push_time(schedule["push_time"], schedule["timezone"], now)
        except ValueError:
            logger.warning("Skipping invalid schedule", extra={
                "component": "scheduler", "user_id": schedule["user_id"],
            })
            continue
        if push_at <= current:
            due.append(schedule)
    return due


async def run_due_pushes(now: Optional[datetime] = None) -> int:
    now = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    today = now.strftime("%Y-%m-%d")
    schedules = due_schedules(now)
    for schedule in schedules:
        store.mark_schedule_run(schedule["user_id"], today)
    results = await asyncio.gather(
        *(run_word_push(s["user_id"]) for s in schedules), return_exceptions=True,
    )
    for schedule, result in zip(schedules, results):
        if isinstance(result, BaseException):
            logger.error("Scheduled push crashed", extra={
                "component": "scheduler", "user_id": schedule["user_id"], "detail": repr(result),
            })
    return len(schedules)


async def push_scheduler_task():
    logger.info("Push scheduler started", extra={"component": "scheduler", "detail": f"every {SCHEDULER_INTERVAL}s"})
    while True:
        try:
            count = await run_due_pushes()
            if count:
                logger.info("Ran scheduled pushes", extra={"component": "scheduler", "count": count})
            store.cleanup_expired_state()
        except Exception:
            logger.exception("Push scheduler tick failed", extra={"component": "scheduler"})
        await asyncio.sleep(SCHEDULER_INTERVAL)


async def send_daily_reminders(date: Optional[str] = None) -> dict:
    """Push the review of ``date``'s looked-up words (default: today, UTC)."""
    date = date or datetime.now(timezone.utc).strftime("%Y-%m-%d")
    vocabularies = store.get_vocabularies_by_date(date)
    client = get_line_client()
    sent = failed = 0
    for vocabulary in vocabularies:
        if not vocabulary.words:
            continue
        if client.push_text(vocabulary.userId, format_word_records(vocabulary.words)):
            sent += 1
        else:
            failed += 1
    logger.info("Daily reminders sent", extra={
        "component": "reminder", "detail": date, "count": sent,
    })
    return {"date": date, "users": len(vocabularies), "sent": sent, "failed": failed}


def seconds_until(clock: str, tz: str, now: Optional[datetime] = None) -> float:
    """Seconds from ``now`` to the next ``clock`` (HH:MM) in ``tz``."""
    hour, minute = parse_push_time(clock)
    zone = _load_zone(tz)
    now = (now or datetime.now(timezone.utc)).astimezone(zone)
    target = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


async def reminder_task():
    if not REMINDER_TIME:
        logger.info("Nightly reminder disabled", extra={"component": "reminder"})
        return
    while True:
        await asyncio.sleep(seconds_until(REMINDER_TIME, REMINDER_TIMEZONE))
        try:
            await send_daily_reminders()
        except Exception:
            logger.exception("Nightly reminder failed", extra={"component": "reminder"})
