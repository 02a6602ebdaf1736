"""Webhook event dispatch and the onboarding conversation.

Every event is handled on its own: a failure is logged and answered with a
"please retry later" reply so one bad event never fails the whole webhook.
"""
import re as _re
import sqlite3
import time
from enum import Enum
from typing import Optional

from linebot.v3.webhooks import (
    FollowEvent, MessageEvent, PostbackEvent, TextMessageContent, UnfollowEvent,
)

from log import get_logger

logger = get_logger("langhelper.handlers")

import messages
import scheduler
import store
from auth import rate_limit_check, rate_limit_cleanup
from cache import cache_get, cache_key, cache_put
from errors import GeneratorUnavailable
from line_client import course_carousel, get_line_client, labelled_quick_replies, text_message
from llm import translate
from models import (
    COURSES, DAILY_WORD_CHOICES, DEFAULT_DAILY_WORDS, DEFAULT_PUSH_TIME, DEFAULT_TIMEZONE,
    IELTS_MAX_SCORE, PUSH_TIME_CHOICES, TOEIC_MAX_SCORE, TranslationResponse, UserConfig,
)

MAX_INPUT_LEN = 200

# Conversation state keys
STATE_COURSE = "push_course"
STATE_DAILY_WORDS = "push_daily_words"

PUSH_COURSE_PREFIX = "推播設定:"
DAILY_WORDS_PREFIX = "單字量:"
PUSH_TIME_PREFIX = "時間:"

COURSE_INTEREST_TEXTS = {
    "我對多益有興趣": "toeic",
    "我對雅思有興趣": "ielts",
}

_SCORE_RE = _re.compile(r"^\s*(\d+(?:\.\d+)?)\s*$")


class EventKind(Enum):
    FOLLOW = "follow"
    UNFOLLOW = "unfollow"
    TEXT = "text"
    POSTBACK = "postback"
    OTHER = "other"


def classify_event(event) -> EventKind:
    if isinstance(event, FollowEvent):
        return EventKind.FOLLOW
    if isinstance(event, UnfollowEvent):
        return EventKind.UNFOLLOW
    if isinstance(event, MessageEvent) and isinstance(event.message, TextMessageContent):
        return EventKind.TEXT
    if isinstance(event, PostbackEvent):
        return EventKind.POSTBACK
    return EventKind.OTHER


def _user_id(event) -> Optional[str]:
    source = getattr(event, "source", None)
    return getattr(source, "user_id", None)


# --- Reply helpers ---

def _reply(reply_token: str, text: str):
    get_line_client().reply_text(reply_token, text)


def _reply_with_carousel(reply_token: str, text: str, alt_text: str):
    get_line_client().reply_messages(reply_token, [text_message(text), course_carousel(alt_text)])


def _daily_words_quick_reply(text: str):
    return labelled_quick_replies(text, [(f"{n}個單字", f"{DAILY_WORDS_PREFIX}{n}") for n in DAILY_WORD_CHOICES])


def _push_time_quick_reply(text: str):
    return labelled_quick_replies(text, [(label, f"{PUSH_TIME_PREFIX}{t}") for t, label in PUSH_TIME_CHOICES.items()])


# --- Event handlers ---

async def handle_follow(event, user_id: str):
    logger.info("User followed the bot", extra={"component": "handlers", "user_id": user_id})
    display_name = get_line_client().get_display_name(user_id)
    try:
        # Re-following keeps earlier settings
        config = store.get_user_config(user_id) or UserConfig(userId=user_id)
        if display_name:
            config.displayName = display_name
        store.save_user_config(config)
    except sqlite3.Error:
        logger.exception("Failed to create initial user record", extra={"component": "handlers", "user_id": user_id})
    send_greeting(event.reply_token)


async def handle_unfollow(event, user_id: str):
    if store.delete_schedule(user_id):
        logger.info("Removed push schedule of unfollowed user", extra={"component": "handlers", "user_id": user_id})
    store.state_clear(user_id)


async def handle_postback(event, user_id: str):
    await handle_text(event, user_id, event.postback.data or "")


async def handle_message(event, user_id: str):
    await handle_text(event, user_id, event.message.text or "")


async def handle_other(event, user_id: str):
    logger.debug("Ignoring event", extra={"component": "handlers", "detail": getattr(event, "type", None)})


EVENT_HANDLERS = {
    EventKind.FOLLOW: handle_follow,
    EventKind.UNFOLLOW: handle_unfollow,
    EventKind.TEXT: handle_message,
    EventKind.POSTBACK: handle_postback,
    EventKind.OTHER: handle_other,
}


async def handle_events(events: list) -> int:
    """Dispatch each webhook event. Returns the number handled without error."""
    handled = 0
    for event in events:
        kind = classify_event(event)
        user_id = _user_id(event)
        if user_id is None and kind is not EventKind.OTHER:
            logger.warning("Event without user id", extra={"component": "handlers", "detail": kind.value})
            continue
        try:
            await EVENT_HANDLERS[kind](event, user_id)
            handled += 1
        except Exception:
            logger.exception("Event handling failed", extra={
                "component": "handlers", "user_id": user_id, "detail": kind.value,
            })
            reply_token = getattr(event, "reply_token", None)
            if reply_token:
                _reply(reply_token, messages.GENERIC_ERROR)
    return handled


# --- Text commands ---

def send_greeting(reply_token: str):
    _reply_with_carousel(reply_token, messages.GREETING, "字卡訂閱")


def handle_push_settings_start(reply_token: str):
    _reply_with_carousel(reply_token, messages.PUSH_SETTINGS_START, "字卡類型選擇")


def handle_course_interest(reply_token: str, user_id: str, config: Optional[UserConfig], course: str):
    display_name = config.displayName if config else ""
    # Level 0 means "waiting for a score"
    store.save_user_config(UserConfig(userId=user_id, displayName=display_name, course=course, level=0))
    _reply(reply_token, messages.COURSE_INTEREST[course])


def handle_push_settings(reply_token: str, user_id: str, config: Optional[UserConfig]):
    if config is None or not config.course:
        handle_push_settings_start(reply_token)
        return
    store.state_put(user_id, STATE_COURSE, config.course)
    get_line_client().reply_messages(reply_token, [
        _daily_words_quick_reply(messages.daily_words_picker(config.course)),
    ])


def handle_use_default_settings(reply_token: str, user_id: str, config: Optional[UserConfig]):
    if config is None or not config.course:
        _reply(reply_token, messages.NEED_COURSE_AND_SCORE)
        return
    config.dailyWords = DEFAULT_DAILY_WORDS
    config.pushTime = DEFAULT_PUSH_TIME
    config.timezone = DEFAULT_TIMEZONE
    store.save_user_config(config)
    _finish_push_settings(reply_token, user_id, config, default=True)


def handle_show_settings(reply_token: str, user_id: str):
    try:
        config = store.get_user_config(user_id)
    except sqlite3.Error:
        logger.exception("Failed to load user settings", extra={"component": "handlers", "user_id": user_id})
        _reply(reply_token, messages.SETTINGS_UNAVAILABLE)
        return
    _reply(reply_token, messages.format_user_settings(config))


def _finish_push_settings(reply_token: str, user_id: str, config: UserConfig, default: bool = False):
    try:
        scheduler.setup_user_push_schedule(user_id, config.pushTime, config.timezone)
    except (ValueError, sqlite3.Error):
        logger.exception("Failed to create push schedule", extra={"component": "handlers", "user_id": user_id})
        _reply(reply_token, messages.SCHEDULE_FAILED)
        return
    _reply(reply_token, messages.push_settings_done(config.course, config.dailyWords, config.pushTime, default))


# --- Push-setting responses ---

def handle_push_settings_response(reply_token: str, user_id: str, text: str,
                                  config: Optional[UserConfig]) -> bool:
    if text.startswith(PUSH_COURSE_PREFIX):
        course = text[len(PUSH_COURSE_PREFIX):].strip()
        if course not in COURSES:
            return False
        store.state_put(user_id, STATE_COURSE, course)
        get_line_client().reply_messages(reply_token, [
            _daily_words_quick_reply(messages.daily_words_picker(course, from_settings=False)),
        ])
        return True

    if text.startswith(DAILY_WORDS_PREFIX):
        value = text[len(DAILY_WORDS_PREFIX):].strip()
        if not value.isdigit() or int(value) not in DAILY_WORD_CHOICES:
            logger.warning("Unknown daily words value", extra={"component": "handlers", "detail": value})
            return False
        daily_words = int(value)
        store.state_put(user_id, STATE_DAILY_WORDS, daily_words)
        get_line_client().reply_messages(reply_token, [
            _push_time_quick_reply(messages.push_time_picker(daily_words)),
        ])
        return True

    if text.startswith(PUSH_TIME_PREFIX):
        push_time = text[len(PUSH_TIME_PREFIX):].strip()
        handle_push_time_selection(reply_token, user_id, push_time, config)
        return True

    return False


def handle_push_time_selection(reply_token: str, user_id: str, push_time: str,
                               config: Optional[UserConfig]):
    try:
        scheduler.parse_push_time(push_time)
    except ValueError:
        get_line_client().reply_messages(reply_token, [
            _push_time_quick_reply("時間格式不正確，請重新選擇推播時間："),
        ])
        return

    daily_words = store.state_get(user_id, STATE_DAILY_WORDS) or DEFAULT_DAILY_WORDS
    course = store.state_get(user_id, STATE_COURSE) or (config.course if config else "")
    if not course:
        _reply(reply_token, messages.NEED_COURSE_AND_SCORE)
        return

    config = config or UserConfig(userId=user_id)
    config.course = course
    config.dailyWords = daily_words
    config.pushTime = push_time
    config.timezone = DEFAULT_TIMEZONE
    store.save_user_config(config)
    store.state_clear(user_id, STATE_COURSE, STATE_DAILY_WORDS)
    _finish_push_settings(reply_token, user_id, config)


# --- Score input ---

def parse_score(course: str, text: str) -> Optional[int]:
    """Stored score for ``text``, or None when it is not a score at all.

    IELTS accepts one decimal and is stored x10; TOEIC takes whole numbers.
    """
    match = _SCORE_RE.match(text)
    if not match:
        return None
    raw = match.group(1)
    if course == "ielts":
        return int(round(float(raw) * 10))
    if "." in raw:
        return None
    return int(raw)


def handle_score_input(reply_token: str, user_id: str, text: str, config: Optional[UserConfig]) -> bool:
    if config is None or not config.course or config.level != 0:
        return False
    score = parse_score(config.course, text)
    if score is None:
        return False

    max_score = IELTS_MAX_SCORE if config.course == "ielts" else TOEIC_MAX_SCORE
    if not 0 <= score <= max_score:
        _reply(reply_token, messages.score_out_of_range(config.course))
        return True

    config.level = score
    config.dailyWords = 0
    config.pushTime = ""
    config.timezone = ""
    store.save_user_config(config)
    logger.info("Saved score", extra={"component": "handlers", "user_id": user_id, "course": config.course})
    prompt = messages.push_settings_prompt(messages.score_saved(config.course, score))
    get_line_client().reply_messages(reply_token, [
        labelled_quick_replies(prompt, [("設定推播", "/設定推播詳細"), ("使用預設設定", "/使用預設設定")]),
    ])
    return True


# --- Translation fallback ---

async def lookup_translation(text: str) -> TranslationResponse:
    key = cache_key(text)
    cached = cache_get(key)
    if cached is not None:
        logger.info("Translation cache hit", extra={"component": "handlers"})
        return TranslationResponse(**cached)
    start = time.time()
    response = await translate(text)
    cache_put(key, response.dict())
    logger.info("Translated", extra={
        "component": "handlers", "count": len(response.translations),
        "duration_ms": round((time.time() - start) * 1000),
    })
    return response


async def handle_translation(reply_token: str, user_id: str, text: str):
    rate_limit_cleanup()
    if not rate_limit_check(user_id):
        _reply(reply_token, messages.RATE_LIMITED)
        return
    if len(text) > MAX_INPUT_LEN:
        _reply(reply_token, messages.INPUT_TOO_LONG)
        return

    try:
        response = await lookup_translation(text)
    except GeneratorUnavailable:
        logger.exception("Translation failed", extra={"component": "handlers", "user_id": user_id})
        _reply(reply_token, messages.TRANSLATE_ERROR)
        return

    if not response.translations:
        _reply(reply_token, messages.NO_TRANSLATION)
        return

    for t in response.translations:
        try:
            store.save_word(user_id, t.word, t.partOfSpeech, t.meaning, t.example.en)
        except sqlite3.Error:
            logger.exception("Failed to save word", extra={"component": "handlers", "user_id": user_id})
    _reply(reply_token, messages.format_translations(response))


async def handle_text(event, user_id: str, text: str):
    text = text.strip()
    reply_token = event.reply_token
    if not text:
        return

    try:
        config = store.get_user_config(user_id)
    except sqlite3.Error:
        logger.exception("Failed to get user config", extra={"component": "handlers", "user_id": user_id})
        config = None

    if text == "/說明":
        send_greeting(reply_token)
    elif text in COURSE_INTEREST_TEXTS:
        handle_course_interest(reply_token, user_id, config, COURSE_INTEREST_TEXTS[text])
    elif text == "/設定推播":
        handle_push_settings_start(reply_token)
    elif text == "/設定推播詳細":
        handle_push_settings(reply_token, user_id, config)
    elif text == "/使用預設設定":
        handle_use_default_settings(reply_token, user_id, config)
    elif text == "/個人設定":
        handle_show_settings(reply_token, user_id)
    elif text.startswith("/"):
        _reply(reply_token, messages.UNKNOWN_COMMAND)
    elif handle_push_settings_response(reply_token, user_id, text, config):
        pass
    elif handle_score_input(reply_token, user_id, text, config):
        pass
    else:
        await handle_translation(reply_token, user_id, text)
