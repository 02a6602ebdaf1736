"""SQLite persistence: Bloom filters, user configs, vocabulary log,
conversation state and push schedules."""
import json
import os
import sqlite3
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Optional

from log import get_logger
from bloom import MembershipFilter
from errors import StoreUnavailable
from models import UserConfig, UserVocabulary, WordRecord

logger = get_logger("langhelper.store")

# --- Config ---
DB_PATH = Path(os.environ.get("LANGHELPER_DB_PATH", Path(__file__).parent / "langhelper.db"))
STATE_TTL = 30 * 60  # onboarding answers are kept for 30 minutes


def _now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def get_db() -> sqlite3.Connection:
    conn = sqlite3.connect(str(DB_PATH))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    return conn


def init_db():
    conn = get_db()
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS bloom_filters (
            owner TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            course TEXT NOT NULL,
            bits BLOB NOT NULL,
            size INTEGER NOT NULL,
            hash_count INTEGER NOT NULL,
            updated_at TEXT NOT NULL
        );
        CREATE TABLE IF NOT EXISTS user_configs (
            user_id TEXT PRIMARY KEY,
            display_name TEXT NOT NULL DEFAULT '',
            course TEXT NOT NULL DEFAULT '',
            level INTEGER NOT NULL DEFAULT 0,
            daily_words INTEGER NOT NULL DEFAULT 0,
            push_time TEXT NOT NULL DEFAULT '',
            timezone TEXT NOT NULL DEFAULT '',
            updated_at TEXT NOT NULL
        );
        CREATE TABLE IF NOT EXISTS vocabulary (
            date TEXT NOT NULL,
            user_id TEXT NOT NULL,
            words_json TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (date, user_id)
        );
        CREATE TABLE IF NOT EXISTS conversation_state (
            user_id TEXT NOT NULL,
            state_key TEXT NOT NULL,
            value_json TEXT NOT NULL,
            expires_at REAL NOT NULL,
            PRIMARY KEY (user_id, state_key)
        );
        CREATE TABLE IF NOT EXISTS push_schedules (
            user_id TEXT PRIMARY KEY,
            push_time TEXT NOT NULL,
            timezone TEXT NOT NULL,
            cron_expression TEXT NOT NULL,
            last_run_date TEXT NOT NULL DEFAULT '',
            updated_at TEXT NOT NULL
        );
    """)
    conn.close()


# --- Bloom filters ---

class SqliteFilterStore:
    """Filter Store backed by the bloom_filters table.

    Owners are ``"<userId>#<course>"`` keys; the whole bit array is rewritten
    on every save.
    """

    def load(self, owner: str) -> Optional[MembershipFilter]:
        try:
            conn = get_db()
            try:
                row = conn.execute(
                    "SELECT owner, bits, size, hash_count, updated_at FROM bloom_filters WHERE owner = ?",
                    (owner,),
                ).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.exception("Failed to load bloom filter", extra={"component": "store", "detail": owner})
            raise StoreUnavailable(f"failed to load filter {owner}") from e
        if row is None:
            return None
        return MembershipFilter.from_record({
            "owner": row["owner"],
            "bits": row["bits"],
            "size": row["size"],
            "hashCount": row["hash_count"],
            "updatedAt": row["updated_at"],
        })

    def save(self, bloom: MembershipFilter) -> None:
        bloom.updated_at = _now_iso()
        record = bloom.to_record()
        user_id, _, course = bloom.owner.partition("#")
        try:
            conn = get_db()
            try:
                conn.execute(
                    "INSERT INTO bloom_filters (owner, user_id, course, bits, size, hash_count, updated_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?) "
                    "ON CONFLICT(owner) DO UPDATE SET bits = excluded.bits, size = excluded.size, "
                    "hash_count = excluded.hash_count, updated_at = excluded.updated_at",
                    (record["owner"], user_id, course, sqlite3.Binary(record["bits"]),
                     record["size"], record["hashCount"], record["updatedAt"]),
                )
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.exception("Failed to save bloom filter", extra={"component": "store", "detail": bloom.owner})
            raise StoreUnavailable(f"failed to save filter {bloom.owner}") from e
        logger.info("Saved bloom filter", extra={"component": "store", "detail": bloom.owner,
                                                 "count": bloom.set_bit_count()})


# --- User configs ---

def _row_to_config(row) -> UserConfig:
    return UserConfig(
        userId=row["user_id"],
        displayName=row["display_name"],
        course=row["course"],
        level=row["level"],
        dailyWords=row["daily_words"],
        pushTime=row["push_time"],
        timezone=row["timezone"],
        updatedAt=row["updated_at"],
    )


def get_user_config(user_id: str) -> Optional[UserConfig]:
    conn = get_db()
    try:
        row = conn.execute("SELECT * FROM user_configs WHERE user_id = ?", (user_id,)).fetchone()
    finally:
        conn.close()
    return _row_to_config(row) if row else None


def save_user_config(config: UserConfig) -> UserConfig:
    config.updatedAt = _now_iso()
    conn = get_db()
    try:
        conn.execute(
            "INSERT INTO user_configs (user_id, display_name, course, level, daily_words, push_time, timezone, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(user_id) DO UPDATE SET display_name = excluded.display_name, course = excluded.course, "
            "level = excluded.level, daily_words = excluded.daily_words, push_time = excluded.push_time, "
            "timezone = excluded.timezone, updated_at = excluded.updated_at",
            (config.userId, config.displayName, config.course, config.level, config.dailyWords,
             config.pushTime, config.timezone, config.updatedAt),
        )
        conn.commit()
    finally:
        conn.close()
    logger.info("Saved user config", extra={"component": "store", "user_id": config.userId,
                                            "course": config.course})
    return config


def list_user_ids() -> List[str]:
    conn = get_db()
    try:
        rows = conn.execute("SELECT user_id FROM user_configs ORDER BY user_id").fetchall()
    finally:
        conn.close()
    return [r["user_id"] for r in rows]


# --- Vocabulary log ---

def save_word(user_id: str, word: str, part_of_speech: str, translation: str, sentence: str) -> None:
    """Append a looked-up word to today's (UTC) log. Repeats are kept."""
    now = datetime.now(timezone.utc)
    today = now.strftime("%Y-%m-%d")
    timestamp = now.strftime("%Y-%m-%dT%H:%M:%SZ")

    conn = get_db()
    try:
        row = conn.execute(
            "SELECT words_json FROM vocabulary WHERE date = ? AND user_id = ?", (today, user_id)
        ).fetchone()
        words = json.loads(row["words_json"]) if row else []
        words.append(WordRecord(
            word=word, partOfSpeech=part_of_speech, translation=translation,
            sentence=sentence, timestamp=timestamp,
        ).dict())
        conn.execute(
            "INSERT INTO vocabulary (date, user_id, words_json, updated_at) VALUES (?, ?, ?, ?) "
            "ON CONFLICT(date, user_id) DO UPDATE SET words_json = excluded.words_json, updated_at = excluded.updated_at",
            (today, user_id, json.dumps(words, ensure_ascii=False), timestamp),
        )
        conn.commit()
    finally:
        conn.close()


def get_vocabularies_by_date(date: str) -> List[UserVocabulary]:
    conn = get_db()
    try:
        rows = conn.execute(
            "SELECT user_id, date, words_json, updated_at FROM vocabulary WHERE date = ? ORDER BY user_id",
            (date,),
        ).fetchall()
    finally:
        conn.close()
    return [
        UserVocabulary(
            userId=r["user_id"], date=r["date"], updatedAt=r["updated_at"],
            words=[WordRecord(**w) for w in json.loads(r["words_json"])],
        )
        for r in rows
    ]


# --- Conversation state ---

def state_put(user_id: str, key: str, value: Any, ttl: int = None) -> None:
    expires_at = time.time() + (STATE_TTL if ttl is None else ttl)
    conn = get_db()
    try:
        conn.execute(
            "INSERT INTO conversation_state (user_id, state_key, value_json, expires_at) VALUES (?, ?, ?, ?) "
            "ON CONFLICT(user_id, state_key) DO UPDATE SET value_json = excluded.value_json, expires_at = excluded.expires_at",
            (user_id, key, json.dumps(value, ensure_ascii=False), expires_at),
        )
        conn.commit()
    finally:
        conn.close()


def state_get(user_id: str, key: str, default: Any = None) -> Any:
    conn = get_db()
    try:
        row = conn.execute(
            "SELECT value_json FROM conversation_state WHERE user_id = ? AND state_key = ? AND expires_at > ?",
            (user_id, key, time.time()),
        ).fetchone()
    finally:
        conn.close()
    if not row:
        return default
    return json.loads(row["value_json"])


def state_clear(user_id: str, *keys: str) -> None:
    conn = get_db()
    try:
        if keys:
            conn.executemany(
                "DELETE FROM conversation_state WHERE user_id = ? AND state_key = ?",
                [(user_id, k) for k in keys],
            )
        else:
            conn.execute("DELETE FROM conversation_state WHERE user_id = ?", (user_id,))
        conn.commit()
    finally:
        conn.close()


def cleanup_expired_state() -> int:
    """Delete expired conversation state. Returns count of deleted rows."""
    conn = get_db()
    try:
        cursor = conn.execute("DELETE FROM conversation_state WHERE expires_at <= ?", (time.time(),))
        deleted = cursor.rowcount
        conn.commit()
    finally:
        conn.close()
    return deleted


# --- Push schedules ---

def save_schedule(user_id: str, push_time: str, tz: str, cron_expression: str) -> None:
    conn = get_db()
    try:
        conn.execute(
            "INSERT INTO push_schedules (user_id, push_time, timezone, cron_expression, last_run_date, updated_at) "
            "VALUES (?, ?, ?, ?, '', ?) "
            "ON CONFLICT(user_id) DO UPDATE SET push_time = excluded.push_time, timezone = excluded.timezone, "
            "cron_expression = excluded.cron_expression, updated_at = excluded.updated_at",
            (user_id, push_time, tz, cron_expression, _now_iso()),
        )
        conn.commit()
    finally:
        conn.close()


def get_schedule(user_id: str) -> Optional[dict]:
    conn = get_db()
    try:
        row = conn.execute("SELECT * FROM push_schedules WHERE user_id = ?", (user_id,)).fetchone()
    finally:
        conn.close()
    return dict(row) if row else None


def delete_schedule(user_id: str) -> bool:
    conn = get_db()
    try:
        cursor = conn.execute("DELETE FROM push_schedules WHERE user_id = ?", (user_id,))
        conn.commit()
        return cursor.rowcount > 0
    finally:
        conn.close()


def list_schedules() -> List[dict]:
    conn = get_db()
    try:
        rows = conn.execute("SELECT * FROM push_schedules ORDER BY user_id").fetchall()
    finally:
        conn.close()
    return [dict(r) for r in rows]


def mark_schedule_run(user_id: str, date: str) -> None:
    conn = get_db()
    try:
        conn.execute("UPDATE push_schedules SET last_run_date = ? WHERE user_id = ?", (date, user_id))
        conn.commit()
    finally:
        conn.close()
