"""LRU translation cache.

Entries are ``(timestamp, TranslationResponse dict)`` pairs, persisted to a
JSON file now and then so a restart does not re-ask the model for every
common word.
"""
import json
import time
import hashlib
from pathlib import Path
from collections import OrderedDict

from log import get_logger

logger = get_logger("langhelper.cache")

# --- Translation Cache ---
CACHE_MAX = 1000
CACHE_TTL = 3600 * 24 * 7  # translations of single words rarely change
CACHE_FILE = Path(__file__).parent / "translation_cache.json"
CACHE_SAVE_INTERVAL = 60

_translation_cache: OrderedDict = OrderedDict()
_cache_dirty = False
_cache_last_save = 0.0
_hits = 0
_misses = 0


def cache_key(text: str) -> str:
    raw = " ".join(text.strip().lower().split())
    return hashlib.sha256(raw.encode()).hexdigest()


def cache_get(key: str):
    global _hits, _misses
    entry = _translation_cache.get(key)
    if entry is None:
        _misses += 1
        return None
    ts, result = entry
    if time.time() - ts > CACHE_TTL:
        _translation_cache.pop(key, None)
        _misses += 1
        return None
    _translation_cache.move_to_end(key)
    _hits += 1
    return result


def cache_put(key: str, result: dict):
    """Insert a translation; empty results are not cached."""
    global _cache_dirty
    if not result.get("translations"):
        return
    _translation_cache[key] = (time.time(), result)
    _translation_cache.move_to_end(key)
    if len(_translation_cache) > CACHE_MAX:
        _translation_cache.popitem(last=False)
    _cache_dirty = True
    _maybe_save_cache()


def cache_clear():
    global _hits, _misses, _cache_dirty
    _translation_cache.clear()
    _hits = 0
    _misses = 0
    _cache_dirty = False


def load_cache():
    global _cache_last_save
    if CACHE_FILE.exists():
        try:
            data = json.loads(CACHE_FILE.read_text())
            now = time.time()
            loaded = 0
            for key, (ts, result) in data.items():
                if now - ts < CACHE_TTL:
                    _translation_cache[key] = (ts, result)
                    loaded += 1
                if loaded >= CACHE_MAX:
                    break
            logger.info("Loaded cache from disk", extra={"component": "cache", "count": loaded})
        except (OSError, ValueError):
            logger.exception("Failed to load cache file", extra={"component": "cache"})
    _cache_last_save = time.time()


def save_cache():
    global _cache_dirty, _cache_last_save
    try:
        CACHE_FILE.write_text(json.dumps(dict(_translation_cache), ensure_ascii=False))
        _cache_dirty = False
        _cache_last_save = time.time()
    except OSError:
        logger.exception("Failed to save cache", extra={"component": "cache"})


def _maybe_save_cache():
    if _cache_dirty and (time.time() - _cache_last_save) >= CACHE_SAVE_INTERVAL:
        save_cache()


def is_cache_dirty():
    return _cache_dirty


def cache_stats() -> dict:
    total = _hits + _misses
    return {
        "entries": len(_translation_cache),
        "max": CACHE_MAX,
        "ttl_hours": CACHE_TTL / 3600,
        "hits": _hits,
        "misses": _misses,
        "hit_rate": round(_hits / total, 3) if total else 0.0,
    }
