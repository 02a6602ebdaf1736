"""Operator password guard and per-user rate limiting."""
import os
import time
import secrets
from typing import Optional
from collections import defaultdict

from fastapi import Header, HTTPException

# --- Config ---
ADMIN_PASSWORD = os.environ.get("LANGHELPER_ADMIN_PASSWORD", "langhelper2026")

# --- Rate Limiting ---
RATE_LIMIT_REQUESTS = 20
RATE_LIMIT_WINDOW = 60
_rate_buckets: dict = defaultdict(list)
_rate_check_counter = 0


def rate_limit_check(user_id: str) -> bool:
    """Sliding window: at most RATE_LIMIT_REQUESTS translations per window."""
    now = time.time()
    cutoff = now - RATE_LIMIT_WINDOW
    _rate_buckets[user_id] = [t for t in _rate_buckets[user_id] if t > cutoff]
    if len(_rate_buckets[user_id]) >= RATE_LIMIT_REQUESTS:
        return False
    _rate_buckets[user_id].append(now)
    return True


def rate_limit_cleanup():
    global _rate_check_counter
    _rate_check_counter += 1
    if _rate_check_counter % 100 == 0:
        now = time.time()
        cutoff = now - RATE_LIMIT_WINDOW
        stale = [uid for uid, ts in _rate_buckets.items() if not ts or ts[-1] < cutoff]
        for uid in stale:
            del _rate_buckets[uid]


def rate_limit_reset():
    global _rate_check_counter
    _rate_buckets.clear()
    _rate_check_counter = 0


async def require_password(x_app_password: Optional[str] = Header(default=None)):
    """FastAPI dependency that validates the X-App-Password header."""
    if x_app_password is None or not secrets.compare_digest(x_app_password.encode(), ADMIN_PASSWORD.encode()):
        raise HTTPException(401, "Unauthorized")
