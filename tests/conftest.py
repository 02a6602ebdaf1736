"""Shared fixtures: throwaway SQLite database, fake LINE client, signed webhook bodies."""
import base64
import hashlib
import hmac
import json

import pytest

import auth
import cache
import line_client
import store
from models import CandidateWord, Example

CHANNEL_SECRET = "test-channel-secret"


class FakeLineClient:
    def __init__(self, display_name="Alice", push_ok=True):
        self.display_name = display_name
        self.push_ok = push_ok
        self.replies = []   # (reply_token, [messages])
        self.pushes = []    # (user_id, text)

    def reply_messages(self, reply_token, messages):
        self.replies.append((reply_token, list(messages)))
        return True

    def reply_text(self, reply_token, text, quick_replies=None):
        return self.reply_messages(reply_token, [line_client.text_message(text, quick_replies)])

    def push_text(self, user_id, text):
        self.pushes.append((user_id, text))
        return self.push_ok

    def get_display_name(self, user_id):
        return self.display_name

    def reply_texts(self):
        """Every text bubble sent as a reply, in order."""
        texts = []
        for _, messages in self.replies:
            for message in messages:
                text = getattr(message, "text", None)
                if text is not None:
                    texts.append(text)
        return texts

    def last_reply(self):
        return self.reply_texts()[-1]


@pytest.fixture()
def db(tmp_path, monkeypatch):
    monkeypatch.setattr(store, "DB_PATH", tmp_path / "langhelper-test.db")
    store.init_db()
    return store


@pytest.fixture(autouse=True)
def isolated_cache(tmp_path, monkeypatch):
    monkeypatch.setattr(cache, "CACHE_FILE", tmp_path / "translation_cache.json")
    cache.cache_clear()
    auth.rate_limit_reset()
    yield
    cache.cache_clear()


@pytest.fixture()
def fake_line():
    client = FakeLineClient()
    line_client.set_line_client(client)
    yield client
    line_client.set_line_client(None)


def word(text, meaning="意思"):
    return CandidateWord(word=text, partOfSpeech="n.", meaning=meaning,
                         example=Example(en=f"An example with {text}.", zh="例句"))


def scripted_generator(*batches):
    """Async word generator returning ``batches`` in order, then empty lists."""
    calls = []

    async def generate(course, count, level):
        calls.append({"course": course, "count": count, "level": level})
        index = len(calls) - 1
        if index < len(batches):
            return [word(w) if isinstance(w, str) else w for w in batches[index]]
        return []

    generate.calls = calls
    return generate


class MemoryFilterStore:
    def __init__(self, filters=None):
        self.filters = dict(filters or {})
        self.loads = 0
        self.saves = 0

    def load(self, owner):
        self.loads += 1
        bloom = self.filters.get(owner)
        return bloom.copy() if bloom is not None else None

    def save(self, bloom):
        self.saves += 1
        self.filters[bloom.owner] = bloom.copy()


def sign(body: str, secret: str = CHANNEL_SECRET) -> str:
    digest = hmac.new(secret.encode(), body.encode(), hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


def _base_event(event_type, user_id, reply_token="reply-token", event_id="01HTESTEVENT0000000000000"):
    event = {
        "type": event_type,
        "mode": "active",
        "timestamp": 1700000000000,
        "source": {"type": "user", "userId": user_id},
        "webhookEventId": event_id,
        "deliveryContext": {"isRedelivery": False},
    }
    if reply_token is not None:
        event["replyToken"] = reply_token
    return event


def text_event(user_id, text, reply_token="reply-token"):
    event = _base_event("message", user_id, reply_token)
    event["message"] = {"type": "text", "id": "468789577898262530", "text": text, "quoteToken": "q-token"}
    return event


def follow_event(user_id, reply_token="reply-token"):
    event = _base_event("follow", user_id, reply_token)
    event["follow"] = {"isUnblocked": False}
    return event


def unfollow_event(user_id):
    return _base_event("unfollow", user_id, reply_token=None)


def postback_event(user_id, data, reply_token="reply-token"):
    event = _base_event("postback", user_id, reply_token)
    event["postback"] = {"data": data}
    return event


def webhook_body(*events) -> str:
    return json.dumps({"destination": "Udestination", "events": list(events)}, ensure_ascii=False)


def parse(*events) -> list:
    body = webhook_body(*events)
    return line_client.parse_events(body, sign(body), secret=CHANNEL_SECRET)
