"""LINE Messaging API wrapper: replies, pushes, profiles and webhook parsing."""
import os
from typing import Optional, Sequence

from linebot.v3 import WebhookParser
from linebot.v3.exceptions import InvalidSignatureError
from linebot.v3.messaging import (
    ApiClient, ApiException, CarouselColumn, CarouselTemplate, Configuration,
    MessageAction, MessagingApi, PushMessageRequest, QuickReply, QuickReplyItem,
    ReplyMessageRequest, TemplateMessage, TextMessage,
)
from urllib3.exceptions import HTTPError

from log import get_logger
from messages import CAROUSEL_COLUMNS

logger = get_logger("langhelper.line")

# --- Config ---
LINE_CHANNEL_SECRET = os.environ.get("LINE_CHANNEL_SECRET", "")
LINE_CHANNEL_ACCESS_TOKEN = os.environ.get("LINE_CHANNEL_ACCESS_TOKEN", "")

# LINE caps a single text message at 5000 characters
MAX_TEXT_LENGTH = 5000

__all__ = [
    "InvalidSignatureError", "LineClient", "course_carousel", "get_line_client",
    "parse_events", "set_line_client", "text_message",
]


def text_message(text: str, quick_replies: Optional[Sequence[str]] = None) -> TextMessage:
    """Text bubble; each quick reply button sends its own label back."""
    if len(text) > MAX_TEXT_LENGTH:
        text = text[:MAX_TEXT_LENGTH - 1] + "…"
    if not quick_replies:
        return TextMessage(text=text)
    items = [QuickReplyItem(action=MessageAction(label=label, text=label)) for label in quick_replies]
    return TextMessage(text=text, quick_reply=QuickReply(items=items))


def labelled_quick_replies(text: str, choices: Sequence[tuple]) -> TextMessage:
    """Quick replies as ``(label, text)`` pairs when the label differs from what is sent."""
    items = [QuickReplyItem(action=MessageAction(label=label, text=reply)) for label, reply in choices]
    return TextMessage(text=text, quick_reply=QuickReply(items=items))


def course_carousel(alt_text: str = "請選擇字卡類型") -> TemplateMessage:
    columns = [
        CarouselColumn(
            title=col["title"],
            text=col["text"],
            actions=[MessageAction(label=col["label"], text=col["reply"])],
        )
        for col in CAROUSEL_COLUMNS
    ]
    return TemplateMessage(alt_text=alt_text, template=CarouselTemplate(columns=columns))


def parse_events(body: str, signature: str, secret: str = None) -> list:
    """Verify ``X-Line-Signature`` and decode the webhook body.

    Raises InvalidSignatureError when the signature does not match.
    """
    parser = WebhookParser(secret if secret is not None else LINE_CHANNEL_SECRET)
    return parser.parse(body, signature)


# ApiException carries an HTTP status; urllib3 errors (timeouts, refused
# connections, exhausted retries) never reach the API
SEND_ERRORS = (ApiException, HTTPError)


def _failure_fields(e: Exception) -> dict:
    fields = {"component": "line", "detail": str(getattr(e, "reason", None) or e)}
    if getattr(e, "status", None) is not None:
        fields["status_code"] = e.status
    return fields


class LineClient:
    """Thin wrapper over MessagingApi. Send failures are logged and reported as False."""

    def __init__(self, access_token: str):
        self._api = MessagingApi(ApiClient(Configuration(access_token=access_token)))

    def reply_messages(self, reply_token: str, messages: list) -> bool:
        if not messages:
            logger.warning("No messages to send", extra={"component": "line"})
            return False
        try:
            self._api.reply_message(ReplyMessageRequest(reply_token=reply_token, messages=messages[:5]))
            return True
        except SEND_ERRORS as e:
            logger.error("LINE reply failed", extra=_failure_fields(e))
            return False

    def reply_text(self, reply_token: str, text: str, quick_replies: Optional[Sequence[str]] = None) -> bool:
        return self.reply_messages(reply_token, [text_message(text, quick_replies)])

    def push_text(self, user_id: str, text: str) -> bool:
        try:
            self._api.push_message(PushMessageRequest(to=user_id, messages=[text_message(text)]))
            return True
        except SEND_ERRORS as e:
            logger.error("LINE push failed", extra={**_failure_fields(e), "user_id": user_id})
            return False

    def get_display_name(self, user_id: str) -> str:
        """Profile display name, or "" when the profile cannot be fetched."""
        try:
            return self._api.get_profile(user_id).display_name or ""
        except SEND_ERRORS as e:
            logger.warning("Could not fetch profile", extra={**_failure_fields(e), "user_id": user_id})
            return ""


_client: Optional[LineClient] = None


def get_line_client() -> LineClient:
    global _client
    if _client is None:
        _client = LineClient(LINE_CHANNEL_ACCESS_TOKEN)
        logger.info("LINE API client initialized", extra={"component": "line"})
    return _client


def set_line_client(client) -> None:
    """Replace the process-wide client (tests pass a fake)."""
    global _client
    _client = client
