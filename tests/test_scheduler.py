"""Tests for daily word pushes, schedules and the nightly review."""
import asyncio
from datetime import datetime, timezone

import pytest
from urllib3.exceptions import MaxRetryError

import line_client
import scheduler
import store
from bloom import owner_key
from conftest import scripted_generator
from errors import GeneratorUnavailable
from models import UserConfig

USER = "U1"


def configure(course="toeic", level=750, daily_words=3, push_time="08:00"):
    store.save_user_config(UserConfig(userId=USER, displayName="Alice", course=course, level=level,
                                      dailyWords=daily_words, pushTime=push_time, timezone="Asia/Taipei"))


@pytest.mark.parametrize("push_time,tz,expected", [
    ("08:00", "Asia/Taipei", "cron(0 0 * * ? *)"),
    ("19:00", "Asia/Taipei", "cron(0 11 * * ? *)"),
    ("07:30", "Asia/Taipei", "cron(30 23 * * ? *)"),
    ("12:15", "UTC", "cron(15 12 * * ? *)"),
])
def test_daily_cron_expression(push_time, tz, expected):
    assert scheduler.daily_cron_expression(push_time, tz) == expected


def test_daily_cron_expression_uses_current_offset():
    winter = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)
    summer = datetime(2025, 7, 15, 12, 0, tzinfo=timezone.utc)
    assert scheduler.daily_cron_expression("09:00", "Europe/London", winter) == "cron(0 9 * * ? *)"
    assert scheduler.daily_cron_expression("09:00", "Europe/London", summer) == "cron(0 8 * * ? *)"


@pytest.mark.parametrize("push_time,tz", [("8am", "Asia/Taipei"), ("24:00", "Asia/Taipei"), ("08:00", "Mars/Base")])
def test_daily_cron_expression_rejects_bad_input(push_time, tz):
    with pytest.raises(ValueError):
        scheduler.daily_cron_expression(push_time, tz)


def test_setup_schedule_replaces_and_fires_push(db, monkeypatch):
    fired = []
    monkeypatch.setattr(scheduler, "trigger_immediate_push", fired.append)
    scheduler.setup_user_push_schedule(USER, "08:00", "Asia/Taipei")
    scheduler.setup_user_push_schedule(USER, "19:00", "Asia/Taipei")
    assert len(store.list_schedules()) == 1
    assert store.get_schedule(USER)["push_time"] == "19:00"
    assert fired == [USER, USER]


def test_setup_schedule_invalid_time_saves_nothing(db, monkeypatch):
    fired = []
    monkeypatch.setattr(scheduler, "trigger_immediate_push", fired.append)
    with pytest.raises(ValueError):
        scheduler.setup_user_push_schedule(USER, "late", "Asia/Taipei")
    assert store.get_schedule(USER) is None
    assert fired == []


def test_run_word_push_delivers_and_records(db, fake_line, monkeypatch):
    configure()
    generate = scripted_generator(["alpha", "beta", "gamma", "delta"])
    monkeypatch.setattr(scheduler, "generate_words", generate)

    result = asyncio.run(scheduler.run_word_push(USER))
    assert result["status"] == "success"
    assert result["data"] == {"userId": USER, "course": "toeic", "wordCount": 3}
    assert generate.calls[0] == {"course": "toeic", "count": 9, "level": 750}

    user_id, text = fake_line.pushes[0]
    assert user_id == USER
    assert text.startswith("📚 今日多益單字推播 (3個)")
    assert "1. 【alpha】(n.)" in text
    assert "delta" not in text

    saved = store.SqliteFilterStore().load(owner_key(USER, "toeic"))
    assert saved.contains("alpha") and saved.contains("gamma")
    assert not saved.contains("delta")


def test_second_push_skips_delivered_words(db, fake_line, monkeypatch):
    configure(daily_words=2)
    monkeypatch.setattr(scheduler, "generate_words", scripted_generator(["a", "b"]))
    asyncio.run(scheduler.run_word_push(USER))

    monkeypatch.setattr(scheduler, "generate_words", scripted_generator(["a", "b", "c", "d"]))
    result = asyncio.run(scheduler.run_word_push(USER))
    assert result["data"]["wordCount"] == 2
    assert "【c】" in fake_line.pushes[-1][1]
    assert "【a】" not in fake_line.pushes[-1][1]


def test_push_failure_still_records_words(db, fake_line, monkeypatch):
    configure(daily_words=1)
    fake_line.push_ok = False
    monkeypatch.setattr(scheduler, "generate_words", scripted_generator(["only"]))
    result = asyncio.run(scheduler.run_word_push(USER))
    assert result["status"] == "success"
    assert store.SqliteFilterStore().load(owner_key(USER, "toeic")).contains("only")


def test_run_word_push_unknown_user(db, fake_line):
    result = asyncio.run(scheduler.run_word_push("nobody"))
    assert result["status"] == "error"
    assert fake_line.pushes == []


def test_run_word_push_exhausted(db, fake_line, monkeypatch):
    configure()
    monkeypatch.setattr(scheduler, "generate_words", scripted_generator())
    result = asyncio.run(scheduler.run_word_push(USER))
    assert result["status"] == "error"
    assert fake_line.pushes == []


def test_run_word_push_generator_down(db, fake_line, monkeypatch):
    configure()

    async def broken(course, count, level):
        raise GeneratorUnavailable("model offline")

    monkeypatch.setattr(scheduler, "generate_words", broken)
    result = asyncio.run(scheduler.run_word_push(USER))
    assert result["status"] == "error"
    assert "model offline" in result["message"]
    assert store.SqliteFilterStore().load(owner_key(USER, "toeic")) is None


def test_trigger_immediate_push_runs_in_background(db, fake_line, monkeypatch):
    configure(daily_words=1)
    monkeypatch.setattr(scheduler, "generate_words", scripted_generator(["now"]))

    async def main():
        task = scheduler.trigger_immediate_push(USER)
        assert task in scheduler._background_tasks
        await task

    asyncio.run(main())
    assert fake_line.pushes and "【now】" in fake_line.pushes[0][1]
    assert scheduler._background_tasks == set()


def test_due_schedules(db):
    store.save_schedule("U1", "08:00", "Asia/Taipei", "cron(0 0 * * ? *)")
    store.save_schedule("U2", "19:00", "Asia/Taipei", "cron(0 11 * * ? *)")
    now = datetime(2025, 5, 1, 0, 0, 20, tzinfo=timezone.utc)
    assert [s["user_id"] for s in scheduler.due_schedules(now)] == ["U1"]

    store.mark_schedule_run("U1", "2025-05-01")
    assert scheduler.due_schedules(now) == []


def test_due_schedules_picks_up_a_late_tick(db):
    store.save_schedule("U1", "08:00", "Asia/Taipei", "cron(0 0 * * ? *)")
    late = datetime(2025, 5, 1, 0, 1, 30, tzinfo=timezone.utc)
    assert [s["user_id"] for s in scheduler.due_schedules(late)] == ["U1"]

    much_later = datetime(2025, 5, 1, 9, 45, tzinfo=timezone.utc)
    assert [s["user_id"] for s in scheduler.due_schedules(much_later)] == ["U1"]

    store.mark_schedule_run("U1", "2025-05-01")
    assert scheduler.due_schedules(much_later) == []
    next_day = datetime(2025, 5, 2, 0, 0, tzinfo=timezone.utc)
    assert [s["user_id"] for s in scheduler.due_schedules(next_day)] == ["U1"]


def test_setup_after_push_minute_counts_as_todays_run(db, monkeypatch):
    monkeypatch.setattr(scheduler, "trigger_immediate_push", lambda user_id: None)
    scheduler.setup_user_push_schedule(USER, "00:00", "UTC")
    today = datetime.now(timezone.utc).strftime("%Y-%m-%d")
    assert store.get_schedule(USER)["last_run_date"] == today
    assert scheduler.due_schedules() == []


def test_network_failure_on_push_still_records_words(db, monkeypatch):
    configure(daily_words=2)
    client = line_client.LineClient("test-token")

    def unreachable(*args, **kwargs):
        raise MaxRetryError(None, "https://api.line.me/v2/bot/message/push", reason="connection refused")

    monkeypatch.setattr(client._api.api_client.rest_client.pool_manager, "request", unreachable)
    monkeypatch.setattr(line_client, "_client", client)
    monkeypatch.setattr(scheduler, "generate_words", scripted_generator(["alpha", "beta"]))

    result = asyncio.run(scheduler.run_word_push(USER))
    assert result["status"] == "success"
    saved = store.SqliteFilterStore().load(owner_key(USER, "toeic"))
    assert saved is not None
    assert saved.contains("alpha") and saved.contains("beta")


def test_run_due_pushes_marks_runs(db, fake_line, monkeypatch):
    configure(daily_words=1)
    store.save_schedule(USER, "08:00", "Asia/Taipei", "cron(0 0 * * ? *)")
    monkeypatch.setattr(scheduler, "generate_words", scripted_generator(["tick"]))
    now = datetime(2025, 5, 1, 0, 0, tzinfo=timezone.utc)

    assert asyncio.run(scheduler.run_due_pushes(now)) == 1
    assert store.get_schedule(USER)["last_run_date"] == "2025-05-01"
    assert asyncio.run(scheduler.run_due_pushes(now)) == 0
    assert len(fake_line.pushes) == 1


def test_send_daily_reminders(db, fake_line, monkeypatch):
    store.save_word("U1", "apple", "n.", "蘋果", "I ate an apple.")
    store.save_word("U1", "run", "v.", "跑", "I run every day.")
    today = datetime.now(timezone.utc).strftime("%Y-%m-%d")

    result = asyncio.run(scheduler.send_daily_reminders())
    assert result == {"date": today, "users": 1, "sent": 1, "failed": 0}
    user_id, text = fake_line.pushes[0]
    assert user_id == "U1"
    assert text.count("【每日單字回顧】") == 1
    assert "【apple】(n.)\n翻譯：蘋果" in text
    assert "【run】(v.)" in text


def test_send_daily_reminders_for_other_date(db, fake_line):
    result = asyncio.run(scheduler.send_daily_reminders("2001-01-01"))
    assert result["users"] == 0
    assert fake_line.pushes == []


def test_seconds_until_rolls_over_to_tomorrow():
    now = datetime(2025, 5, 1, 14, 0, tzinfo=timezone.utc)  # 22:00 in Taipei
    assert scheduler.seconds_until("21:00", "Asia/Taipei", now) == 23 * 3600
    assert scheduler.seconds_until("23:30", "Asia/Taipei", now) == 1.5 * 3600
