import json
from datetime import datetime
from zoneinfo import ZoneInfo

import pytest

from recurtask import notifications
from recurtask.config import NotificationSettings
from recurtask.errors import DeliveryError
from recurtask.models import Task
from recurtask.notifications import (
    GotifySink,
    LogSink,
    NtfySink,
    ReminderNotification,
    WebhookSink,
    build_reminder_notification,
    build_sink,
)


UTC = ZoneInfo("UTC")
DUE = datetime(2026, 2, 13, 10, 0)


def _task(**kwargs):
    values = dict(id=7, user_id=1, title="Pay rent", completed=False, due_at_utc=DUE, reminder_offset_minutes=30)
    values.update(kwargs)
    return Task(**values)


@pytest.mark.parametrize(
    "now, body",
    [
        (datetime(2026, 2, 13, 9, 30), "Due in 30 minutes"),
        (datetime(2026, 2, 13, 9, 59, 30), "Due now!"),
        (datetime(2026, 2, 13, 10, 0), "Due now!"),
        (datetime(2026, 2, 13, 10, 5), "Due: 2026-02-13 10:00"),
    ],
)
def test_reminder_body(now, body):
    n = build_reminder_notification(_task(), now=now, tz=UTC)
    assert n.body == body
    assert n.title == "\U0001F4CB Pay rent"
    assert n.task_id == 7


def test_overdue_body_uses_local_time():
    n = build_reminder_notification(_task(), now=datetime(2026, 2, 14, 0, 0), tz=ZoneInfo("Asia/Singapore"))
    assert n.body == "Due: 2026-02-13 18:00"


@pytest.fixture
def captured(monkeypatch):
    calls = []

    def fake_http_request(*, url, headers=None, data=None, method="POST", timeout=10):
        calls.append({"url": url, "headers": headers or {}, "data": data, "method": method})
        return 200, ""

    monkeypatch.setattr(notifications, "_http_request", fake_http_request)
    return calls


def _notification():
    return ReminderNotification(task_id=7, title="\U0001F4CB Pay rent", body="Due in 30 minutes", due_at_utc=DUE)


def test_webhook_posts_json_payload(captured):
    WebhookSink("https://hooks.example.com/recurtask", secret="s3cret").deliver(_notification())

    call = captured[0]
    assert call["url"] == "https://hooks.example.com/recurtask"
    assert call["headers"]["X-Recurtask-Secret"] == "s3cret"
    payload = json.loads(call["data"].decode("utf-8"))
    assert payload == {
        "event": "reminder",
        "task_id": 7,
        "title": "\U0001F4CB Pay rent",
        "body": "Due in 30 minutes",
        "due_at_utc": "2026-02-13T10:00:00",
    }


def test_ntfy_publishes_to_topic(captured):
    NtfySink(base_url="https://ntfy.example.com/", topic="chores", token="tk_abc").deliver(_notification())

    call = captured[0]
    assert call["url"] == "https://ntfy.example.com/chores"
    assert call["headers"]["Authorization"] == "Bearer tk_abc"
    assert call["headers"]["Title"] == "Pay rent"
    assert call["data"].decode("utf-8") == "\U0001F4CB Pay rent\nDue in 30 minutes"


def test_gotify_uses_header_token_and_clamps_priority(captured):
    GotifySink(base_url="https://gotify.example.com", token="abc123", priority=999).deliver(_notification())

    call = captured[0]
    assert call["url"] == "https://gotify.example.com/message"
    assert call["headers"]["X-Gotify-Key"] == "abc123"
    assert "token=" not in call["url"]
    payload = json.loads(call["data"].decode("utf-8"))
    assert payload["priority"] == 10
    assert payload["message"] == "Due in 30 minutes"


def test_http_request_rejects_non_http_urls():
    with pytest.raises(DeliveryError):
        notifications._http_request(url="file:///etc/passwd")
    with pytest.raises(DeliveryError):
        notifications._http_request(url="https://")


def test_safe_url_for_log_redacts_tokens():
    url = "https://hooks.example.com/services/ABCDEFGHIJKLMNOPQRSTUVWXYZ012345?key=secret"
    safe = notifications._safe_url_for_log(url)
    assert "ABCDEFGHIJKLMNOPQRSTUVWXYZ012345" not in safe
    assert "secret" not in safe
    assert safe.endswith("/services/<redacted>")


def test_build_sink():
    assert isinstance(build_sink(NotificationSettings()), LogSink)
    assert isinstance(build_sink(NotificationSettings(sink="webhook", webhook_url="https://x.example")), WebhookSink)
    assert isinstance(build_sink(NotificationSettings(sink="NTFY", ntfy_topic="chores")), NtfySink)
    assert isinstance(
        build_sink(NotificationSettings(sink="gotify", gotify_base_url="https://g.example", gotify_token="t")),
        GotifySink,
    )

    with pytest.raises(ValueError):
        build_sink(NotificationSettings(sink="pager"))
    with pytest.raises(ValueError):
        build_sink(NotificationSettings(sink="ntfy", ntfy_topic=""))
    with pytest.raises(ValueError):
        build_sink(NotificationSettings(sink="webhook"))
