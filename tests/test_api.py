from datetime import datetime, timedelta, timezone

import pytest
from apscheduler.schedulers.background import BackgroundScheduler
from fastapi.testclient import TestClient

from fakes import ManualClock
from recurtask.auth import create_access_token
from recurtask.config import Settings
from recurtask.crud import create_user
from recurtask.main import _configure_reminder_dispatch_job, create_app


NOW = datetime(2026, 2, 10, 12, 0)


@pytest.fixture
def settings(tmp_path):
    return Settings.model_validate(
        {
            "app": {"name": "Recurtask", "timezone": "UTC"},
            "security": {"jwt_secret": "test-jwt-secret"},
            "database": {"path": str(tmp_path / "test.db")},
            "notifications": {"server_dispatch": False},
            "logging": {"level": "INFO", "dir": str(tmp_path / "logs")},
        }
    )


@pytest.fixture
def client(settings):
    app = create_app(settings, clock=ManualClock(NOW))
    with TestClient(app) as c:
        db = app.state.session_factory()
        try:
            user = create_user(db, username="alice")
            token = create_access_token(user=user, security=settings.security)
        finally:
            db.close()
        c.headers.update({"Authorization": f"Bearer {token}"})
        yield c


def _create(client, **body):
    payload = {"title": "Dentist", "due_at": "2026-02-13T09:00:00", "reminder_minutes": 1440}
    payload.update(body)
    r = client.post("/api/tasks/", json=payload)
    assert r.status_code == 200, r.text
    return r.json()


def test_healthz(client):
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"


def test_requires_bearer_token(client):
    r = client.get("/api/tasks/1", headers={"Authorization": ""})
    assert r.status_code == 401

    r = client.get("/api/tasks/1", headers={"Authorization": "Bearer not-a-token"})
    assert r.status_code == 401


def test_create_and_get_task(client):
    created = _create(client, tags=["health"], subtasks=["Bring card"])
    assert created["due_at_utc"] == "2026-02-13T09:00:00"
    assert created["reminder_offset_minutes"] == 1440
    assert [t["name"] for t in created["tags"]] == ["health"]

    r = client.get(f"/api/tasks/{created['id']}")
    assert r.status_code == 200
    assert r.json()["title"] == "Dentist"

    assert client.get("/api/tasks/9999").status_code == 404


def test_create_recurring_without_due_date_is_rejected(client):
    r = client.post("/api/tasks/", json={"title": "Gym", "is_recurring": True, "recurrence_pattern": "daily"})
    assert r.status_code == 400
    assert "Due date is required" in r.json()["detail"]

    r = client.post(
        "/api/tasks/",
        json={"title": "Gym", "due_at": "2026-02-13T09:00:00", "is_recurring": True, "recurrence_pattern": "hourly"},
    )
    assert r.status_code == 400


def test_complete_recurring_returns_next_task(client):
    created = _create(client, is_recurring=True, recurrence_pattern="daily")

    r = client.post(f"/api/tasks/{created['id']}/complete")
    assert r.status_code == 200
    body = r.json()
    assert body["completed_task"]["completed"] is True
    assert body["completed_task"]["completed_at_utc"] == "2026-02-10T12:00:00"
    assert body["next_task"]["due_at_utc"] == "2026-02-14T09:00:00"
    assert body["next_task"]["completed"] is False
    assert body["next_task"]["recurrence_pattern"] == "daily"

    again = client.post(f"/api/tasks/{created['id']}/complete")
    assert again.status_code == 200
    assert again.json()["next_task"] is None

    assert client.post("/api/tasks/9999/complete").status_code == 404


def test_completed_task_cannot_be_edited(client):
    created = _create(client)
    client.post(f"/api/tasks/{created['id']}/complete")

    r = client.put(f"/api/tasks/{created['id']}", json={"title": "Changed"})
    assert r.status_code == 409


def test_poll_due_reminders_once_per_due_date(client):
    created = _create(client)

    r = client.get("/api/notifications/due", params={"now": "2026-02-12T08:59:00"})
    assert r.status_code == 200
    assert r.json()["reminders"] == []

    r = client.get("/api/notifications/due", params={"now": "2026-02-12T09:00:00"})
    reminders = r.json()["reminders"]
    assert [t["id"] for t in reminders] == [created["id"]]

    r = client.get("/api/notifications/due", params={"now": "2026-02-12T09:01:00"})
    assert r.json()["reminders"] == []

    # Moving the due date re-arms the reminder.
    r = client.put(f"/api/tasks/{created['id']}", json={"due_at": "2026-02-20T09:00:00"})
    assert r.status_code == 200
    assert r.json()["last_notification_sent_at_utc"] is None

    r = client.get("/api/notifications/due", params={"now": "2026-02-19T09:00:00"})
    assert [t["id"] for t in r.json()["reminders"]] == [created["id"]]


def test_mark_sent(client):
    created = _create(client)

    r = client.post("/api/notifications/sent", json={"task_id": created["id"]})
    assert r.status_code == 200
    assert r.json() == {"task_id": created["id"], "marked": True}

    r = client.post("/api/notifications/sent", json={"task_id": created["id"]})
    assert r.json()["marked"] is False

    task = client.get(f"/api/tasks/{created['id']}").json()
    assert task["last_notification_sent_at_utc"] == "2026-02-10T12:00:00"

    assert client.post("/api/notifications/sent", json={"task_id": 9999}).status_code == 404


def test_permission_flow(client):
    r = client.get("/api/notifications/permission")
    assert r.json() == {"state": "undetermined"}

    r = client.post("/api/notifications/permission", json={"decision": "granted"})
    assert r.json() == {"state": "granted"}

    # Once decided, a new answer does not change it.
    r = client.post("/api/notifications/permission", json={"decision": "denied"})
    assert r.json() == {"state": "granted"}
    assert client.get("/api/notifications/permission").json() == {"state": "granted"}


def test_server_dispatch_job_runs_immediately(settings):
    settings.notifications.server_dispatch = True
    app = create_app(settings, clock=ManualClock(NOW))
    sched = BackgroundScheduler(timezone="UTC")

    before = datetime.now(timezone.utc)
    _configure_reminder_dispatch_job(app, sched)
    job = sched.get_job("reminder_dispatch")

    assert job is not None
    assert before - timedelta(seconds=1) <= job.next_run_time <= datetime.now(timezone.utc) + timedelta(seconds=1)
    app.state.engine.dispose()


def test_server_dispatch_job_is_off_by_default(settings):
    app = create_app(settings, clock=ManualClock(NOW))
    sched = BackgroundScheduler(timezone="UTC")
    _configure_reminder_dispatch_job(app, sched)
    assert sched.get_job("reminder_dispatch") is None
    app.state.engine.dispose()
