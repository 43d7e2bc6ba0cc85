from datetime import datetime, timedelta

import pytest

from fakes import make_session
from recurtask import cli
from recurtask.config import get_settings, load_settings
from recurtask.crud import create_task, get_user_by_username
from recurtask.models import Task
from recurtask.utils.time_utils import get_app_tz, now_utc


@pytest.fixture
def settings_tmp(tmp_path, monkeypatch):
    """Isolate settings per test run."""
    path = tmp_path / "settings.yml"
    path.write_text(
        """
app:
  name: "Recurtask"
  timezone: "UTC"
security:
  jwt_secret: "test-jwt-secret"
database:
  path: "{db}"
notifications:
  interval_seconds: 30
  sink: "log"
  permission: "undetermined"
logging:
  level: "INFO"
  dir: "{logs}"
""".format(db=str(tmp_path / "test.db"), logs=str(tmp_path / "logs")).lstrip()
    )
    monkeypatch.setenv("RECURTASK_SETTINGS", str(path))
    get_settings.cache_clear()
    yield path
    get_settings.cache_clear()


def test_load_settings_reads_yaml(settings_tmp):
    s = get_settings()
    assert s.app.timezone == "UTC"
    assert s.notifications.interval_seconds == 30
    assert s.notifications.server_dispatch is False
    assert s.security.token_minutes == 60 * 24


def test_env_overrides(settings_tmp, monkeypatch):
    monkeypatch.setenv("RECURTASK_JWT_SECRET", "from-env")
    monkeypatch.setenv("RECURTASK_TIMEZONE", "Asia/Singapore")
    monkeypatch.setenv("PORT", "9999")

    s = load_settings(str(settings_tmp))

    assert s.security.jwt_secret == "from-env"
    assert s.app.timezone == "Asia/Singapore"
    assert s.app.port == 9999


def test_missing_settings_file_is_created(tmp_path):
    path = tmp_path / "nested" / "settings.yml"
    s = load_settings(str(path))
    assert path.exists()
    assert s.notifications.interval_seconds == 60


def test_unknown_timezone_falls_back_to_utc():
    assert str(get_app_tz("Mars/Olympus_Mons")) == "UTC"


def test_cli_create_user_and_complete(settings_tmp, tmp_path, capsys):
    cli.main(["create-user", "--username", "alice"])
    user_id = int(capsys.readouterr().out.strip())

    db = make_session(tmp_path)
    try:
        user = get_user_by_username(db, "alice")
        assert user.id == user_id
        task = create_task(
            db,
            owner=user,
            title="Stretch",
            tz=get_app_tz("UTC"),
            due_at=datetime(2026, 3, 1, 7, 0),
            is_recurring=True,
            recurrence_pattern="daily",
        )
        task_id = task.id
    finally:
        db.close()

    cli.main(["complete", "--username", "alice", "--task-id", str(task_id)])
    out = capsys.readouterr().out
    assert out.startswith(f"completed {task_id}; next ")
    assert "due 2026-03-02T07:00:00Z" in out

    with pytest.raises(SystemExit) as ei:
        cli.main(["complete", "--username", "nobody", "--task-id", str(task_id)])
    assert ei.value.code == 1


def test_cli_issue_token(settings_tmp, capsys):
    cli.main(["create-user", "--username", "alice"])
    capsys.readouterr()
    cli.main(["issue-token", "--username", "alice"])
    assert capsys.readouterr().out.count(".") == 2


def test_cli_remind_requires_permission(settings_tmp, tmp_path, capsys):
    cli.main(["create-user", "--username", "alice"])
    capsys.readouterr()

    db = make_session(tmp_path)
    try:
        user = get_user_by_username(db, "alice")
        task = create_task(
            db,
            owner=user,
            title="Take out bins",
            tz=get_app_tz("UTC"),
            due_at=now_utc() + timedelta(minutes=5),
            reminder_minutes=10,
        )
        task_id = task.id
    finally:
        db.close()

    with pytest.raises(SystemExit) as ei:
        cli.main(["remind", "--username", "alice", "--once"])
    assert ei.value.code == 2
    assert "pass --grant" in capsys.readouterr().err

    with pytest.raises(SystemExit) as ei:
        cli.main(["remind", "--username", "alice", "--once", "--grant"])
    assert ei.value.code == 0
    assert capsys.readouterr().out.strip() == "delivered=1 failed=0"

    db = make_session(tmp_path)
    try:
        assert db.get(Task, task_id).last_notification_sent_at_utc is not None
    finally:
        db.close()
