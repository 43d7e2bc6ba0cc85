from __future__ import annotations

import argparse
import logging
import sys

from sqlalchemy.orm import Session

from .auth import create_access_token
from .clock import SystemClock
from .config import Settings, get_settings
from .crud import create_user, get_user_by_username
from .db import init_db, make_engine, make_session_factory
from .dispatch import NotificationDispatchLoop
from .errors import TaskNotFoundError
from .lifecycle import OccurrenceLifecycleManager
from .logging_setup import setup_logging
from .models import User
from .notifications import build_sink
from .permissions import PermissionGate, StaticPermissionPlatform
from .reminders import ReminderDueSelector
from .repository import SqlTaskRepository
from .utils.time_utils import get_app_tz


logger = logging.getLogger("recurtask.cli")


def _open_session(settings: Settings) -> Session:
    engine = make_engine(settings.database.path)
    init_db(engine)
    return make_session_factory(engine)()


def _require_user(db: Session, username: str) -> User:
    user = get_user_by_username(db, username)
    if user is None:
        print(f"Unknown user: {username}", file=sys.stderr)
        sys.exit(1)
    return user


def _run_remind(settings: Settings, db: Session, user: User, *, interval: float | None, once: bool, grant: bool) -> int:
    tz = get_app_tz(settings.app.timezone)
    repo = SqlTaskRepository(db)
    loop = NotificationDispatchLoop(
        selector=ReminderDueSelector(repo),
        repository=repo,
        sink=build_sink(settings.notifications),
        owner_id=int(user.id),
        tz=tz,
        clock=SystemClock(),
        interval_seconds=float(interval or settings.notifications.interval_seconds),
    )

    # The configured permission plays the platform's role; --grant is the user asking.
    platform = StaticPermissionPlatform(
        settings.notifications.permission,
        answer="granted" if grant else None,
    )
    gate = PermissionGate(platform)
    if grant:
        gate.request()
    if not gate.granted:
        print(f"Notification permission is {gate.state.value}; pass --grant to allow reminders", file=sys.stderr)
        return 2

    if once:
        report = loop.tick()
        print(f"delivered={len(report.delivered)} failed={len(report.failed)}")
        return 0 if not report.failed else 1

    gate.bind_loop(loop)
    try:
        while loop.enabled:
            loop.join(timeout=1.0)
    except KeyboardInterrupt:
        pass
    finally:
        loop.close()
    return 0


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="recurtask")
    sub = parser.add_subparsers(dest="command", required=True)

    p_user = sub.add_parser("create-user", help="Create an account and print its id.")
    p_user.add_argument("--username", required=True)

    p_token = sub.add_parser("issue-token", help="Print a bearer token for an existing account.")
    p_token.add_argument("--username", required=True)

    p_complete = sub.add_parser("complete", help="Complete a task (spawns the next occurrence when recurring).")
    p_complete.add_argument("--username", required=True)
    p_complete.add_argument("--task-id", type=int, required=True)

    p_remind = sub.add_parser("remind", help="Poll for due reminders and deliver them via the configured sink.")
    p_remind.add_argument("--username", required=True)
    p_remind.add_argument("--interval", type=float, default=None, help="Seconds between polls.")
    p_remind.add_argument("--once", action="store_true", help="Run a single poll and exit.")
    p_remind.add_argument("--grant", action="store_true", help="Grant notification permission if undetermined.")

    args = parser.parse_args(argv)

    settings = get_settings()
    setup_logging(level=settings.logging.level, log_dir=settings.logging.dir)

    with _open_session(settings) as db:
        if args.command == "create-user":
            try:
                user = create_user(db, username=args.username)
            except ValueError as e:
                print(str(e), file=sys.stderr)
                sys.exit(1)
            print(user.id)
            return

        if args.command == "issue-token":
            user = _require_user(db, args.username)
            print(create_access_token(user=user, security=settings.security))
            return

        if args.command == "complete":
            user = _require_user(db, args.username)
            manager = OccurrenceLifecycleManager(SqlTaskRepository(db), tz=get_app_tz(settings.app.timezone))
            try:
                result = manager.complete(args.task_id, owner_id=int(user.id))
            except (TaskNotFoundError, ValueError) as e:
                print(str(e), file=sys.stderr)
                sys.exit(1)
            spawned = result.spawned_task
            if spawned is not None:
                print(f"completed {result.completed_task.id}; next {spawned.id} due {spawned.due_at_utc.isoformat()}Z")
            else:
                print(f"completed {result.completed_task.id}")
            return

        if args.command == "remind":
            user = _require_user(db, args.username)
            sys.exit(_run_remind(settings, db, user, interval=args.interval, once=args.once, grant=args.grant))

    parser.print_help()
    sys.exit(2)


if __name__ == "__main__":
    main()
