from __future__ import annotations

import logging
from datetime import datetime, timezone

from apscheduler.schedulers.background import BackgroundScheduler
from fastapi import FastAPI

from .clock import Clock, SystemClock
from .config import Settings, get_settings
from .db import init_db, make_engine, make_session_factory
from .dispatch import dispatch_due_reminders
from .logging_setup import setup_logging
from .models import PermissionState, User
from .notifications import build_sink
from .reminders import ReminderDueSelector
from .repository import SqlTaskRepository
from .routers import api_notifications, api_tasks
from .utils.time_utils import get_app_tz
from .version import APP_VERSION


logger = logging.getLogger("recurtask")


def _configure_reminder_dispatch_job(app: FastAPI, sched: BackgroundScheduler) -> None:
    """Server-side reminder polling for every account that granted permission."""

    settings: Settings = app.state.settings

    try:
        sched.remove_job("reminder_dispatch")
    except Exception:
        pass

    if not settings.notifications.server_dispatch:
        return

    sink = build_sink(settings.notifications)

    def _reminder_job() -> None:
        dbx = app.state.session_factory()
        try:
            user_ids = [
                int(uid)
                for (uid,) in dbx.query(User.id)
                .filter(User.notification_permission == PermissionState.granted)
                .all()
            ]
            repo = SqlTaskRepository(dbx)
            selector = ReminderDueSelector(repo)
            for uid in user_ids:
                dispatch_due_reminders(
                    selector,
                    repo,
                    sink,
                    owner_id=uid,
                    now=app.state.clock.now(),
                    tz=app.state.tz,
                )
        except Exception:
            logger.exception("Error while dispatching reminders")
        finally:
            dbx.close()

    # Per-task sent-markers keep repeated runs from re-notifying.
    # First run is immediate, like the per-account loop.
    sched.add_job(
        _reminder_job,
        "interval",
        seconds=float(settings.notifications.interval_seconds),
        next_run_time=datetime.now(timezone.utc),
        id="reminder_dispatch",
        replace_existing=True,
    )


def create_app(settings: Settings | None = None, *, clock: Clock | None = None) -> FastAPI:
    settings = settings or get_settings()

    # File + stdout logging.
    setup_logging(level=settings.logging.level, log_dir=settings.logging.dir)

    app = FastAPI(title=settings.app.name, version=APP_VERSION)

    engine = make_engine(settings.database.path)
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = make_session_factory(engine)
    app.state.tz = get_app_tz(settings.app.timezone)
    app.state.clock = clock or SystemClock()
    app.state.scheduler = None

    # Routers
    app.include_router(api_tasks.router, prefix="/api/tasks", tags=["tasks"])
    app.include_router(api_notifications.router, prefix="/api/notifications", tags=["notifications"])

    @app.on_event("startup")
    def on_startup() -> None:
        # Ensure DB tables exist.
        init_db(engine)

        scheduler = BackgroundScheduler(timezone="UTC")
        try:
            _configure_reminder_dispatch_job(app, scheduler)
        except Exception:
            logger.exception("Failed to configure reminder dispatch job")

        app.state.scheduler = scheduler
        scheduler.start()

    @app.on_event("shutdown")
    def on_shutdown() -> None:
        scheduler = app.state.scheduler
        if scheduler:
            scheduler.shutdown(wait=False)
            app.state.scheduler = None
        engine.dispose()

    @app.get("/healthz", include_in_schema=False)
    def healthz():
        return {"status": "ok", "version": APP_VERSION}

    return app
