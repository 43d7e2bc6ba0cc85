from __future__ import annotations

import logging
import threading
from typing import Callable, Protocol

from sqlalchemy.orm import Session

from .models import PermissionState, User


logger = logging.getLogger("recurtask.permissions")


def parse_permission_state(value: PermissionState | str | None) -> PermissionState:
    if isinstance(value, PermissionState):
        return value
    raw = str(value or "").strip().lower()
    # Browsers report "default" for a permission nobody has been asked about.
    if raw in {"", "default"}:
        return PermissionState.undetermined
    try:
        return PermissionState(raw)
    except ValueError as e:
        raise ValueError(f"Invalid permission state: {value!r}") from e


class PermissionPlatform(Protocol):
    """Where the real permission answer lives (OS, browser, account settings...)."""

    def query(self) -> PermissionState: ...

    def prompt(self) -> PermissionState: ...


class StaticPermissionPlatform:
    """Answers from configuration; the prompt returns the configured decision."""

    def __init__(self, current: PermissionState | str = PermissionState.undetermined, *, answer: PermissionState | str | None = None):
        self.current = parse_permission_state(current)
        self.answer = parse_permission_state(answer) if answer is not None else None

    def query(self) -> PermissionState:
        return self.current

    def prompt(self) -> PermissionState:
        if self.answer is not None and self.answer != PermissionState.undetermined:
            self.current = self.answer
        return self.current


class UserPermissionPlatform:
    """Account-level permission stored on the user row.

    `decision` is what the user picked when asked; it is only written by an
    explicit prompt.
    """

    def __init__(self, db: Session, *, user_id: int, decision: PermissionState | str | None = None):
        self.db = db
        self.user_id = int(user_id)
        self.decision = parse_permission_state(decision) if decision is not None else None

    def _user(self) -> User:
        user = self.db.get(User, self.user_id)
        if user is None:
            raise LookupError(f"User {self.user_id} not found")
        return user

    def query(self) -> PermissionState:
        self.db.expire_all()
        return parse_permission_state(self._user().notification_permission)

    def prompt(self) -> PermissionState:
        user = self._user()
        if self.decision is None or self.decision == PermissionState.undetermined:
            return parse_permission_state(user.notification_permission)
        user.notification_permission = self.decision
        self.db.add(user)
        self.db.commit()
        return self.decision


class PermissionGate:
    """Tracks whether dispatched reminders may be shown at all.

    UNDETERMINED moves to GRANTED or DENIED only through `request()`, which a
    user action must trigger; nothing prompts automatically. `refresh()`
    re-reads the platform, which may have been changed externally.
    """

    def __init__(self, platform: PermissionPlatform):
        self.platform = platform
        self._lock = threading.Lock()
        self._listeners: list[Callable[[PermissionState], None]] = []
        self._state = PermissionState.undetermined
        self.refresh()

    @property
    def state(self) -> PermissionState:
        return self._state

    @property
    def granted(self) -> bool:
        return self._state == PermissionState.granted

    def subscribe(self, listener: Callable[[PermissionState], None]) -> Callable[[], None]:
        """Register a change listener; it is called once right away with the current state."""
        with self._lock:
            self._listeners.append(listener)
        listener(self._state)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def bind_loop(self, loop) -> Callable[[], None]:
        """Drive `loop.set_enabled` from the gate: enabled exactly when granted."""
        return self.subscribe(lambda state: loop.set_enabled(state == PermissionState.granted))

    def refresh(self) -> PermissionState:
        return self._set_state(parse_permission_state(self.platform.query()))

    def request(self) -> PermissionState:
        if self._state != PermissionState.undetermined:
            return self._state
        try:
            result = parse_permission_state(self.platform.prompt())
        except Exception:
            logger.exception("Notification permission request failed")
            return self._state
        return self._set_state(result)

    def _set_state(self, new_state: PermissionState) -> PermissionState:
        with self._lock:
            old = self._state
            self._state = new_state
            listeners = list(self._listeners)
        if new_state != old:
            logger.info("Notification permission changed: %s -> %s", old.value, new_state.value)
            for listener in listeners:
                listener(new_state)
        return new_state
