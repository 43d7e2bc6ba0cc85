import pytest

from fakes import FakeLoop, make_session
from recurtask.crud import create_user
from recurtask.models import PermissionState, User
from recurtask.permissions import (
    PermissionGate,
    StaticPermissionPlatform,
    UserPermissionPlatform,
    parse_permission_state,
)


class CountingPlatform:
    def __init__(self, current, answer):
        self.current = current
        self.answer = answer
        self.prompts = 0

    def query(self):
        return self.current

    def prompt(self):
        self.prompts += 1
        self.current = self.answer
        return self.answer


class BrokenPlatform:
    def query(self):
        return PermissionState.undetermined

    def prompt(self):
        raise RuntimeError("prompt dismissed")


def test_parse_permission_state():
    assert parse_permission_state("default") == PermissionState.undetermined
    assert parse_permission_state(None) == PermissionState.undetermined
    assert parse_permission_state(" GRANTED ") == PermissionState.granted
    assert parse_permission_state(PermissionState.denied) == PermissionState.denied
    with pytest.raises(ValueError):
        parse_permission_state("maybe")


def test_gate_starts_from_platform_state():
    assert PermissionGate(StaticPermissionPlatform("granted")).granted is True
    assert PermissionGate(StaticPermissionPlatform("denied")).state == PermissionState.denied
    assert PermissionGate(StaticPermissionPlatform()).state == PermissionState.undetermined


def test_request_prompts_only_when_undetermined():
    platform = CountingPlatform(PermissionState.undetermined, PermissionState.granted)
    gate = PermissionGate(platform)

    assert gate.request() == PermissionState.granted
    assert gate.request() == PermissionState.granted
    assert platform.prompts == 1


def test_denied_is_never_reprompted():
    platform = CountingPlatform(PermissionState.denied, PermissionState.granted)
    gate = PermissionGate(platform)

    assert gate.request() == PermissionState.denied
    assert platform.prompts == 0


def test_prompt_failure_keeps_state():
    gate = PermissionGate(BrokenPlatform())
    assert gate.request() == PermissionState.undetermined


def test_subscribe_reports_current_state_and_changes():
    platform = CountingPlatform(PermissionState.undetermined, PermissionState.granted)
    gate = PermissionGate(platform)
    seen = []

    unsubscribe = gate.subscribe(seen.append)
    gate.request()
    # No notification when nothing changed.
    gate.refresh()
    unsubscribe()
    platform.current = PermissionState.denied
    gate.refresh()

    assert seen == [PermissionState.undetermined, PermissionState.granted]
    assert gate.state == PermissionState.denied


def test_bound_loop_runs_only_while_granted():
    platform = CountingPlatform(PermissionState.undetermined, PermissionState.granted)
    gate = PermissionGate(platform)
    loop = FakeLoop()

    gate.bind_loop(loop)
    gate.request()
    # Revoked from outside, picked up on refresh.
    platform.current = PermissionState.denied
    gate.refresh()

    assert loop.calls == [False, True, False]


def test_static_platform_answer():
    platform = StaticPermissionPlatform("undetermined", answer="denied")
    gate = PermissionGate(platform)
    assert gate.request() == PermissionState.denied
    assert platform.query() == PermissionState.denied


def test_user_platform_persists_decision(tmp_path):
    db = make_session(tmp_path)
    try:
        user = create_user(db, username="alice")
        assert PermissionGate(UserPermissionPlatform(db, user_id=user.id)).state == PermissionState.undetermined

        gate = PermissionGate(UserPermissionPlatform(db, user_id=user.id, decision="granted"))
        assert gate.request() == PermissionState.granted
        assert db.get(User, user.id).notification_permission == PermissionState.granted

        # A second answer cannot override a decision already made.
        gate = PermissionGate(UserPermissionPlatform(db, user_id=user.id, decision="denied"))
        assert gate.request() == PermissionState.granted
        assert db.get(User, user.id).notification_permission == PermissionState.granted
    finally:
        db.close()
