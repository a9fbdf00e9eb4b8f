import pytest

from iup_tracker.models import Role, StageStatus as S
from iup_tracker.utils.transitions import STAGE_TRANSITIONS, allowed_targets, can_transition


def test_every_role_has_an_entry():
    assert set(STAGE_TRANSITIONS) == set(Role)


@pytest.mark.parametrize("role,source,target", [
    (Role.MAGISTRANT, S.IN_PROGRESS, S.SUBMITTED),
    (Role.MAGISTRANT, S.REJECTED, S.IN_PROGRESS),
    (Role.MAGISTRANT, S.REJECTED, S.SUBMITTED),
    (Role.LEADER, S.SUBMITTED, S.SUPERVISOR_APPROVED),
    (Role.LEADER, S.SUPERVISOR_REVIEW, S.REJECTED),
    (Role.LEADER, S.IN_PROGRESS, S.SUPERVISOR_REVIEW),
    (Role.ADMIN, S.SUPERVISOR_APPROVED, S.ADMIN_APPROVED),
    (Role.ADMIN, S.ADMIN_REVIEW, S.ADMIN_APPROVED),
    (Role.ADMIN, S.SUBMITTED, S.ADMIN_REVIEW),
])
def test_allowed_transitions(role, source, target):
    assert can_transition(role, source, target)


@pytest.mark.parametrize("role,source,target", [
    (Role.MAGISTRANT, S.IN_PROGRESS, S.ADMIN_APPROVED),
    (Role.MAGISTRANT, S.SUBMITTED, S.IN_PROGRESS),
    (Role.MAGISTRANT, S.NOT_STARTED, S.SUBMITTED),
    (Role.LEADER, S.ADMIN_REVIEW, S.ADMIN_APPROVED),
    (Role.LEADER, S.IN_PROGRESS, S.REJECTED),
    (Role.ADMIN, S.IN_PROGRESS, S.ADMIN_APPROVED),
    (Role.DOCTORANT, S.IN_PROGRESS, S.SUBMITTED),
])
def test_disallowed_transitions(role, source, target):
    assert not can_transition(role, source, target)


def test_admin_may_reject_from_any_status():
    for source in S:
        assert S.REJECTED in allowed_targets(Role.ADMIN, source)


def test_doctorants_cannot_change_any_status():
    for source in S:
        assert allowed_targets(Role.DOCTORANT, source) == frozenset()


def test_allowed_targets_accepts_raw_values():
    assert allowed_targets("leaders", "submitted") == {S.SUPERVISOR_REVIEW, S.SUPERVISOR_APPROVED, S.REJECTED}
