"""Stage status transition table.

The table maps role -> source status -> allowed target statuses. The
`ANY_STATUS` key applies to every source status. Every `Role` must have an
entry, even an empty one, so a new role cannot slip through unchecked.
"""

from __future__ import annotations

from typing import Dict, FrozenSet, Union

from ..models import Role, StageStatus

ANY_STATUS = "any"

S = StageStatus

TransitionMap = Dict[Union[StageStatus, str], FrozenSet[StageStatus]]

STAGE_TRANSITIONS: Dict[Role, TransitionMap] = {
    Role.MAGISTRANT: {
        S.IN_PROGRESS: frozenset({S.SUBMITTED}),
        S.REJECTED: frozenset({S.IN_PROGRESS, S.SUBMITTED}),
    },
    Role.DOCTORANT: {},
    Role.LEADER: {
        S.SUBMITTED: frozenset({S.SUPERVISOR_REVIEW, S.SUPERVISOR_APPROVED, S.REJECTED}),
        S.SUPERVISOR_REVIEW: frozenset({S.SUPERVISOR_APPROVED, S.REJECTED}),
        S.IN_PROGRESS: frozenset({S.SUPERVISOR_REVIEW, S.SUPERVISOR_APPROVED}),
    },
    Role.ADMIN: {
        S.SUPERVISOR_APPROVED: frozenset({S.ADMIN_REVIEW, S.ADMIN_APPROVED}),
        S.ADMIN_REVIEW: frozenset({S.ADMIN_APPROVED, S.REJECTED}),
        # stages that skip the supervisor
        S.SUBMITTED: frozenset({S.ADMIN_REVIEW, S.ADMIN_APPROVED}),
        ANY_STATUS: frozenset({S.REJECTED}),
    },
}

missing = set(Role) - set(STAGE_TRANSITIONS)
if missing:
    raise RuntimeError(f"transition table has no entry for roles: {sorted(r.value for r in missing)}")
del missing


def allowed_targets(role: Role, source: StageStatus) -> FrozenSet[StageStatus]:
    """Return every status `role` may move a stage to from `source`."""
    table = STAGE_TRANSITIONS[Role(role)]
    return table.get(StageStatus(source), frozenset()) | table.get(ANY_STATUS, frozenset())


def can_transition(role: Role, source: StageStatus, target: StageStatus) -> bool:
    return StageStatus(target) in allowed_targets(role, source)
