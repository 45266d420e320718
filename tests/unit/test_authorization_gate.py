"""
Authorization gate tests.
"""

import pytest

from medenroll.core.enums import ActorRole, Permission
from medenroll.services.security.authorization import (
    SYSTEM_ACTOR,
    Actor,
    AllowAllGate,
    AuthorizationDecision,
    Resource,
    RoleBasedAuthorizationGate,
)

ALLOW = AuthorizationDecision.ALLOW
DENY = AuthorizationDecision.DENY

OWN = Resource("enrollment", "enr-1", owner_id="member-1")
OTHERS = Resource("enrollment", "enr-2", owner_id="member-2")


@pytest.fixture
def gate() -> RoleBasedAuthorizationGate:
    return RoleBasedAuthorizationGate()


@pytest.mark.unit
class TestEnrolleePermissions:
    """Enrollees act on their own enrollments only."""

    @pytest.mark.parametrize(
        "action",
        [
            Permission.ENROLLMENT_READ,
            Permission.ENROLLMENT_SUBMIT_DOCUMENTS,
            Permission.ENROLLMENT_CANCEL,
            Permission.DOCUMENT_UPLOAD,
            Permission.HEALTH_DECLARATION_RECORD,
        ],
    )
    def test_own_enrollment(self, gate, enrollee, action):
        assert gate.check(enrollee, action, OWN) == ALLOW

    def test_other_enrollment(self, gate, enrollee):
        assert gate.check(enrollee, Permission.ENROLLMENT_READ, OTHERS) == DENY

    def test_create_for_self_only(self, gate, enrollee):
        assert gate.check(enrollee, Permission.ENROLLMENT_CREATE, Resource("enrollment", None, "member-1")) == ALLOW
        assert gate.check(enrollee, Permission.ENROLLMENT_CREATE, Resource("enrollment", None, "member-9")) == DENY

    @pytest.mark.parametrize(
        "action",
        [Permission.INTERVIEW_SCHEDULE, Permission.INTERVIEW_COMPLETE, Permission.AUDIT_READ, Permission.NOTIFICATION_MANAGE],
    )
    def test_staff_actions(self, gate, enrollee, action):
        assert gate.check(enrollee, action, OWN) == DENY


@pytest.mark.unit
class TestStaffPermissions:
    """Interviewers, admins and the system actor."""

    @pytest.mark.parametrize(
        "action",
        [Permission.INTERVIEW_SCHEDULE, Permission.INTERVIEW_START, Permission.INTERVIEW_COMPLETE, Permission.AUDIT_READ],
    )
    def test_interviewer_on_any_enrollment(self, gate, interviewer, action):
        assert gate.check(interviewer, action, OTHERS) == ALLOW

    def test_interviewer_cannot_cancel(self, gate, interviewer):
        assert gate.check(interviewer, Permission.ENROLLMENT_CANCEL, OTHERS) == DENY

    @pytest.mark.parametrize("action", list(Permission))
    def test_admin_and_system(self, gate, admin, action):
        assert gate.check(admin, action, OTHERS) == ALLOW
        assert gate.check(SYSTEM_ACTOR, action, OTHERS) == ALLOW

    def test_multiple_roles_combine(self, gate):
        actor = Actor("member-1", frozenset({ActorRole.ENROLLEE, ActorRole.INTERVIEWER}))

        assert gate.check(actor, Permission.ENROLLMENT_READ, OTHERS) == ALLOW
        assert gate.check(actor, Permission.ENROLLMENT_CANCEL, OTHERS) == DENY

    def test_no_roles(self, gate):
        assert gate.check(Actor("anonymous"), Permission.ENROLLMENT_READ, OWN) == DENY


@pytest.mark.unit
def test_allow_all_gate():
    assert AllowAllGate().check(Actor("anyone"), Permission.NOTIFICATION_MANAGE, Resource("notification_target")) == ALLOW
