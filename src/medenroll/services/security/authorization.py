"""
Authorization Gate.

Capability check consumed once at the orchestrator boundary, before any
mutating operation. Token validation and role lookup happen upstream; the
gate only answers allow/deny for an already-identified actor.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Protocol

from medenroll.core.enums import ActorRole, Permission


class AuthorizationDecision(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


@dataclass(frozen=True)
class Actor:
    """Authenticated caller."""

    id: str
    roles: frozenset[ActorRole] = field(default_factory=frozenset)

    def has_role(self, role: ActorRole) -> bool:
        return role in self.roles


@dataclass(frozen=True)
class Resource:
    """What an action targets; ``owner_id`` drives ownership rules."""

    type: str
    id: Optional[str] = None
    owner_id: Optional[str] = None

    def __str__(self) -> str:
        return f"{self.type}/{self.id}" if self.id else self.type


SYSTEM_ACTOR = Actor(id="system", roles=frozenset({ActorRole.SYSTEM}))


class AuthorizationGate(Protocol):
    """Narrow interface to the access-control collaborator."""

    def check(self, actor: Actor, action: Permission, resource: Resource) -> AuthorizationDecision: ...


# Role → permission codes; "*" grants everything, "<prefix>:*" a family.
ROLE_PERMISSIONS: dict[ActorRole, list[str]] = {
    ActorRole.ADMIN: ["*"],
    ActorRole.SYSTEM: ["*"],
    ActorRole.INTERVIEWER: [
        "enrollment:read",
        "interview:*",
        "audit:read",
    ],
    ActorRole.ENROLLEE: [
        "enrollment:create",
        "enrollment:read",
        "enrollment:submit_documents",
        "enrollment:cancel",
        "document:upload",
        "document:process",
        "health_declaration:record",
    ],
}

# Permissions an enrollee holds only for enrollments they own.
OWNER_SCOPED_ROLES = frozenset({ActorRole.ENROLLEE})


def _grants(granted: str, action: Permission) -> bool:
    if granted == "*":
        return True
    if granted.endswith(":*"):
        return action.value.startswith(granted[:-1])
    return granted == action.value


class RoleBasedAuthorizationGate:
    """Default gate: static role table plus an ownership rule for enrollees."""

    def __init__(self, role_permissions: Optional[dict[ActorRole, list[str]]] = None):
        self._role_permissions = role_permissions or ROLE_PERMISSIONS

    def check(self, actor: Actor, action: Permission, resource: Resource) -> AuthorizationDecision:
        for role in actor.roles:
            permissions = self._role_permissions.get(role, [])
            if not any(_grants(p, action) for p in permissions):
                continue
            if role in OWNER_SCOPED_ROLES and resource.owner_id is not None:
                if resource.owner_id != actor.id:
                    continue
            return AuthorizationDecision.ALLOW
        return AuthorizationDecision.DENY


class AllowAllGate:
    """Gate that allows everything (local tooling and tests)."""

    def check(self, actor: Actor, action: Permission, resource: Resource) -> AuthorizationDecision:
        return AuthorizationDecision.ALLOW
