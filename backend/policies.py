"""Access and application-lifecycle decisions.

Everything here is pure: callers read the rows they need (fresh, per request)
and pass the relevant ids in. Nothing in this module touches the database.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel


class Role(str, Enum):
    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"
    AGENT = "agent"
    SUPPORT_STAFF = "support_staff"
    CLIENT = "client"


class Scope(str, Enum):
    GLOBAL = "global"
    AGENT_SPECIFIC = "agent_specific"


class ApplicationStatus(str, Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    ACTIVE = "active"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


ADMIN_ROLES = {Role.SUPER_ADMIN, Role.ADMIN}
STAFF_ROLES = {Role.SUPER_ADMIN, Role.ADMIN, Role.AGENT, Role.SUPPORT_STAFF}
ENROLLMENT_SUBMIT_ROLES = {Role.SUPER_ADMIN, Role.ADMIN, Role.AGENT}

ROLE_CREATION_HIERARCHY: Dict[Role, List[Role]] = {
    Role.SUPER_ADMIN: [Role.SUPER_ADMIN, Role.ADMIN, Role.AGENT, Role.SUPPORT_STAFF, Role.CLIENT],
    Role.ADMIN: [Role.ADMIN, Role.AGENT, Role.SUPPORT_STAFF, Role.CLIENT],
    Role.AGENT: [Role.SUPPORT_STAFF, Role.CLIENT],
    Role.SUPPORT_STAFF: [],
    Role.CLIENT: [],
}

APPLICATION_STATUS_TRANSITIONS: Dict[ApplicationStatus, List[ApplicationStatus]] = {
    ApplicationStatus.DRAFT: [ApplicationStatus.SUBMITTED, ApplicationStatus.CANCELLED],
    ApplicationStatus.SUBMITTED: [
        ApplicationStatus.PENDING_APPROVAL,
        ApplicationStatus.REJECTED,
        ApplicationStatus.CANCELLED,
    ],
    ApplicationStatus.PENDING_APPROVAL: [
        ApplicationStatus.APPROVED,
        ApplicationStatus.REJECTED,
        ApplicationStatus.CANCELLED,
    ],
    ApplicationStatus.APPROVED: [ApplicationStatus.ACTIVE, ApplicationStatus.CANCELLED],
    ApplicationStatus.ACTIVE: [],
    ApplicationStatus.REJECTED: [],
    ApplicationStatus.CANCELLED: [],
}

# Statuses that block cancellation, with the state named in the error.
NON_CANCELLABLE_STATUSES = {
    ApplicationStatus.ACTIVE,
    ApplicationStatus.REJECTED,
    ApplicationStatus.CANCELLED,
}


class Actor(BaseModel):
    user_id: str
    email: Optional[str] = None
    role: Optional[Role] = None
    scope: Optional[Scope] = None
    assigned_agent_id: Optional[str] = None
    own_agent_id: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES


def parse_role(value: Any) -> Optional[Role]:
    if isinstance(value, Role):
        return value
    text = str(value or "").strip().lower()
    try:
        return Role(text)
    except ValueError:
        return None


def parse_scope(value: Any) -> Optional[Scope]:
    if isinstance(value, Scope):
        return value
    text = str(value or "").strip().lower()
    try:
        return Scope(text)
    except ValueError:
        return None


def parse_status(value: Any) -> Optional[ApplicationStatus]:
    if isinstance(value, ApplicationStatus):
        return value
    text = str(value or "").strip().lower()
    try:
        return ApplicationStatus(text)
    except ValueError:
        return None


# ----------------------
# Access policy
# ----------------------

def can_access(actor: Actor, resource_owner_agent_id: Optional[str]) -> bool:
    """Return whether ``actor`` may read or write a resource owned by an agent.

    ``resource_owner_agent_id`` must be read fresh by the caller; agents can be
    reassigned between requests. Clients are never granted access here, their
    own records are matched by user id instead.
    """
    role = actor.role
    if role == Role.SUPER_ADMIN or role == Role.ADMIN:
        return True
    if role == Role.AGENT:
        if not resource_owner_agent_id or not actor.own_agent_id:
            return False
        return actor.own_agent_id == resource_owner_agent_id
    if role == Role.SUPPORT_STAFF:
        if actor.scope == Scope.GLOBAL:
            return True
        if actor.scope == Scope.AGENT_SPECIFIC:
            if not resource_owner_agent_id or not actor.assigned_agent_id:
                return False
            return actor.assigned_agent_id == resource_owner_agent_id
        return False
    if role == Role.CLIENT:
        return False
    return False


def build_access_filter(
    actor: Actor,
    *,
    agent_column: str = "agent_id",
    owner_column: Optional[str] = "user_id",
) -> tuple[str, List[Any]]:
    """SQL ``WHERE`` fragment restricting a list query to what ``actor`` may see."""
    role = actor.role
    if role == Role.SUPER_ADMIN or role == Role.ADMIN:
        return "", []
    if role == Role.AGENT:
        if not actor.own_agent_id:
            return "WHERE 1 = 0", []
        return f"WHERE {agent_column} = ?", [actor.own_agent_id]
    if role == Role.SUPPORT_STAFF:
        if actor.scope == Scope.GLOBAL:
            return "", []
        if actor.scope == Scope.AGENT_SPECIFIC and actor.assigned_agent_id:
            return f"WHERE {agent_column} = ?", [actor.assigned_agent_id]
        return "WHERE 1 = 0", []
    if role == Role.CLIENT:
        if not owner_column:
            return "WHERE 1 = 0", []
        return f"WHERE {owner_column} = ?", [actor.user_id]
    return "WHERE 1 = 0", []


def can_create_role(creator_role: Optional[Role], target_role: Optional[Role]) -> bool:
    if creator_role is None or target_role is None:
        return False
    return target_role in ROLE_CREATION_HIERARCHY.get(creator_role, [])


def support_staff_scope_for(creator_role: Optional[Role]) -> Scope:
    # Staff created by an agent only ever see that agent's book.
    if creator_role == Role.AGENT:
        return Scope.AGENT_SPECIFIC
    return Scope.GLOBAL


# ----------------------
# Application status transitions
# ----------------------

def can_transition(current: ApplicationStatus, new: ApplicationStatus) -> bool:
    if current == new:
        return False
    return new in APPLICATION_STATUS_TRANSITIONS.get(current, [])


def allowed_transitions(current: ApplicationStatus) -> List[ApplicationStatus]:
    return list(APPLICATION_STATUS_TRANSITIONS.get(current, []))


def is_terminal(status: ApplicationStatus) -> bool:
    return not APPLICATION_STATUS_TRANSITIONS.get(status)


def can_change_status(actor: Actor, owner_agent_id: Optional[str]) -> bool:
    """Role gate layered on top of the status graph."""
    if not actor.is_staff:
        return False
    return can_access(actor, owner_agent_id)


def allowed_transitions_for(
    actor: Actor, current: ApplicationStatus, owner_agent_id: Optional[str]
) -> List[ApplicationStatus]:
    if not can_change_status(actor, owner_agent_id):
        return []
    return allowed_transitions(current)


def cancellation_block_reason(status: ApplicationStatus) -> Optional[str]:
    if status == ApplicationStatus.CANCELLED:
        return "Application is already cancelled"
    if status in NON_CANCELLABLE_STATUSES:
        return f"Cannot cancel an application in state {status.value}"
    return None
