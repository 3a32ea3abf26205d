"""
Role hierarchy authority.

Pure decision functions over the four principal roles. Nothing here touches the
database; callers pass in the records they already loaded.
"""
from typing import Dict, FrozenSet, Optional

from database.models import Door, User, UserRole


# Roles each role may create
ROLE_HIERARCHY: Dict[UserRole, FrozenSet[UserRole]] = {
    UserRole.ADMINISTRATOR: frozenset({
        UserRole.ADMINISTRATOR, UserRole.HOST, UserRole.RESIDENT, UserRole.GUEST
    }),
    UserRole.HOST: frozenset({UserRole.RESIDENT, UserRole.GUEST}),
    UserRole.RESIDENT: frozenset({UserRole.GUEST}),
    UserRole.GUEST: frozenset(),
}

# Roles each non-administrator may hand a door grant to
GRANTABLE_ROLES: Dict[UserRole, FrozenSet[UserRole]] = {
    UserRole.HOST: frozenset({UserRole.RESIDENT, UserRole.GUEST}),
    UserRole.RESIDENT: frozenset({UserRole.GUEST}),
    UserRole.GUEST: frozenset(),
}


def _same_id(a: Optional[int], b: Optional[int]) -> bool:
    return a is not None and b is not None and a == b


def can_create(actor_role: UserRole, target_role: UserRole) -> bool:
    """True iff actor_role may create a principal with target_role."""
    return target_role in ROLE_HIERARCHY[actor_role]


def can_modify(actor: User, target: User) -> bool:
    """Administrators modify anyone; others only themselves and principals they created."""
    if actor.role == UserRole.ADMINISTRATOR:
        return True
    if _same_id(actor.id, target.id):
        return True
    return _same_id(actor.id, target.created_by)


def can_change_role(actor_role: UserRole, current_role: UserRole, new_role: UserRole) -> bool:
    """Role changes are administrator-only, whatever the current and new roles are."""
    return actor_role == UserRole.ADMINISTRATOR


def holds_grant(principal: User, door: Door) -> bool:
    return door.id in principal.door_ids()


def can_grant_door_access(actor: User, door: Door, grantee_role: UserRole) -> bool:
    """
    Administrators grant anything. Others must hold a grant on the door
    themselves and may only grant to roles strictly below their own.
    """
    if actor.role == UserRole.ADMINISTRATOR:
        return True
    if not holds_grant(actor, door):
        return False
    return grantee_role in GRANTABLE_ROLES[actor.role]


def can_revoke_door_access(actor: User, target: User) -> bool:
    """Administrators, or whoever created the target principal."""
    if actor.role == UserRole.ADMINISTRATOR:
        return True
    return _same_id(actor.id, target.created_by)


def can_view_door(actor: User, door: Door) -> bool:
    """Administrators see every door; others only doors they hold a grant on."""
    return actor.role == UserRole.ADMINISTRATOR or holds_grant(actor, door)
