"""
rbac/permissions.py -- Permission checks against the role graph.

check_permission(user, action, scope=None):
  1. No user            -> False.
  2. Superuser          -> True, unconditionally.
  3. "role:<codename>"  -> membership check: does the user hold an enabled,
                           applicable role with that codename?
  4. Anything else is a permission codename. It is lower-cased and upserted so
     an action nobody has configured yet simply has no roles attached and
     yields False instead of raising. The first enabled, applicable role that
     carries the codename grants access.

Applicability (scope):
  A grant's effective scope is the grant's own scope if set, else its role's
  scope. The grant applies when the effective scope is global (None) or equals
  the requested scope. Global grants therefore apply to every resource, while
  a grant scoped to ("project", 7) never satisfies an unscoped check or a
  check on ("project", 8). A grant scoped to one resource whose role is scoped
  to a different one is contradictory and never applies.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator

from auth.errors import UnsupportedScope
from auth.models import User
from rbac.models import Role, Scope, UserRole
from rbac.store import RoleStore

logger = logging.getLogger("codegate.rbac")

ROLE_PREFIX = "role:"


def normalize_scope(scope) -> Scope | None:
    """Accept None, a Scope, or a (scope_type, scope_id) pair.

    A pair with only one half set raises UnsupportedScope rather than being
    silently treated as global.
    """
    if scope is None or isinstance(scope, Scope):
        return scope
    try:
        scope_type, scope_id = scope
    except (TypeError, ValueError):
        raise UnsupportedScope(f"Unrecognized permission scope: {scope!r}") from None
    if scope_type is None and scope_id is None:
        return None
    if not scope_type or scope_id is None:
        raise UnsupportedScope()
    try:
        return Scope(str(scope_type), int(scope_id))
    except (TypeError, ValueError):
        raise UnsupportedScope(f"Scope id must be an integer, got {scope_id!r}") from None


def _grant_scope(grant: UserRole, role: Role) -> Scope | None | bool:
    """Effective scope of a grant, or False when grant and role disagree."""
    role_scope = Scope(role.scope_type, role.scope_id) if role.scope_type is not None else None
    grant_scope = Scope(grant.scope_type, grant.scope_id) if grant.scope_type is not None else None
    if grant_scope is not None and role_scope is not None and grant_scope != role_scope:
        return False
    return grant_scope or role_scope


class PermissionResolver:
    def __init__(self, store: RoleStore) -> None:
        self.store = store

    def _applicable_roles(self, user_id: int, scope: Scope | None) -> Iterator[Role]:
        for grant, role in self.store.get_user_roles(user_id):
            if not role.enabled:
                continue
            effective = _grant_scope(grant, role)
            if effective is False:
                continue
            if effective is None or effective == scope:
                yield role

    def check_permission(self, user: User | None, action: str, scope=None) -> bool:
        if user is None:
            return False
        if user.is_superuser:
            return True

        scope = normalize_scope(scope)
        action = action.strip().lower()

        if action.startswith(ROLE_PREFIX):
            wanted = action[len(ROLE_PREFIX) :]
            return any(role.codename.lower() == wanted for role in self._applicable_roles(user.id, scope))

        permission = self.store.get_or_create_permission(action)
        for role in self._applicable_roles(user.id, scope):
            if self.store.role_has_permission(role.id, permission.codename):
                return True
        logger.debug("Permission %r denied for user %s (scope=%s)", permission.codename, user.id, scope)
        return False

    def has_role(self, user: User | None, role_codename: str, scope=None) -> bool:
        return self.check_permission(user, f"{ROLE_PREFIX}{role_codename}", scope)
