"""
rbac/models.py -- Domain dataclasses for the role graph.

Permission <-(RolePermission)-> Role <-(UserRole)- user id

Scope: a role, and separately a role assignment, may be tied to one resource
(scope_type + scope_id, e.g. ("project", 7)). Both halves set, or neither.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Scope:
    """A resource context: content-type tag plus numeric id."""

    scope_type: str
    scope_id: int


@dataclass
class Permission:
    codename: str  # lower-cased, unique
    name: str
    id: int | None = None
    description: str | None = None
    created_at: str | None = None


@dataclass
class Role:
    """A named bundle of permissions. A disabled role grants nothing."""

    name: str
    codename: str
    description: str = ""
    id: int | None = None
    scope_type: str | None = None
    scope_id: int | None = None
    enabled: bool = True
    created_at: str | None = None


@dataclass
class RolePermission:
    role_id: int
    permission_id: int
    id: int | None = None
    custom_name: str | None = None  # per-role display label for the permission


@dataclass
class UserRole:
    user_id: int
    role_id: int
    id: int | None = None
    scope_type: str | None = None
    scope_id: int | None = None
    created_at: str | None = None
