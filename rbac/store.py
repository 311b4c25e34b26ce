"""
rbac/store.py -- SQLAlchemy Core persistence for permissions, roles and grants.

Pattern: Repository + Data Mapper, same as auth/store.py.

Concurrency contract:
  get_or_create_permission() and add_permission_to_role() are idempotent
  inserts. They attempt the INSERT and fall back to a SELECT when the UNIQUE
  constraint rejects it, so two requests racing on the same codename both end
  up with the single row rather than one of them failing.

  user_roles cannot use a UNIQUE constraint for the unscoped case because
  SQLite treats NULL scope columns as distinct. assign_role() checks for an
  existing grant first; a race can at worst create a duplicate grant, which is
  harmless for permission checks and removed together by revoke_role().

user_roles.user_id references users in the auth database by value only. Role
grants are not owned by users and are not cascade-deleted with them.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    UniqueConstraint,
    create_engine,
    event,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from rbac.models import Permission, Role, Scope, UserRole

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'codegate_rbac.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_permissions = Table(
    "permissions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("codename", String(150), nullable=False, unique=True),  # lower-cased
    Column("name", String(150), nullable=False),
    Column("description", String(250)),
    Column("created_at", String(32), nullable=False),
)

_roles = Table(
    "roles",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(150), nullable=False),
    Column("codename", String(150), nullable=False),
    Column("description", String(250), nullable=False, server_default=""),
    Column("scope_type", String(100)),
    Column("scope_id", Integer),
    Column("enabled", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
)

_role_permissions = Table(
    "role_permissions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("role_id", Integer, ForeignKey("roles.id", ondelete="CASCADE"), nullable=False),
    Column("permission_id", Integer, ForeignKey("permissions.id", ondelete="CASCADE"), nullable=False),
    Column("custom_name", String(150)),
    UniqueConstraint("role_id", "permission_id", name="uq_role_permission"),
)

_user_roles = Table(
    "user_roles",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("role_id", Integer, ForeignKey("roles.id", ondelete="CASCADE"), nullable=False),
    Column("scope_type", String(100)),
    Column("scope_id", Integer),
    Column("created_at", String(32), nullable=False),
)


def _configure_sqlite(dbapi_conn, connection_record) -> None:
    """Enable WAL and foreign keys on every new SQLite connection."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _scope_clause(table: Table, scope: Scope | None):
    if scope is None:
        return table.c.scope_type.is_(None) & table.c.scope_id.is_(None)
    return (table.c.scope_type == scope.scope_type) & (table.c.scope_id == scope.scope_id)


class RoleStore:
    """Repository for Permission, Role, RolePermission and UserRole rows.

    Usage:
        store = RoleStore("sqlite:///:memory:")
        role_id = store.create_role(Role(name="Editor", codename="editor"))
        store.add_permission_to_role(role_id, "articles.publish")
        store.assign_role(user_id=42, role_id=role_id)
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _configure_sqlite)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    def get_permission(self, codename: str) -> Permission | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _permissions.select().where(_permissions.c.codename == codename.strip().lower())
            ).fetchone()
        return _row_to_permission(row) if row is not None else None

    def get_or_create_permission(
        self, codename: str, name: str | None = None, description: str | None = None
    ) -> Permission:
        """Return the permission for codename, inserting it on first reference.

        Insert-first: the UNIQUE(codename) constraint decides the winner of a
        race and the loser reads the winner's row.
        """
        normalized = codename.strip().lower()
        if not normalized:
            raise ValueError("permission codename must not be empty")
        try:
            with self.engine.connect() as conn:
                conn.execute(
                    _permissions.insert().values(
                        codename=normalized,
                        name=name or codename.strip(),
                        description=description,
                        created_at=_now_iso(),
                    )
                )
                conn.commit()
        except IntegrityError:
            pass
        permission = self.get_permission(normalized)
        if permission is None:
            raise RuntimeError(f"permission {normalized!r} vanished after upsert")
        return permission

    def list_permissions(self) -> list[Permission]:
        with self.engine.connect() as conn:
            rows = conn.execute(_permissions.select().order_by(_permissions.c.codename)).fetchall()
        return [_row_to_permission(r) for r in rows]

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def create_role(self, role: Role) -> int:
        if (role.scope_type is None) != (role.scope_id is None):
            raise ValueError("role scope needs both scope_type and scope_id, or neither")
        with self.engine.connect() as conn:
            result = conn.execute(
                _roles.insert().values(
                    name=role.name,
                    codename=role.codename.strip().lower(),
                    description=role.description or "",
                    scope_type=role.scope_type,
                    scope_id=role.scope_id,
                    enabled=1 if role.enabled else 0,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_role(self, role_id: int) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.id == role_id)).fetchone()
        return _row_to_role(row) if row is not None else None

    def get_role_by_codename(self, codename: str, scope: Scope | None = None) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _roles.select()
                .where((_roles.c.codename == codename.strip().lower()) & _scope_clause(_roles, scope))
                .order_by(_roles.c.id)
            ).fetchone()
        return _row_to_role(row) if row is not None else None

    def set_role_enabled(self, role_id: int, enabled: bool) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_roles.update().where(_roles.c.id == role_id).values(enabled=1 if enabled else 0))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Role <-> Permission
    # ------------------------------------------------------------------

    def add_permission_to_role(self, role_id: int, codename: str, custom_name: str | None = None) -> Permission:
        """Grant codename to a role. Idempotent: a repeated grant is a no-op."""
        permission = self.get_or_create_permission(codename)
        try:
            with self.engine.connect() as conn:
                conn.execute(
                    _role_permissions.insert().values(
                        role_id=role_id, permission_id=permission.id, custom_name=custom_name
                    )
                )
                conn.commit()
        except IntegrityError:
            pass
        return permission

    def remove_permission_from_role(self, role_id: int, codename: str) -> bool:
        permission = self.get_permission(codename)
        if permission is None:
            return False
        with self.engine.connect() as conn:
            result = conn.execute(
                _role_permissions.delete().where(
                    (_role_permissions.c.role_id == role_id) & (_role_permissions.c.permission_id == permission.id)
                )
            )
            conn.commit()
        return result.rowcount > 0

    def get_role_permissions(self, role_id: int) -> list[Permission]:
        stmt = (
            select(_permissions)
            .join(_role_permissions, _role_permissions.c.permission_id == _permissions.c.id)
            .where(_role_permissions.c.role_id == role_id)
            .order_by(_permissions.c.codename)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_permission(r) for r in rows]

    def role_has_permission(self, role_id: int, codename: str) -> bool:
        """Exact, case-insensitive codename match among the role's permissions."""
        stmt = (
            select(_role_permissions.c.id)
            .join(_permissions, _role_permissions.c.permission_id == _permissions.c.id)
            .where((_role_permissions.c.role_id == role_id) & (_permissions.c.codename == codename.strip().lower()))
            .limit(1)
        )
        with self.engine.connect() as conn:
            row = conn.execute(stmt).fetchone()
        return row is not None

    # ------------------------------------------------------------------
    # User <-> Role
    # ------------------------------------------------------------------

    def assign_role(self, user_id: int, role_id: int, scope: Scope | None = None) -> int:
        """Grant a role to a user, optionally scoped. Returns the grant id (existing or new)."""
        with self.engine.connect() as conn:
            existing = conn.execute(
                select(_user_roles.c.id).where(
                    (_user_roles.c.user_id == user_id)
                    & (_user_roles.c.role_id == role_id)
                    & _scope_clause(_user_roles, scope)
                )
            ).fetchone()
            if existing is not None:
                return existing.id
            result = conn.execute(
                _user_roles.insert().values(
                    user_id=user_id,
                    role_id=role_id,
                    scope_type=scope.scope_type if scope else None,
                    scope_id=scope.scope_id if scope else None,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def revoke_role(self, user_id: int, role_id: int, scope: Scope | None = None) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _user_roles.delete().where(
                    (_user_roles.c.user_id == user_id)
                    & (_user_roles.c.role_id == role_id)
                    & _scope_clause(_user_roles, scope)
                )
            )
            conn.commit()
        return result.rowcount > 0

    def get_user_roles(self, user_id: int) -> list[tuple[UserRole, Role]]:
        """Return every (grant, role) pair for a user, oldest grant first."""
        stmt = (
            select(
                _user_roles.c.id.label("grant_id"),
                _user_roles.c.user_id,
                _user_roles.c.scope_type.label("grant_scope_type"),
                _user_roles.c.scope_id.label("grant_scope_id"),
                _user_roles.c.created_at.label("grant_created_at"),
                _roles,
            )
            .join(_roles, _user_roles.c.role_id == _roles.c.id)
            .where(_user_roles.c.user_id == user_id)
            .order_by(_user_roles.c.id)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [
            (
                UserRole(
                    id=r.grant_id,
                    user_id=r.user_id,
                    role_id=r.id,
                    scope_type=r.grant_scope_type,
                    scope_id=r.grant_scope_id,
                    created_at=r.grant_created_at,
                ),
                _row_to_role(r),
            )
            for r in rows
        ]

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers
# ---------------------------------------------------------------------------


def _row_to_permission(row) -> Permission:
    return Permission(
        id=row.id,
        codename=row.codename,
        name=row.name,
        description=row.description,
        created_at=row.created_at,
    )


def _row_to_role(row) -> Role:
    return Role(
        id=row.id,
        name=row.name,
        codename=row.codename,
        description=row.description,
        scope_type=row.scope_type,
        scope_id=row.scope_id,
        enabled=bool(row.enabled),
        created_at=row.created_at,
    )
