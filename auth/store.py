"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper.
UserStore is the repository; _row_to_user / _row_to_device / _row_to_code are
the mappers. Service code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.
  verification_codes.token holds a bcrypt hash, never the plaintext code.

Ownership:
  user_devices and verification_codes cascade-delete with their user.
  SQLite only honours ON DELETE CASCADE when PRAGMA foreign_keys=ON, which the
  connect listener sets on every pooled connection.

Consistency:
  Every method is a single short connection with its own commit. Multi-step
  flows (login, authenticate) are not wrapped in a transaction; see
  auth/service.py for how a partial failure surfaces.

DB path: auth/codegate_auth.db by default (Settings.auth_db_url).
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import Column, ForeignKey, Integer, MetaData, String, Table, Text, create_engine, event, text
from sqlalchemy.engine import Engine

from auth.models import User, UserDevice, VerificationCode

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'codegate_auth.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),  # lower-cased
    Column("username", String(150), unique=True),  # lower-cased, optional
    Column("first_name", String(150)),
    Column("last_name", String(150)),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("is_staff", Integer, nullable=False, server_default="0"),
    Column("is_superuser", Integer, nullable=False, server_default="0"),
    Column("email_verified", Integer, nullable=False, server_default="0"),
    Column("last_login", String(32)),
    Column("date_joined", String(32), nullable=False),
)

_devices = Table(
    "user_devices",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("uuid", String(36), nullable=False, unique=True),
    Column("name", String(250), nullable=False),
    Column("os", String(250)),
    Column("os_version", String(250)),
    Column("app_version", String(250)),
    Column("device_type", String(250)),
    Column("device_token", String(250)),
    Column("firebase_token", String(250)),
    Column("active", Integer, nullable=False, server_default="1"),
    Column("last_login", String(32)),
    Column("ip", String(250)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_codes = Table(
    "verification_codes",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("device_id", Integer, ForeignKey("user_devices.id", ondelete="CASCADE")),
    Column("token", Text, nullable=False),  # bcrypt hash
    Column("verified", Integer, nullable=False, server_default="0"),
    Column("ip", String(150)),
    Column("created_at", String(32), nullable=False),
)

# Columns a device update may touch. Identity columns (id, uuid, user_id) are
# deliberately absent.
_DEVICE_MUTABLE = {
    "name",
    "os",
    "os_version",
    "app_version",
    "device_type",
    "device_token",
    "firebase_token",
    "active",
    "last_login",
    "ip",
}

_USER_MUTABLE = {
    "username",
    "first_name",
    "last_name",
    "is_active",
    "is_staff",
    "is_superuser",
    "email_verified",
    "last_login",
}

_BOOL_COLUMNS = {"is_active", "is_staff", "is_superuser", "email_verified", "active", "verified"}


# ---------------------------------------------------------------------------
# Connection setup
# ---------------------------------------------------------------------------


def _configure_sqlite(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign-key enforcement.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_db(fields: dict) -> dict:
    return {k: (1 if v else 0) if k in _BOOL_COLUMNS else v for k, v in fields.items()}


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User, UserDevice and VerificationCode entities.

    Usage:
        store = UserStore("sqlite:///:memory:")
        uid = store.create_user(User(email="a@x.com"))
        user = store.get_by_email("A@x.com")
        store.close()
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
    # User queries
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        email and username are lower-cased before insert. Raises
        sqlalchemy.exc.IntegrityError if either already exists; callers treat
        that as a concurrent insert and re-read the row.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=user.email.strip().lower(),
                    username=user.username.strip().lower() if user.username else None,
                    first_name=user.first_name,
                    last_name=user.last_name,
                    is_active=1 if user.is_active else 0,
                    is_staff=1 if user.is_staff else 0,
                    is_superuser=1 if user.is_superuser else 0,
                    email_verified=1 if user.email_verified else 0,
                    last_login=user.last_login,
                    date_joined=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email, case-insensitively. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email.strip().lower())).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_username(self, username: str) -> User | None:
        """Look up a user by username, case-insensitively. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == username.strip().lower())).fetchone()
        return _row_to_user(row) if row is not None else None

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields on an existing user.

        Unknown fields raise ValueError rather than being silently ignored.
        Returns True if a row was updated, False if user_id was not found.
        """
        unknown = set(fields) - _USER_MUTABLE
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        if "username" in fields and fields["username"]:
            fields["username"] = fields["username"].strip().lower()
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**_to_db(fields)))
            conn.commit()
        return result.rowcount > 0

    def record_login(self, user_id: int) -> None:
        """Stamp last_login and mark the email as verified after a code exchange."""
        with self.engine.connect() as conn:
            conn.execute(
                _users.update().where(_users.c.id == user_id).values(email_verified=1, last_login=_now_iso())
            )
            conn.commit()

    def delete_user(self, user_id: int) -> bool:
        """Delete a user. Devices and verification codes go with it (cascade)."""
        with self.engine.connect() as conn:
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Device queries
    # ------------------------------------------------------------------

    def create_device(self, device: UserDevice) -> int:
        now = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                _devices.insert().values(
                    user_id=device.user_id,
                    uuid=device.uuid,
                    name=device.name,
                    os=device.os,
                    os_version=device.os_version,
                    app_version=device.app_version,
                    device_type=device.device_type,
                    device_token=device.device_token,
                    firebase_token=device.firebase_token,
                    active=1 if device.active else 0,
                    last_login=device.last_login,
                    ip=device.ip,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_device(self, device_id: int) -> UserDevice | None:
        with self.engine.connect() as conn:
            row = conn.execute(_devices.select().where(_devices.c.id == device_id)).fetchone()
        return _row_to_device(row) if row is not None else None

    def get_device_by_uuid(self, uuid: str, user_id: int) -> UserDevice | None:
        """Look up a device by uuid, scoped to its owner.

        Both conditions must match: a uuid that belongs to another user is
        indistinguishable from an unknown one.
        """
        with self.engine.connect() as conn:
            row = conn.execute(
                _devices.select().where((_devices.c.uuid == uuid) & (_devices.c.user_id == user_id))
            ).fetchone()
        return _row_to_device(row) if row is not None else None

    def get_device_by_push_token(self, firebase_token: str, user_id: int) -> UserDevice | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _devices.select()
                .where((_devices.c.firebase_token == firebase_token) & (_devices.c.user_id == user_id))
                .order_by(_devices.c.id.desc())
            ).fetchone()
        return _row_to_device(row) if row is not None else None

    def list_devices(self, user_id: int) -> list[UserDevice]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _devices.select().where(_devices.c.user_id == user_id).order_by(_devices.c.id)
            ).fetchall()
        return [_row_to_device(r) for r in rows]

    def update_device(self, device_id: int, **fields) -> bool:
        unknown = set(fields) - _DEVICE_MUTABLE
        if unknown:
            raise ValueError(f"Unknown device fields: {unknown!r}")
        values = _to_db(fields)
        values["updated_at"] = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(_devices.update().where(_devices.c.id == device_id).values(**values))
            conn.commit()
        return result.rowcount > 0

    def touch_device_login(self, device_id: int) -> None:
        self.update_device(device_id, last_login=_now_iso())

    def count_devices(self) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(text("SELECT COUNT(*) FROM user_devices")).scalar()
        return result or 0

    # ------------------------------------------------------------------
    # Verification code queries
    # ------------------------------------------------------------------

    def create_verification_code(self, code: VerificationCode) -> int:
        """Insert a code row and return its ID.

        created_at is taken from the dataclass when provided (imports, tests)
        and stamped now otherwise.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _codes.insert().values(
                    user_id=code.user_id,
                    device_id=code.device_id,
                    token=code.token,
                    verified=1 if code.verified else 0,
                    ip=code.ip,
                    created_at=code.created_at or _now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_verification_code(self, code_id: int) -> VerificationCode | None:
        with self.engine.connect() as conn:
            row = conn.execute(_codes.select().where(_codes.c.id == code_id)).fetchone()
        return _row_to_code(row) if row is not None else None

    def get_latest_unverified_code(self, user_id: int) -> VerificationCode | None:
        """Return the most recently created unverified code for a user.

        Older unverified rows are superseded: they stay in the table but are
        never consulted once a newer one exists. id breaks created_at ties.
        """
        with self.engine.connect() as conn:
            row = conn.execute(
                _codes.select()
                .where((_codes.c.user_id == user_id) & (_codes.c.verified == 0))
                .order_by(_codes.c.created_at.desc(), _codes.c.id.desc())
            ).fetchone()
        return _row_to_code(row) if row is not None else None

    def has_verified_code(self, user_id: int) -> bool:
        """True if the user has exchanged at least one code (distinguishes replay from never-issued)."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _codes.select().where((_codes.c.user_id == user_id) & (_codes.c.verified == 1)).limit(1)
            ).fetchone()
        return row is not None

    def set_code_token(self, code_id: int, token_hash: str) -> None:
        with self.engine.connect() as conn:
            conn.execute(_codes.update().where(_codes.c.id == code_id).values(token=token_hash))
            conn.commit()

    def mark_code_verified(self, code_id: int) -> bool:
        """Flip verified 0 -> 1. Returns False if the row was already consumed or gone.

        The verified == 0 guard makes the flip a compare-and-set, so two
        concurrent exchanges of the same code cannot both succeed.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _codes.update().where((_codes.c.id == code_id) & (_codes.c.verified == 0)).values(verified=1)
            )
            conn.commit()
        return result.rowcount > 0

    def consume_unverified_codes(self, user_id: int) -> int:
        """Mark every remaining unverified code of a user as verified.

        Called after a successful exchange. Superseded rows may carry the same
        hash (a resend reuses the cached plaintext), so none of them may stay
        usable. Returns the number of rows consumed.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _codes.update().where((_codes.c.user_id == user_id) & (_codes.c.verified == 0)).values(verified=1)
            )
            conn.commit()
        return result.rowcount

    def delete_verification_code(self, code_id: int) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_codes.delete().where(_codes.c.id == code_id))
            conn.commit()
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        username=row.username,
        first_name=row.first_name,
        last_name=row.last_name,
        is_active=bool(row.is_active),
        is_staff=bool(row.is_staff),
        is_superuser=bool(row.is_superuser),
        email_verified=bool(row.email_verified),
        last_login=row.last_login,
        date_joined=row.date_joined,
    )


def _row_to_device(row) -> UserDevice:
    return UserDevice(
        id=row.id,
        user_id=row.user_id,
        uuid=row.uuid,
        name=row.name,
        os=row.os,
        os_version=row.os_version,
        app_version=row.app_version,
        device_type=row.device_type,
        device_token=row.device_token,
        firebase_token=row.firebase_token,
        active=bool(row.active),
        last_login=row.last_login,
        ip=row.ip,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_code(row) -> VerificationCode:
    return VerificationCode(
        id=row.id,
        user_id=row.user_id,
        device_id=row.device_id,
        token=row.token,
        verified=bool(row.verified),
        ip=row.ip,
        created_at=row.created_at,
    )
