"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper.
UserStore and PasskeyStore are the repositories; the _row_to_* functions
are the mappers. Route, dependency and service code never touches SQL
directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Passkey public keys are stored as raw bytes and only ever leave the store
  inside PasskeyCredential objects handed to the ceremony engine. Listing
  endpoints map credentials to summaries that omit the key.

JSON columns (role permissions, passkey transports) are stored as TEXT and
decoded in the mappers, which keeps the schema portable between SQLite and
Postgres without dialect-specific types.

Layer rule: no imports from api/, audit/, or cache/.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    Integer,
    LargeBinary,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
)
from sqlalchemy.engine import Engine

from auth.models import PasskeyCredential, Role, User

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_roles = Table(
    "roles",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(64), nullable=False, unique=True),
    Column("description", Text),
    Column("permissions", Text),  # JSON list; NULL = no permissions
    Column("created_at", String(32), nullable=False),
)

_users = Table(
    "users",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("name", String(255), nullable=False),
    Column("hashed_password", Text),  # NULL = passkey-only account
    Column("role_id", String(36), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
)

_passkeys = Table(
    "passkeys",
    _metadata,
    Column("id", String(1024), primary_key=True),  # base64url credential id
    Column("user_id", String(36), nullable=False, index=True),
    Column("name", String(100)),
    Column("public_key", LargeBinary, nullable=False),
    Column("counter", Integer, nullable=False, server_default="0"),
    Column("device_type", String(32)),
    Column("backed_up", Boolean, nullable=False, server_default="0"),
    Column("transports", Text),  # JSON list
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# Engine helpers
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def make_engine(db_url: str) -> Engine:
    """Create an engine with the SQLite tweaks every store in this package needs."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    return engine


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Users and roles
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User and Role entities.

    Usage:
        store = UserStore(db_url)
        role_id = store.create_role(Role(name="admin", permissions=["admins.read"]))
        store.create_user(User(email="a@example.com", name="A", role_id=role_id))
        user = store.get_by_email("a@example.com")
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = make_engine(db_url)
        _metadata.create_all(self.engine, tables=[_roles, _users])

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def create_role(self, role: Role) -> str:
        """Insert a role and return its id.

        Raises sqlalchemy.exc.IntegrityError if the name is taken.
        """
        role_id = role.id or _new_id()
        with self.engine.connect() as conn:
            conn.execute(
                _roles.insert().values(
                    id=role_id,
                    name=role.name,
                    description=role.description,
                    permissions=json.dumps(role.permissions) if role.permissions is not None else None,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
        return role_id

    def get_role_by_name(self, name: str) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.name == name)).fetchone()
        return _row_to_role(row) if row is not None else None

    def get_role(self, role_id: str) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.id == role_id)).fetchone()
        return _row_to_role(row) if row is not None else None

    def update_role_permissions(self, role_id: str, permissions: list[str] | None) -> bool:
        """Replace a role's permission list. Returns False if the role does not exist."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _roles.update()
                .where(_roles.c.id == role_id)
                .values(permissions=json.dumps(permissions) if permissions is not None else None)
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().limit(1)).fetchone()
        return row is not None

    def create_user(self, user: User) -> str:
        """Insert a new user and return its id.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        """
        user_id = user.id or _new_id()
        with self.engine.connect() as conn:
            conn.execute(
                _users.insert().values(
                    id=user_id,
                    email=user.email,
                    name=user.name,
                    hashed_password=user.hashed_password,
                    role_id=user.role_id,
                    created_at=_now_iso(),
                    is_active=1 if user.is_active else 0,
                )
            )
            conn.commit()
        return user_id

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by exact email, with the role attached. None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        return self._with_role(row)

    def get_by_id(self, user_id: str) -> User | None:
        """Look up a user by primary key, with the role attached. None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return self._with_role(row)

    def _with_role(self, row) -> User | None:
        if row is None:
            return None
        user = _row_to_user(row)
        user.role = self.get_role(user.role_id)
        return user

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Passkey credentials
# ---------------------------------------------------------------------------


class PasskeyStore:
    """Repository for PasskeyCredential records.

    The credential id is the primary key, so find_by_id() is the lookup the
    authentication ceremony performs on every login.
    """

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = make_engine(db_url)
        _metadata.create_all(self.engine, tables=[_passkeys])

    def find_by_owner(self, owner_id: str) -> list[PasskeyCredential]:
        """All credentials registered by a user, oldest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _passkeys.select().where(_passkeys.c.user_id == owner_id).order_by(_passkeys.c.created_at)
            ).fetchall()
        return [_row_to_passkey(r) for r in rows]

    def find_by_id(self, credential_id: str) -> PasskeyCredential | None:
        with self.engine.connect() as conn:
            row = conn.execute(_passkeys.select().where(_passkeys.c.id == credential_id)).fetchone()
        return _row_to_passkey(row) if row is not None else None

    def create(self, credential: PasskeyCredential) -> PasskeyCredential:
        """Insert a credential and return it with timestamps filled in.

        Raises sqlalchemy.exc.IntegrityError if the credential id already exists.
        """
        now = _now_iso()
        with self.engine.connect() as conn:
            conn.execute(
                _passkeys.insert().values(
                    id=credential.id,
                    user_id=credential.owner_id,
                    name=credential.name,
                    public_key=credential.public_key,
                    counter=credential.counter,
                    device_type=credential.device_type,
                    backed_up=credential.backed_up,
                    transports=json.dumps(list(credential.transports)),
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
        credential.created_at = now
        credential.updated_at = now
        return credential

    def update_counter(self, credential_id: str, new_counter: int) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _passkeys.update()
                .where(_passkeys.c.id == credential_id)
                .values(counter=new_counter, updated_at=_now_iso())
            )
            conn.commit()

    def delete(self, credential_id: str) -> bool:
        """Delete a credential. Returns True if a row was removed.

        Ownership is the caller's responsibility (PasskeyService.delete_passkey
        checks it before calling here).
        """
        with self.engine.connect() as conn:
            result = conn.execute(_passkeys.delete().where(_passkeys.c.id == credential_id))
            conn.commit()
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_role(row) -> Role:
    return Role(
        id=row.id,
        name=row.name,
        description=row.description,
        permissions=json.loads(row.permissions) if row.permissions is not None else None,
    )


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        name=row.name,
        hashed_password=row.hashed_password,
        role_id=row.role_id,
        created_at=row.created_at,
        is_active=bool(row.is_active),
    )


def _row_to_passkey(row) -> PasskeyCredential:
    return PasskeyCredential(
        id=row.id,
        owner_id=row.user_id,
        name=row.name,
        public_key=bytes(row.public_key),
        counter=row.counter,
        device_type=row.device_type,
        backed_up=bool(row.backed_up),
        transports=json.loads(row.transports) if row.transports else [],
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
