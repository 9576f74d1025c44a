"""
audit/store.py -- SQLAlchemy Core persistence for audit trail rows.

Pattern: Repository + Data Mapper, same shape as auth/store.py. AuditStore is
the audit sink the recorder flushes into; _row_to_trail is the mapper.

Rows are append-only. The only mutation after insert is flipping
is_rolled_back, which an operator does when the audited change was later
reverted by hand.

Usage:
    store = AuditStore(db_url)
    trail = store.create_audit_trail("auth.login.success", user_id=uid,
                                     changes=[AuditChange("users", None, {...})])
    store.get_audit_trail(trail.id)
    store.close()
"""

import json
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Boolean, Column, MetaData, String, Table, Text
from sqlalchemy.engine import Engine

from audit.models import AuditChange, AuditTrail
from auth.store import make_engine

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_audit_trails = Table(
    "audit_trails",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), index=True),  # NULL = anonymous request
    Column("action", String(128), nullable=False),
    Column("changes", Text),  # JSON list of {table_name, old_value, new_value}
    Column("ip_address", String(64)),
    Column("user_agent", Text),
    Column("created_at", String(32), nullable=False),
    Column("is_rolled_back", Boolean, nullable=False, server_default="0"),
)


class AuditStore:
    def __init__(self, db_url: str) -> None:
        self.engine: Engine = make_engine(db_url)
        _metadata.create_all(self.engine)

    def create_audit_trail(
        self,
        action: str,
        user_id: Optional[str] = None,
        changes: Optional[list[AuditChange]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuditTrail:
        """Insert one audit row and return it with id and created_at set.

        Values inside changes must be JSON-serializable; anything else raises
        TypeError before the insert.
        """
        trail = AuditTrail(
            id=str(uuid.uuid4()),
            action=action,
            user_id=user_id,
            changes=list(changes or []),
            ip_address=ip_address or "unknown",
            user_agent=user_agent or "unknown",
            created_at=datetime.now(timezone.utc).isoformat(),
        )
        payload = json.dumps([c.to_dict() for c in trail.changes])
        with self.engine.connect() as conn:
            conn.execute(
                _audit_trails.insert().values(
                    id=trail.id,
                    user_id=trail.user_id,
                    action=trail.action,
                    changes=payload,
                    ip_address=trail.ip_address,
                    user_agent=trail.user_agent,
                    created_at=trail.created_at,
                    is_rolled_back=False,
                )
            )
            conn.commit()
        return trail

    def get_audit_trail(self, trail_id: str) -> Optional[AuditTrail]:
        with self.engine.connect() as conn:
            row = conn.execute(_audit_trails.select().where(_audit_trails.c.id == trail_id)).fetchone()
        return _row_to_trail(row) if row is not None else None

    def list_trails(
        self, user_id: Optional[str] = None, action: Optional[str] = None, limit: int = 50
    ) -> list[AuditTrail]:
        """Newest rows first, optionally filtered by user and exact action."""
        query = _audit_trails.select()
        if user_id is not None:
            query = query.where(_audit_trails.c.user_id == user_id)
        if action is not None:
            query = query.where(_audit_trails.c.action == action)
        query = query.order_by(_audit_trails.c.created_at.desc()).limit(limit)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_trail(r) for r in rows]

    def mark_rolled_back(self, trail_id: str) -> bool:
        """Flag a row as rolled back. Returns False if the row does not exist."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _audit_trails.update().where(_audit_trails.c.id == trail_id).values(is_rolled_back=True)
            )
            conn.commit()
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper
# ---------------------------------------------------------------------------


def _row_to_trail(row) -> AuditTrail:
    raw = json.loads(row.changes) if row.changes else []
    return AuditTrail(
        id=row.id,
        user_id=row.user_id,
        action=row.action,
        changes=[AuditChange(c["table_name"], c.get("old_value"), c.get("new_value")) for c in raw],
        ip_address=row.ip_address or "unknown",
        user_agent=row.user_agent or "unknown",
        created_at=row.created_at,
        is_rolled_back=bool(row.is_rolled_back),
    )
