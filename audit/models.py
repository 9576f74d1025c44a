"""
audit/models.py -- Domain dataclasses for the audit trail.

These are pure data containers. Accumulation rules live in audit/recorder.py
and persistence in audit/store.py.
"""

from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class AuditChange:
    """One field-level change recorded during a request.

    old_value and new_value are opaque: whatever the handler recorded is
    serialized as-is (after redaction by the caller).
    """

    table_name: str
    old_value: Any = None
    new_value: Any = None

    def to_dict(self) -> dict:
        return {"table_name": self.table_name, "old_value": self.old_value, "new_value": self.new_value}


@dataclass
class AuditTrail:
    """A persisted audit row: one request, one action, zero or more changes.

    id is None before the record is written to the database.
    """

    action: str
    user_id: Optional[str] = None
    changes: list[AuditChange] = field(default_factory=list)
    ip_address: str = "unknown"
    user_agent: str = "unknown"
    id: Optional[str] = None
    created_at: str = ""  # ISO 8601, set by store on insert
    is_rolled_back: bool = False
