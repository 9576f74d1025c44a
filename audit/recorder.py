"""
audit/recorder.py -- Per-request audit accumulator.

Every request that depends on audit_trail gets a fresh AuditRecorder. Handler
code labels the request once and appends field-level changes as it goes:

    @router.post("/things")
    def create_thing(audit: AuditRecorder = Depends(audit_trail)):
        audit.record_start_action("thing.create.success")
        audit.record_change("things", None, redact_sensitive_data(new_thing))

When the request finishes -- successfully, with an HTTPException, or with an
unexpected error -- the dependency's finally block calls finalize(), which
writes at most one row:

  rollback marked       -> nothing
  action recorded       -> one row, with whatever changes exist (possibly none)
  no action recorded    -> nothing

The first record_start_action() wins; later calls are ignored, so a helper
that also labels the request cannot rename it.

flush_audit() writes the row immediately and then clears the action and
changes, so finalize() does not write it a second time. Handlers use it when
the row must exist before they return (e.g. before signing tokens).

Audit is best-effort: sink failures are logged and swallowed, never turned
into a failed response.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from typing import Any, Optional, Protocol

from fastapi import Request

from audit.models import AuditChange, AuditTrail
from auth.dependencies import try_get_principal

logger = logging.getLogger("realm.audit")

UNKNOWN = "unknown"


class AuditSink(Protocol):
    def create_audit_trail(
        self,
        action: str,
        user_id: Optional[str] = None,
        changes: Optional[list[AuditChange]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuditTrail: ...


class AuditRecorder:
    def __init__(
        self,
        sink: AuditSink,
        user_id: Optional[str] = None,
        ip_address: str = UNKNOWN,
        user_agent: str = UNKNOWN,
    ) -> None:
        self._sink = sink
        self.user_id = user_id
        self.ip_address = ip_address
        self.user_agent = user_agent

        self.action_recorded = False
        self.initial_action: Optional[str] = None
        self.changes: list[AuditChange] = []
        self.rollback_pending = False
        self._finalized = False

    @classmethod
    def for_request(cls, request: Request, sink: AuditSink) -> AuditRecorder:
        principal = try_get_principal(request)
        return cls(
            sink,
            user_id=principal.id if principal else None,
            ip_address=client_ip(request),
            user_agent=request.headers.get("user-agent") or UNKNOWN,
        )

    # ------------------------------------------------------------------
    # Handler-facing API
    # ------------------------------------------------------------------

    def record_start_action(self, action: str) -> None:
        if not self.action_recorded:
            self.initial_action = action
            self.action_recorded = True

    def record_change(self, table_name: str, old_value: Any = None, new_value: Any = None) -> None:
        self.changes.append(AuditChange(table_name, old_value, new_value))

    def mark_for_rollback(self) -> None:
        self.rollback_pending = True

    def identify(self, user_id: str) -> None:
        """Attribute the row to a user resolved during the request (e.g. at login)."""
        self.user_id = user_id

    def get_audit_changes(self) -> Optional[list[AuditChange]]:
        return list(self.changes) if self.changes else None

    def flush_audit(self) -> Optional[AuditTrail]:
        """Write the row now. Returns the written row, or None if nothing was written."""
        trail = self._write()
        if trail is not None:
            self.initial_action = None
            self.action_recorded = False
            self.changes = []
        return trail

    # ------------------------------------------------------------------
    # End of request
    # ------------------------------------------------------------------

    def finalize(self) -> Optional[AuditTrail]:
        """End-of-request flush. Runs at most once per recorder."""
        if self._finalized:
            return None
        self._finalized = True
        return self._write()

    def _write(self) -> Optional[AuditTrail]:
        if self.rollback_pending or not self.action_recorded or self.initial_action is None:
            return None
        try:
            return self._sink.create_audit_trail(
                action=self.initial_action,
                user_id=self.user_id,
                changes=list(self.changes),
                ip_address=self.ip_address,
                user_agent=self.user_agent,
            )
        except Exception:
            logger.exception("Audit write failed for action %s", self.initial_action)
            return None


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------


def client_ip(request: Request) -> str:
    """Best-effort client address: X-Forwarded-For first hop, X-Real-IP, socket peer."""
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip", "").strip()
    if real_ip:
        return real_ip
    if request.client and request.client.host:
        return request.client.host
    return UNKNOWN


def audit_trail(request: Request) -> Iterator[AuditRecorder]:
    """FastAPI dependency: yield a fresh recorder and flush it when the request ends.

    Use as a FastAPI dependency:
        @router.post("/x")
        def route(audit: AuditRecorder = Depends(audit_trail)): ...
    """
    recorder = AuditRecorder.for_request(request, request.app.state.audit_store)
    try:
        yield recorder
    finally:
        recorder.finalize()
