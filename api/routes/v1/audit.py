"""
api/routes/v1/audit.py -- Audit trail read and rollback-flag endpoints.

Routes:
  GET  /api/v1/audit/trails                 -- newest rows, filter by user_id/action (audit.read)
  GET  /api/v1/audit/trails/{id}            -- one audit row (audit.read)
  POST /api/v1/audit/trails/{id}/rollback   -- flag a row as rolled back (audit.update)

The rollback flag is informational: it records that an operator reverted the
audited change by other means. Nothing is undone here.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from api.models import AuditChangeResponse, AuditTrailResponse
from api.responses import respond
from audit.models import AuditTrail
from audit.store import AuditStore
from auth.dependencies import require_permission, service_name
from auth.models import Principal

router = APIRouter(dependencies=[Depends(service_name("AUDIT"))])


def _to_response(trail: AuditTrail) -> AuditTrailResponse:
    return AuditTrailResponse(
        id=trail.id or "",
        user_id=trail.user_id,
        action=trail.action,
        changes=[
            AuditChangeResponse(table_name=c.table_name, old_value=c.old_value, new_value=c.new_value)
            for c in trail.changes
        ],
        ip_address=trail.ip_address,
        user_agent=trail.user_agent,
        created_at=trail.created_at,
        is_rolled_back=trail.is_rolled_back,
    )


@router.get("/audit/trails")
def list_trails(
    request: Request,
    user_id: Optional[str] = Query(default=None, max_length=36),
    action: Optional[str] = Query(default=None, max_length=128),
    limit: int = Query(default=50, ge=1, le=500),
    principal: Principal = Depends(require_permission("audit.read")),
) -> JSONResponse:
    store: AuditStore = request.app.state.audit_store
    trails = store.list_trails(user_id=user_id, action=action, limit=limit)
    return respond(request, "Audit trails retrieved successfully", [_to_response(t) for t in trails])


@router.get("/audit/trails/{trail_id}")
def get_trail(
    request: Request,
    trail_id: str,
    principal: Principal = Depends(require_permission("audit.read")),
) -> JSONResponse:
    store: AuditStore = request.app.state.audit_store
    trail = store.get_audit_trail(trail_id)
    if trail is None:
        return respond(request, "Audit trail not found", status_code=404)
    return respond(request, "Audit trail retrieved successfully", _to_response(trail))


@router.post("/audit/trails/{trail_id}/rollback")
def mark_rolled_back(
    request: Request,
    trail_id: str,
    principal: Principal = Depends(require_permission("audit.update")),
) -> JSONResponse:
    store: AuditStore = request.app.state.audit_store
    if not store.mark_rolled_back(trail_id):
        return respond(request, "Audit trail not found", status_code=404)
    return respond(request, "Audit trail marked as rolled back", _to_response(store.get_audit_trail(trail_id)))
