"""Integration tests for /api/v1/audit/* -- permission-gated audit access.

Covers:
- GET /audit/trails/{id}: audit.read allowed, 404 for unknown ids, 401 anonymous
- GET /audit/trails: filters and newest-first order, limit validation
- POST /audit/trails/{id}/rollback: audit.update required (admin -> 403),
  superadmin flips the flag
"""

from __future__ import annotations

from audit.models import AuditChange
from auth.dependencies import FORBIDDEN_MESSAGE


def _seed(api_env, action: str = "roles.update.success", user_id: str = "seed-user"):
    return api_env.stores.audit.create_audit_trail(
        action,
        user_id=user_id,
        changes=[AuditChange("roles", {"name": "old"}, {"name": "new"})],
        ip_address="198.51.100.9",
        user_agent="pytest",
    )


def test_read_trail_with_audit_read(api_env):
    trail = _seed(api_env)
    resp = api_env.client.get(f"/api/v1/audit/trails/{trail.id}", headers=api_env.auth(api_env.admin_token))

    assert resp.status_code == 200
    body = resp.json()
    assert body["meta"]["code"] == "AUDIT-200"
    data = body["data"]
    assert data["action"] == "roles.update.success"
    assert data["changes"] == [{"table_name": "roles", "old_value": {"name": "old"}, "new_value": {"name": "new"}}]
    assert data["ip_address"] == "198.51.100.9"
    assert data["is_rolled_back"] is False


def test_read_missing_trail(api_env):
    resp = api_env.client.get("/api/v1/audit/trails/nope", headers=api_env.auth(api_env.admin_token))
    assert resp.status_code == 404
    assert resp.json()["meta"] == {"code": "AUDIT-404", "message": "Audit trail not found"}


def test_read_requires_auth(api_env):
    trail = _seed(api_env)
    resp = api_env.client.get(f"/api/v1/audit/trails/{trail.id}")
    assert resp.status_code == 401
    assert resp.json()["meta"]["code"] == "AUDIT-401"


def test_list_filters_by_user_and_action(api_env):
    _seed(api_env, "users.create.success", user_id="lister")
    newest = _seed(api_env, "users.delete.success", user_id="lister")
    _seed(api_env, "users.delete.success", user_id="someone-else")

    resp = api_env.client.get(
        "/api/v1/audit/trails", params={"user_id": "lister"}, headers=api_env.auth(api_env.admin_token)
    )
    data = resp.json()["data"]
    assert resp.status_code == 200
    assert {t["action"] for t in data} == {"users.create.success", "users.delete.success"}
    assert data[0]["id"] == newest.id

    resp = api_env.client.get(
        "/api/v1/audit/trails",
        params={"user_id": "lister", "action": "users.create.success"},
        headers=api_env.auth(api_env.admin_token),
    )
    assert [t["action"] for t in resp.json()["data"]] == ["users.create.success"]


def test_list_limit_is_validated(api_env):
    resp = api_env.client.get("/api/v1/audit/trails", params={"limit": 0}, headers=api_env.auth(api_env.admin_token))
    assert resp.status_code == 400
    assert resp.json()["meta"]["errors"][0]["field"] == "limit"


def test_rollback_requires_audit_update(api_env):
    trail = _seed(api_env)
    resp = api_env.client.post(
        f"/api/v1/audit/trails/{trail.id}/rollback", headers=api_env.auth(api_env.admin_token)
    )
    assert resp.status_code == 403
    assert resp.json()["meta"] == {"code": "AUDIT-403", "message": FORBIDDEN_MESSAGE}
    assert api_env.stores.audit.get_audit_trail(trail.id).is_rolled_back is False


def test_rollback_by_superadmin(api_env):
    trail = _seed(api_env)
    resp = api_env.client.post(f"/api/v1/audit/trails/{trail.id}/rollback", headers=api_env.auth(api_env.root_token))
    assert resp.status_code == 200
    assert resp.json()["data"]["is_rolled_back"] is True
    assert api_env.stores.audit.get_audit_trail(trail.id).is_rolled_back is True


def test_rollback_missing_trail(api_env):
    resp = api_env.client.post("/api/v1/audit/trails/nope/rollback", headers=api_env.auth(api_env.root_token))
    assert resp.status_code == 404
