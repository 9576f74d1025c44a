"""Unit tests for audit/ -- recorder, redaction and store.

Covers:
- change order preserved in the persisted row
- mark_for_rollback() suppresses the row
- first record_start_action() wins
- one action + two changes -> one row with both changes in order
- action with no changes still writes a row; no action writes nothing
- flush_audit() writes immediately and finalize() does not duplicate it
- finalize() runs once; sink failures are swallowed
- client_ip() header precedence
- redact_sensitive_data() on nested structures
- AuditStore round trip and rollback flag
- audit_trail dependency: a handler that raises still writes its row (500
  envelope); a handler that marks rollback writes nothing
"""

from unittest.mock import MagicMock

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient
from starlette.requests import Request

from api.main import generic_exception_handler
from audit.models import AuditChange
from audit.recorder import AuditRecorder, audit_trail, client_ip
from audit.redaction import REDACTED, redact_sensitive_data
from audit.store import AuditStore

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store():
    s = AuditStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def recorder(store) -> AuditRecorder:
    return AuditRecorder(store, user_id="user-1", ip_address="203.0.113.7", user_agent="pytest")


def _request(headers: dict[str, str] | None = None, client: tuple[str, int] | None = ("10.1.1.1", 5000)) -> Request:
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/",
        "query_string": b"",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": client,
    }
    return Request(scope)


# ---------------------------------------------------------------------------
# Accumulation rules
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("n", [0, 1, 5, 25])
def test_change_order_preserved(recorder, store, n):
    recorder.record_start_action("roles.update.success")
    for i in range(n):
        recorder.record_change("roles", {"v": i}, {"v": i + 1})

    trail = recorder.finalize()

    saved = store.get_audit_trail(trail.id)
    assert [c.old_value["v"] for c in saved.changes] == list(range(n))


def test_multi_op_writes_one_row_with_two_changes(store):
    sink = MagicMock(wraps=store)
    recorder = AuditRecorder(sink, user_id="user-1")
    recorder.record_start_action("MULTI_OP")
    recorder.record_change("users", None, {"name": "A"})
    recorder.record_change("roles", {"name": "old"}, {"name": "new"})

    trail = recorder.finalize()

    assert sink.create_audit_trail.call_count == 1
    saved = store.get_audit_trail(trail.id)
    assert saved.action == "MULTI_OP"
    assert [c.table_name for c in saved.changes] == ["users", "roles"]
    assert saved.changes[1].new_value == {"name": "new"}


def test_rollback_suppresses_row():
    sink = MagicMock()
    recorder = AuditRecorder(sink)
    recorder.record_start_action("passkey.delete.success")
    recorder.record_change("passkeys", {"id": "x"}, None)
    recorder.mark_for_rollback()
    recorder.mark_for_rollback()

    assert recorder.finalize() is None
    sink.create_audit_trail.assert_not_called()


def test_first_action_wins(recorder, store):
    recorder.record_start_action("auth.login.success")
    recorder.record_start_action("auth.login.failed")
    trail = recorder.finalize()
    assert store.get_audit_trail(trail.id).action == "auth.login.success"


def test_action_without_changes_still_written(recorder, store):
    recorder.record_start_action("audit.read")
    trail = recorder.finalize()
    saved = store.get_audit_trail(trail.id)
    assert saved.changes == []
    assert saved.user_id == "user-1"
    assert saved.ip_address == "203.0.113.7"
    assert saved.user_agent == "pytest"


def test_no_action_writes_nothing():
    sink = MagicMock()
    recorder = AuditRecorder(sink)
    recorder.record_change("users", None, {"x": 1})
    assert recorder.finalize() is None
    sink.create_audit_trail.assert_not_called()


def test_get_audit_changes_returns_copy_or_none(recorder):
    assert recorder.get_audit_changes() is None
    recorder.record_change("users", None, {"x": 1})
    snapshot = recorder.get_audit_changes()
    snapshot.append(AuditChange("extra"))
    assert len(recorder.get_audit_changes()) == 1


def test_identify_overrides_user(recorder, store):
    recorder.identify("user-2")
    recorder.record_start_action("auth.login.success")
    trail = recorder.finalize()
    assert store.get_audit_trail(trail.id).user_id == "user-2"


# ---------------------------------------------------------------------------
# Flushing
# ---------------------------------------------------------------------------


def test_flush_audit_then_finalize_does_not_duplicate():
    sink = MagicMock()
    recorder = AuditRecorder(sink)
    recorder.record_start_action("passkey.auth.finish.success")
    recorder.record_change("passkeys", None, {"ok": True})

    recorder.flush_audit()
    recorder.finalize()

    assert sink.create_audit_trail.call_count == 1
    assert recorder.get_audit_changes() is None


def test_flush_audit_noop_when_rolled_back():
    sink = MagicMock()
    recorder = AuditRecorder(sink)
    recorder.record_start_action("x")
    recorder.mark_for_rollback()
    assert recorder.flush_audit() is None
    sink.create_audit_trail.assert_not_called()


def test_flush_failure_keeps_context_and_is_swallowed():
    sink = MagicMock()
    sink.create_audit_trail.side_effect = RuntimeError("db down")
    recorder = AuditRecorder(sink)
    recorder.record_start_action("x")
    recorder.record_change("t", None, 1)

    assert recorder.flush_audit() is None
    assert recorder.initial_action == "x"
    assert len(recorder.get_audit_changes()) == 1


def test_finalize_swallows_sink_failure():
    sink = MagicMock()
    sink.create_audit_trail.side_effect = RuntimeError("db down")
    recorder = AuditRecorder(sink)
    recorder.record_start_action("x")
    assert recorder.finalize() is None


def test_finalize_runs_once():
    sink = MagicMock()
    recorder = AuditRecorder(sink)
    recorder.record_start_action("x")
    recorder.finalize()
    recorder.finalize()
    assert sink.create_audit_trail.call_count == 1


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------


def test_client_ip_prefers_forwarded_for_first_hop():
    req = _request({"X-Forwarded-For": "198.51.100.4, 10.0.0.1", "X-Real-IP": "192.0.2.1"})
    assert client_ip(req) == "198.51.100.4"


def test_client_ip_falls_back_to_real_ip():
    assert client_ip(_request({"X-Real-IP": "192.0.2.1"})) == "192.0.2.1"


def test_client_ip_falls_back_to_socket_peer():
    assert client_ip(_request()) == "10.1.1.1"


def test_client_ip_unknown_without_any_source():
    assert client_ip(_request(client=None)) == "unknown"


def test_for_request_without_token_is_anonymous():
    sink = MagicMock()
    recorder = AuditRecorder.for_request(_request({"User-Agent": "curl/8"}), sink)
    assert recorder.user_id is None
    assert recorder.user_agent == "curl/8"
    assert recorder.ip_address == "10.1.1.1"


def test_for_request_defaults_user_agent():
    recorder = AuditRecorder.for_request(_request(), MagicMock())
    assert recorder.user_agent == "unknown"


# ---------------------------------------------------------------------------
# Redaction
# ---------------------------------------------------------------------------


def test_redacts_nested_sensitive_keys():
    data = {
        "email": "a@example.com",
        "profile": {"new_password": "x", "name": "Ada"},
        "tokens": [{"access_token": "t1", "kind": "bearer"}],
        "Refresh_Token": "t2",
    }
    out = redact_sensitive_data(data)
    assert out["email"] == REDACTED
    assert out["profile"] == {"new_password": REDACTED, "name": "Ada"}
    assert out["tokens"] == [{"access_token": REDACTED, "kind": "bearer"}]
    assert out["Refresh_Token"] == REDACTED
    assert data["email"] == "a@example.com"


def test_redaction_passes_scalars_through():
    assert redact_sensitive_data(None) is None
    assert redact_sensitive_data("plain") == "plain"
    assert redact_sensitive_data({"success": True}) == {"success": True}


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


def test_store_round_trip_and_rollback_flag(store):
    trail = store.create_audit_trail(
        "roles.update.success",
        user_id="u1",
        changes=[AuditChange("roles", {"a": 1}, {"a": 2})],
        ip_address="1.2.3.4",
    )
    saved = store.get_audit_trail(trail.id)
    assert saved.user_agent == "unknown"
    assert saved.is_rolled_back is False
    assert saved.changes[0].new_value == {"a": 2}

    assert store.mark_rolled_back(trail.id) is True
    assert store.get_audit_trail(trail.id).is_rolled_back is True


def test_store_missing_rows(store):
    assert store.get_audit_trail("nope") is None
    assert store.mark_rolled_back("nope") is False


# ---------------------------------------------------------------------------
# Request dependency
# ---------------------------------------------------------------------------


@pytest.fixture
def shared_store(request):
    """Handlers run on worker threads, so the DB must be a named shared-memory one."""
    s = AuditStore(f"sqlite:///file:test_audit_{request.node.name}?mode=memory&cache=shared&uri=true")
    yield s
    s.close()


@pytest.fixture
def dependency_client(shared_store) -> TestClient:
    app = FastAPI()
    app.state.audit_store = shared_store
    app.add_exception_handler(Exception, generic_exception_handler)

    @app.post("/explode")
    def explode(audit: AuditRecorder = Depends(audit_trail)):
        audit.record_start_action("roles.update.failed")
        audit.record_change("roles", {"name": "old"}, None)
        raise RuntimeError("boom")

    @app.post("/undo")
    def undo(audit: AuditRecorder = Depends(audit_trail)):
        audit.record_start_action("MULTI_OP")
        audit.record_change("users", None, {"name": "A"})
        audit.record_change("roles", None, {"name": "B"})
        audit.mark_for_rollback()
        return {"ok": True}

    return TestClient(app, raise_server_exceptions=False)


def test_handler_exception_still_flushes_row(dependency_client, shared_store):
    resp = dependency_client.post("/explode", headers={"User-Agent": "pytest-agent"})

    assert resp.status_code == 500
    assert resp.json()["meta"] == {"code": "APP-500", "message": "An unexpected error occurred"}
    trails = shared_store.list_trails(action="roles.update.failed")
    assert len(trails) == 1
    assert trails[0].changes[0].old_value == {"name": "old"}
    assert trails[0].user_agent == "pytest-agent"


def test_handler_rollback_writes_no_row(dependency_client, shared_store):
    resp = dependency_client.post("/undo")

    assert resp.status_code == 200
    assert shared_store.list_trails() == []
