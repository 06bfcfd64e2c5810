"""
Tests for audit logging.
"""

import pytest

from audit import get_audit_logs, log_action
from database import ConnectionPool, RegistrationStore


@pytest.fixture
def store(tmp_path):
    store = RegistrationStore(ConnectionPool(str(tmp_path / "audit.db")))
    store.init_db()
    yield store
    store.pool.close()


class TestAuditLog:

    def test_log_and_read_back(self, store):
        log_action(store, "director", "approve", target_id="u1", details="ok", ip_address="10.0.0.1")

        logs = get_audit_logs(store)
        assert len(logs) == 1
        entry = logs[0]
        assert entry["actor_id"] == "director"
        assert entry["action"] == "approve"
        assert entry["target_id"] == "u1"
        assert entry["details"] == "ok"
        assert entry["ip_address"] == "10.0.0.1"
        assert entry["timestamp"]

    def test_newest_first(self, store):
        log_action(store, "u1", "login")
        log_action(store, "u1", "register")
        log_action(store, "u1", "logout")

        actions = [e["action"] for e in get_audit_logs(store)]
        assert actions == ["logout", "register", "login"]

    def test_filter_by_action(self, store):
        log_action(store, "u1", "login")
        log_action(store, "u2", "login")
        log_action(store, "director", "reject", target_id="u2")

        logs = get_audit_logs(store, action="login")
        assert {e["actor_id"] for e in logs} == {"u1", "u2"}

    def test_filter_by_actor(self, store):
        log_action(store, "u1", "login")
        log_action(store, "director", "approve", target_id="u1")

        logs = get_audit_logs(store, actor_id="director")
        assert [e["action"] for e in logs] == ["approve"]

    def test_limit_and_offset(self, store):
        for i in range(5):
            log_action(store, "u1", "login", details=str(i))

        page = get_audit_logs(store, limit=2, offset=1)
        assert [e["details"] for e in page] == ["3", "2"]
