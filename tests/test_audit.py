"""Tests for the append-only audit trail."""

from datetime import timedelta

import pytest

from warden.logging import set_correlation_id
from warden.service.audit import AuditService
from warden.storage.memory import MemoryStore
from warden.storage.models import AuditCategory, AuditQuery, AuditResult, AuditSeverity


@pytest.fixture
def trail(clock):
    return AuditService(MemoryStore(), clock=clock)


class TestWriting:
    def test_authentication_failure_is_a_warning(self, trail):
        event = trail.log_authentication(
            "login_failed", success=False, identity_id="id-1", failure_reason="bad password"
        )

        assert event.category is AuditCategory.AUTHENTICATION
        assert event.severity is AuditSeverity.WARNING
        assert event.result is AuditResult.FAILURE

    def test_request_id_defaults_to_correlation_id(self, trail):
        set_correlation_id("req-123")

        event = trail.log_admin_action("id-1", "role_assigned", resource_type="identity")

        assert event.request_id == "req-123"
        assert event.event_type == "admin_role_assigned"

    def test_data_modification_keeps_before_and_after(self, trail):
        event = trail.log_data_modification(
            "id-1", "invoice", "inv-9", "update", old_values={"total": 1}, new_values={"total": 2}
        )

        assert event.event_type == "data_update"
        assert event.category is AuditCategory.DATA_ACCESS
        assert (event.resource_type, event.action) == ("invoice", "update")
        assert (event.old_values, event.new_values) == ({"total": 1}, {"total": 2})

    def test_categories_are_a_closed_set(self):
        assert {c.value for c in AuditCategory} == {
            "authentication",
            "authorization",
            "data_access",
            "admin",
            "security",
            "system",
        }

    def test_stored_snapshot_is_detached_from_caller(self, trail):
        snapshot = {"role": "employee"}
        metadata = {"changed": ["role"]}
        trail.log_data_modification(
            "id-1", "identity", "id-2", "update", new_values=snapshot, metadata=metadata
        )

        snapshot["role"] = "owner"
        metadata["changed"].append("email")
        stored = trail.user_logs("id-1")[0]
        stored.new_values["role"] = "admin"

        assert trail.user_logs("id-1")[0].new_values == {"role": "employee"}
        assert trail.user_logs("id-1")[0].metadata == {"changed": ["role"]}

    def test_security_event_result_can_be_overridden(self, trail):
        event = trail.log_security_event(
            "mfa_disabled", severity=AuditSeverity.CRITICAL, result=AuditResult.SUCCESS
        )

        assert event.result is AuditResult.SUCCESS
        assert event.severity is AuditSeverity.CRITICAL

    def test_store_failure_never_propagates(self, clock):
        class ReadOnlyStore(MemoryStore):
            def append_audit_event(self, event):
                raise IOError("disk full")

        assert AuditService(ReadOnlyStore(), clock=clock).log_authorization(
            "id-1", "users", "read", granted=True
        ) is None


class TestQueries:
    def test_user_logs_newest_first(self, trail, clock):
        trail.log_data_access("id-1", "invoice", "a")
        clock.advance(minutes=1)
        trail.log_data_access("id-1", "invoice", "b")
        trail.log_data_access("id-2", "invoice", "c")

        logs = trail.user_logs("id-1")

        assert [e.resource_id for e in logs] == ["b", "a"]
        assert [e.resource_id for e in trail.user_logs("id-1", limit=1, offset=1)] == ["a"]

    def test_failed_logins_by_identity_and_origin(self, trail, clock):
        trail.log_authentication("login_failed", success=False, identity_id="id-1", ip_address="10.0.0.1")
        trail.log_authentication("login_succeeded", success=True, identity_id="id-1", ip_address="10.0.0.1")
        clock.advance(hours=2)
        trail.log_authentication("login_failed", success=False, identity_id="id-1", ip_address="10.0.0.2")

        assert len(trail.failed_logins("id-1")) == 2
        assert len(trail.failed_logins("id-1", since=clock.now() - timedelta(hours=1))) == 1
        assert len(trail.failed_logins_by_origin("10.0.0.1")) == 1

    def test_security_events_filter_by_severity(self, trail):
        trail.log_security_event("refresh_token_reuse", severity=AuditSeverity.CRITICAL)
        trail.log_security_event("account_locked")

        assert len(trail.security_events()) == 2
        assert [e.event_type for e in trail.security_events(severity=AuditSeverity.CRITICAL)] == [
            "refresh_token_reuse"
        ]

    def test_resource_logs(self, trail):
        trail.log_data_access("id-1", "invoice", "a")
        trail.log_data_access("id-1", "client", "a")

        assert len(trail.resource_logs("invoice")) == 1

    def test_query_by_result(self, trail):
        trail.log_authorization("id-1", "users", "read", granted=True)
        trail.log_authorization("id-1", "users", "delete", granted=False)

        denied = trail.query(AuditQuery(result=AuditResult.FAILURE))

        assert [e.event_type for e in denied] == ["permission_denied"]


class TestReporting:
    def test_compliance_report(self, trail, clock):
        start = clock.now()
        trail.log_authentication("login_failed", success=False)
        trail.log_security_event("account_locked")
        trail.log_data_access("id-1", "invoice")
        trail.log_admin_action("id-1", "role_assigned")
        clock.advance(minutes=5)

        report = trail.compliance_report(start, clock.now())

        assert report.total_events == 4
        assert report.failed_logins == 1
        assert report.security_incidents == 1
        assert report.data_access == 1
        assert report.admin_actions == 1
        assert report.by_result == {"failure": 2, "success": 2}
        assert report.events[0].event_type == "login_failed"

    def test_mutations_count_as_data_access(self, trail, clock):
        start = clock.now()
        trail.log_data_access("id-1", "invoice")
        trail.log_data_modification("id-1", "invoice", "inv-9", "delete", old_values={"total": 2})

        report = trail.compliance_report(start, clock.now())

        assert report.data_access == 2
        assert report.by_category == {"data_access": 2}

    def test_cleanup_respects_retention(self, trail, clock):
        trail.log_data_access("id-1", "invoice")
        clock.advance(days=400)
        trail.log_data_access("id-1", "invoice")

        assert trail.cleanup() == 1
        assert len(trail.user_logs("id-1")) == 1
