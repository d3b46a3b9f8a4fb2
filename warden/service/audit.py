from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Protocol

from warden.logging import get_correlation_id, get_logger
from warden.service.clock import ClockSource, SystemClock
from warden.storage.models import (
    AuditCategory,
    AuditEvent,
    AuditQuery,
    AuditResult,
    AuditSeverity,
    new_id,
)

COMPLIANCE_EVENT_LIMIT = 1000


class AuditStore(Protocol):
    def append_audit_event(self, event: AuditEvent) -> AuditEvent:
        ...

    def query_audit_events(self, query: AuditQuery) -> List[AuditEvent]:
        ...

    def delete_audit_events_before(self, cutoff: datetime) -> int:
        ...


@dataclass
class ComplianceReport:
    start: datetime
    end: datetime
    total_events: int = 0
    by_category: Dict[str, int] = field(default_factory=dict)
    by_severity: Dict[str, int] = field(default_factory=dict)
    by_result: Dict[str, int] = field(default_factory=dict)
    security_incidents: int = 0
    failed_logins: int = 0
    data_access: int = 0
    admin_actions: int = 0
    events: List[AuditEvent] = field(default_factory=list)


class AuditService:
    """Append-only audit trail.

    Writes are fire-and-forget: a failed append is reported through the
    application log and never propagates to the operation being audited.
    """

    def __init__(self, store: AuditStore, *, clock: Optional[ClockSource] = None) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self.logger = get_logger(__name__)

    def log_event(
        self,
        event_type: str,
        *,
        category: AuditCategory,
        severity: AuditSeverity = AuditSeverity.INFO,
        result: AuditResult = AuditResult.SUCCESS,
        identity_id: Optional[str] = None,
        session_id: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        action: Optional[str] = None,
        failure_reason: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        request_id: Optional[str] = None,
        old_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditEvent]:
        event = AuditEvent(
            id=new_id(),
            event_type=event_type,
            category=category,
            severity=severity,
            result=result,
            created_at=self.clock.now(),
            identity_id=identity_id,
            session_id=session_id,
            resource_type=resource_type,
            resource_id=resource_id,
            action=action,
            failure_reason=failure_reason,
            ip_address=ip_address,
            user_agent=user_agent,
            request_id=request_id or get_correlation_id(),
            old_values=old_values,
            new_values=new_values,
            metadata=metadata,
        )
        try:
            return self.store.append_audit_event(event)
        except Exception as exc:
            self.logger.error(
                "audit_write_failed",
                event_type=event_type,
                category=category.value,
                identity_id=identity_id,
                error=str(exc),
            )
            return None

    # convenience wrappers
    def log_authentication(
        self,
        event_type: str,
        *,
        success: bool,
        identity_id: Optional[str] = None,
        failure_reason: Optional[str] = None,
        **context: Any,
    ) -> Optional[AuditEvent]:
        return self.log_event(
            event_type,
            category=AuditCategory.AUTHENTICATION,
            severity=AuditSeverity.INFO if success else AuditSeverity.WARNING,
            result=AuditResult.SUCCESS if success else AuditResult.FAILURE,
            identity_id=identity_id,
            failure_reason=failure_reason,
            **context,
        )

    def log_authorization(
        self,
        identity_id: Optional[str],
        resource_type: str,
        action: str,
        *,
        granted: bool,
        failure_reason: Optional[str] = None,
        **context: Any,
    ) -> Optional[AuditEvent]:
        return self.log_event(
            "permission_granted" if granted else "permission_denied",
            category=AuditCategory.AUTHORIZATION,
            severity=AuditSeverity.INFO if granted else AuditSeverity.WARNING,
            result=AuditResult.SUCCESS if granted else AuditResult.FAILURE,
            identity_id=identity_id,
            resource_type=resource_type,
            action=action,
            failure_reason=failure_reason,
            **context,
        )

    def log_data_access(
        self,
        identity_id: Optional[str],
        resource_type: str,
        resource_id: Optional[str] = None,
        *,
        action: str = "read",
        **context: Any,
    ) -> Optional[AuditEvent]:
        return self.log_event(
            "data_accessed",
            category=AuditCategory.DATA_ACCESS,
            identity_id=identity_id,
            resource_type=resource_type,
            resource_id=resource_id,
            action=action,
            **context,
        )

    def log_data_modification(
        self,
        identity_id: Optional[str],
        resource_type: str,
        resource_id: Optional[str],
        action: str,
        *,
        old_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
        **context: Any,
    ) -> Optional[AuditEvent]:
        return self.log_event(
            f"data_{action}",
            category=AuditCategory.DATA_ACCESS,
            identity_id=identity_id,
            resource_type=resource_type,
            resource_id=resource_id,
            action=action,
            old_values=old_values,
            new_values=new_values,
            **context,
        )

    def log_security_event(
        self,
        event_type: str,
        *,
        severity: AuditSeverity = AuditSeverity.WARNING,
        identity_id: Optional[str] = None,
        **context: Any,
    ) -> Optional[AuditEvent]:
        return self.log_event(
            event_type,
            category=AuditCategory.SECURITY,
            severity=severity,
            result=context.pop("result", AuditResult.FAILURE),
            identity_id=identity_id,
            **context,
        )

    def log_admin_action(
        self,
        identity_id: Optional[str],
        action: str,
        *,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        **context: Any,
    ) -> Optional[AuditEvent]:
        return self.log_event(
            f"admin_{action}",
            category=AuditCategory.ADMIN,
            identity_id=identity_id,
            resource_type=resource_type,
            resource_id=resource_id,
            action=action,
            **context,
        )

    # queries
    def query(self, query: AuditQuery) -> List[AuditEvent]:
        return self.store.query_audit_events(query)

    def user_logs(self, identity_id: str, *, limit: int = 100, offset: int = 0) -> List[AuditEvent]:
        return self.query(AuditQuery(identity_id=identity_id, limit=limit, offset=offset))

    def resource_logs(
        self, resource_type: str, resource_id: Optional[str] = None, *, limit: int = 100
    ) -> List[AuditEvent]:
        return self.query(
            AuditQuery(resource_type=resource_type, resource_id=resource_id, limit=limit)
        )

    def security_events(
        self, *, severity: Optional[AuditSeverity] = None, limit: int = 100
    ) -> List[AuditEvent]:
        return self.query(
            AuditQuery(category=AuditCategory.SECURITY, severity=severity, limit=limit)
        )

    def failed_logins(
        self, identity_id: str, *, since: Optional[datetime] = None
    ) -> List[AuditEvent]:
        return self.query(
            AuditQuery(
                identity_id=identity_id,
                category=AuditCategory.AUTHENTICATION,
                result=AuditResult.FAILURE,
                start=since,
                limit=None,
            )
        )

    def failed_logins_by_origin(
        self, ip_address: str, *, since: Optional[datetime] = None
    ) -> List[AuditEvent]:
        return self.query(
            AuditQuery(
                ip_address=ip_address,
                category=AuditCategory.AUTHENTICATION,
                result=AuditResult.FAILURE,
                start=since,
                limit=None,
            )
        )

    def compliance_report(self, start: datetime, end: datetime) -> ComplianceReport:
        events = self.query(AuditQuery(start=start, end=end, limit=None))
        events.sort(key=lambda e: e.created_at)
        report = ComplianceReport(start=start, end=end, total_events=len(events))
        report.by_category = dict(Counter(e.category.value for e in events))
        report.by_severity = dict(Counter(e.severity.value for e in events))
        report.by_result = dict(Counter(e.result.value for e in events))
        report.security_incidents = sum(1 for e in events if e.category is AuditCategory.SECURITY)
        report.failed_logins = sum(
            1
            for e in events
            if e.category is AuditCategory.AUTHENTICATION and e.result is AuditResult.FAILURE
        )
        report.data_access = sum(1 for e in events if e.category is AuditCategory.DATA_ACCESS)
        report.admin_actions = sum(1 for e in events if e.category is AuditCategory.ADMIN)
        report.events = events[:COMPLIANCE_EVENT_LIMIT]
        return report

    def cleanup(self, *, older_than_days: int = 365) -> int:
        cutoff = self.clock.now() - timedelta(days=older_than_days)
        removed = self.store.delete_audit_events_before(cutoff)
        self.logger.info("audit_events_pruned", count=removed, older_than_days=older_than_days)
        return removed


__all__ = ["AuditService", "AuditStore", "ComplianceReport"]
