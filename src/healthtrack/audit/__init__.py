"""Compliance audit trail."""

from healthtrack.audit.schemas import AuditEvent
from healthtrack.audit.schemas import AuditEventType
from healthtrack.audit.store import AuditLogger

__all__ = ["AuditEvent", "AuditEventType", "AuditLogger"]
