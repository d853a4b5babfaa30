"""Vigil audit logging."""

from vigil.logging.audit_log import AuditEvent, AuditLog, EventType, LogRedactor

__all__ = ["AuditEvent", "AuditLog", "EventType", "LogRedactor"]
