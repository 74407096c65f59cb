"""Audit trail for executed plan actions."""

from teamsync.audit.logger import AuditEvent, AuditLogger, AuditSummary

__all__ = ["AuditEvent", "AuditLogger", "AuditSummary"]
