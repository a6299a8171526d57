"""Audit trail for credential access."""

from rxguard.audit.logger import (
    AuditEvent,
    AuditLogEntry,
    AuditLogger,
    get_audit_logger,
    reset_audit_logger,
)

__all__ = [
    "AuditEvent",
    "AuditLogEntry",
    "AuditLogger",
    "get_audit_logger",
    "reset_audit_logger",
]
