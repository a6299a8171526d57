"""Audit logging.

Two streams:

- operational events (issuance, verification, revocation) kept in a ring
  buffer for recent-event queries and written to the ``audit`` logger;
- full-disclosure access entries kept in an append-only, hash-chained list.
  Entries are never edited or removed; :meth:`AuditLogger.verify_chain`
  detects tampering.
"""

import asyncio
import hashlib
import logging
from collections import deque
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Optional

from rxguard.collaborators import AuditLogSink
from rxguard.credentials.issuer import sha256_hex

log = logging.getLogger("audit")

GENESIS_HASH = "0" * 64


@dataclass
class AuditEvent:
    """Structured operational event."""

    action: str  # e.g. "prescription.issue", "claim.verify"
    principal: str = "anonymous"
    resource: str | None = None
    status: str = "success"  # "success", "denied", "error", "revoked"
    details: dict[str, Any] | None = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


@dataclass(frozen=True)
class AuditLogEntry:
    """One full-disclosure access record."""

    entry_id: str
    auditor_id: str
    prescription_id: str
    prescription_credential_id: str
    reason: str
    accessed_at: str
    token_fingerprint: str
    previous_hash: str = ""
    entry_hash: str = ""

    def content_hash(self) -> str:
        body = asdict(self)
        body.pop("entry_hash")
        return sha256_hex(body)

    def to_dict(self) -> dict:
        return {
            "entryId": self.entry_id,
            "auditorId": self.auditor_id,
            "prescriptionId": self.prescription_id,
            "prescriptionCredentialId": self.prescription_credential_id,
            "reason": self.reason,
            "accessedAt": self.accessed_at,
            "tokenFingerprint": self.token_fingerprint,
            "previousHash": self.previous_hash,
            "entryHash": self.entry_hash,
        }


def token_fingerprint(token: str) -> str:
    """Short, non-reversible identifier for an authorization token."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()[:16]


class AuditLogger(AuditLogSink):
    """In-process audit logger and append-only access log."""

    MAX_BUFFER_SIZE = 1000

    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self._buffer: deque[dict] = deque(maxlen=self.MAX_BUFFER_SIZE)
        self._entries: list[AuditLogEntry] = []
        self._lock = asyncio.Lock()

    def log(
        self,
        event: AuditEvent | None = None,
        *,
        action: str | None = None,
        principal: str | None = None,
        resource: str | None = None,
        status: str = "success",
        details: dict[str, Any] | None = None,
    ) -> None:
        """Record an operational event. Accepts an AuditEvent or keyword arguments."""
        if not self.enabled:
            return

        if event is None:
            event = AuditEvent(
                action=action or "unknown",
                principal=principal or "anonymous",
                resource=resource,
                status=status,
                details=details,
            )

        self._buffer.append(asdict(event))

        extra = {
            "type": "audit",
            "principal": event.principal,
            "action": event.action,
            "status": event.status,
        }
        if event.resource:
            extra["resource"] = event.resource
        if event.details:
            extra["details"] = event.details

        if event.status in ("denied", "revoked", "error"):
            log.warning(f"audit: {event.action} {event.status}", extra=extra)
        else:
            log.info(f"audit: {event.action} {event.status}", extra=extra)

    def get_recent_events(
        self,
        limit: int = 100,
        action_filter: str | None = None,
        status_filter: str | None = None,
    ) -> list[dict]:
        """Recent operational events, newest first."""
        events = list(self._buffer)
        events.reverse()

        if action_filter:
            events = [e for e in events if e["action"].startswith(action_filter)]
        if status_filter:
            events = [e for e in events if e["status"] == status_filter]

        return events[:limit]

    def get_buffer_stats(self) -> dict:
        return {
            "buffer_size": len(self._buffer),
            "max_buffer_size": self.MAX_BUFFER_SIZE,
            "access_entries": len(self._entries),
        }

    async def append(self, entry: AuditLogEntry) -> AuditLogEntry:
        """Seal an access entry onto the chain and return the sealed copy.

        Runs even when operational event logging is disabled.
        """
        async with self._lock:
            previous = self._entries[-1].entry_hash if self._entries else GENESIS_HASH
            sealed = replace(entry, previous_hash=previous, entry_hash="")
            sealed = replace(sealed, entry_hash=sealed.content_hash())
            self._entries.append(sealed)

        log.info(
            f"audit: disclosure.full {sealed.prescription_id}",
            extra={
                "type": "audit",
                "principal": sealed.auditor_id,
                "action": "disclosure.full",
                "resource": sealed.prescription_credential_id,
                "entry_hash": sealed.entry_hash,
            },
        )
        return sealed

    def entries(self, prescription_id: Optional[str] = None) -> list[AuditLogEntry]:
        """Copy of the access log, oldest first."""
        if prescription_id is None:
            return list(self._entries)
        return [e for e in self._entries if e.prescription_id == prescription_id]

    def verify_chain(self) -> bool:
        previous = GENESIS_HASH
        for entry in self._entries:
            if entry.previous_hash != previous or entry.content_hash() != entry.entry_hash:
                return False
            previous = entry.entry_hash
        return True


_audit_logger: AuditLogger | None = None


def get_audit_logger() -> AuditLogger:
    """Get the global audit logger instance."""
    global _audit_logger
    if _audit_logger is None:
        from rxguard.core.config import AUDIT_ENABLED

        _audit_logger = AuditLogger(enabled=AUDIT_ENABLED)
    return _audit_logger


def reset_audit_logger() -> None:
    """Reset the global audit logger (for testing)."""
    global _audit_logger
    _audit_logger = None
