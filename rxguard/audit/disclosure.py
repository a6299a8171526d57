"""Full disclosure for authorized auditors.

The auditor's token is checked upstream against the actor registry. This
module derives the ``audit`` frame and writes one access entry.
"""

import logging
import uuid
from typing import Optional

from rxguard.collaborators import AuditLogSink, CredentialStore, call_collaborator
from rxguard.core.config import EngineConfig
from rxguard.core.exceptions import InvalidClaims, NotFound
from rxguard.credentials.models import CredentialKind, utc_now
from rxguard.disclosure.engine import DisclosureEngine, PartialDisclosure
from rxguard.disclosure.frames import DisclosureFrameName
from rxguard.audit.logger import AuditLogEntry, token_fingerprint

log = logging.getLogger(__name__)


class AuditDisclosureService:
    def __init__(
        self,
        engine: DisclosureEngine,
        store: CredentialStore,
        sink: AuditLogSink,
        config: EngineConfig,
    ):
        self._engine = engine
        self._store = store
        self._sink = sink
        self._config = config

    async def derive_full_disclosure(
        self,
        auditor_id: str,
        prescription_credential_id: str,
        reason: str,
        authorization_token: str,
    ) -> tuple[PartialDisclosure, AuditLogEntry]:
        """Derive the audit frame and append the access entry.

        The entry is written only after the disclosure succeeds.

        Raises:
            InvalidClaims: If auditor, reason or token is empty
            NotFound: If the prescription credential does not exist
        """
        missing = [
            name
            for name, value in (
                ("auditorId", auditor_id),
                ("auditReason", reason),
                ("authorizationToken", authorization_token),
            )
            if not value or not str(value).strip()
        ]
        if missing:
            raise InvalidClaims(missing)

        record = await call_collaborator(
            "credential_store",
            prescription_credential_id,
            self._store.get(prescription_credential_id),
            self._config.collaborator_timeout_seconds,
        )
        if record is None or record.kind != CredentialKind.PRESCRIPTION:
            raise NotFound("prescription credential", prescription_credential_id)

        disclosure = await self._engine.derive(record.credential, DisclosureFrameName.AUDIT)

        entry = AuditLogEntry(
            entry_id=str(uuid.uuid4()),
            auditor_id=auditor_id,
            prescription_id=record.prescription_id,
            prescription_credential_id=prescription_credential_id,
            reason=reason,
            accessed_at=utc_now().isoformat(),
            token_fingerprint=token_fingerprint(authorization_token),
        )
        sealed: Optional[AuditLogEntry] = await call_collaborator(
            "audit_log",
            prescription_credential_id,
            self._sink.append(entry),
            self._config.collaborator_timeout_seconds,
        )
        log.info(f"Full disclosure of {prescription_credential_id} to auditor {auditor_id}")
        return disclosure, sealed or entry
