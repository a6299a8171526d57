"""In-memory credential store and actor registry.

Reference implementations of the collaborator interfaces, used by the
default application wiring and the tests. State is lost on restart.
"""

import asyncio
import json
import logging
from dataclasses import replace
from pathlib import Path
from typing import Iterable, Optional

import bcrypt as bcrypt_lib

from rxguard.collaborators import ActorRegistry, CredentialStore
from rxguard.core.exceptions import DuplicateDispensing, NotFound
from rxguard.credentials.models import (
    CredentialKind,
    CredentialRecord,
    PrescriptionState,
    check_transition,
    utc_now,
)
from rxguard.fraud.decision import VerificationRecord

log = logging.getLogger(__name__)


class InMemoryCredentialStore(CredentialStore):
    """Credential records keyed by credential id.

    Dispensing uniqueness is checked and written under one lock, so two
    concurrent dispensings of the same prescription cannot both succeed.
    """

    def __init__(self):
        self._records: dict[str, CredentialRecord] = {}
        self._dispensing_by_prescription: dict[str, str] = {}
        self._confirmation_by_dispensing: dict[str, str] = {}
        self._verifications: list[VerificationRecord] = []
        self._lock = asyncio.Lock()

    def _check_unique(self, record: CredentialRecord) -> None:
        if record.kind != CredentialKind.DISPENSING:
            return
        key = record.prescription_credential_id or record.prescription_id
        existing = self._dispensing_by_prescription.get(key)
        if existing and existing != record.credential_id:
            raise DuplicateDispensing(key, existing)

    def _write(self, record: CredentialRecord) -> None:
        if record.kind == CredentialKind.DISPENSING:
            key = record.prescription_credential_id or record.prescription_id
            self._dispensing_by_prescription[key] = record.credential_id
        elif record.kind == CredentialKind.CONFIRMATION and record.dispensing_credential_id:
            self._confirmation_by_dispensing[record.dispensing_credential_id] = record.credential_id
        self._records[record.credential_id] = replace(record)

    def _prescription(self, credential_id: str) -> CredentialRecord:
        record = self._records.get(credential_id)
        if record is None or record.kind != CredentialKind.PRESCRIPTION:
            raise NotFound("prescription credential", credential_id)
        return record

    async def get(self, credential_id: str) -> Optional[CredentialRecord]:
        async with self._lock:
            record = self._records.get(credential_id)
            return replace(record) if record else None

    async def put(self, record: CredentialRecord) -> None:
        async with self._lock:
            self._check_unique(record)
            self._write(record)

    async def update_state(self, credential_id: str, state: PrescriptionState) -> CredentialRecord:
        async with self._lock:
            record = self._prescription(credential_id)
            check_transition(credential_id, record.state, state)
            record.state = state
            record.updated_at = utc_now().isoformat()
            return replace(record)

    async def put_with_transition(
        self,
        record: CredentialRecord,
        prescription_credential_id: str,
        state: PrescriptionState,
    ) -> CredentialRecord:
        """Store ``record`` and move its prescription to ``state`` in one step.

        All checks run before anything is written, so a rejected call leaves
        the store unchanged.
        """
        async with self._lock:
            prescription = self._prescription(prescription_credential_id)
            check_transition(prescription_credential_id, prescription.state, state)
            self._check_unique(record)

            self._write(record)
            prescription.state = state
            prescription.updated_at = utc_now().isoformat()
            return replace(prescription)

    async def find_dispensing(self, prescription_credential_id: str) -> Optional[CredentialRecord]:
        async with self._lock:
            dispensing_id = self._dispensing_by_prescription.get(prescription_credential_id)
            record = self._records.get(dispensing_id) if dispensing_id else None
            return replace(record) if record else None

    async def find_confirmation(self, dispensing_credential_id: str) -> Optional[CredentialRecord]:
        async with self._lock:
            confirmation_id = self._confirmation_by_dispensing.get(dispensing_credential_id)
            record = self._records.get(confirmation_id) if confirmation_id else None
            return replace(record) if record else None

    async def add_verification(self, record: VerificationRecord) -> None:
        async with self._lock:
            self._verifications.append(record)

    async def list_verifications(self) -> list[VerificationRecord]:
        async with self._lock:
            return list(self._verifications)

    async def count(self) -> int:
        async with self._lock:
            return len(self._records)


def hash_audit_token(token: str) -> str:
    """bcrypt hash of an audit token, in the form stored in seed files."""
    return bcrypt_lib.hashpw(token.encode(), bcrypt_lib.gensalt()).decode()


class InMemoryActorRegistry(ActorRegistry):
    """Identity -> roles, plus hashed audit tokens per auditor.

    Seed file format::

        {
          "actors": [{"did": "did:example:doc", "roles": ["doctor"]}],
          "auditors": [{"did": "did:example:aud", "tokenHash": "<bcrypt hash>"}]
        }
    """

    def __init__(self):
        self._roles: dict[str, set[str]] = {}
        self._audit_tokens: dict[str, str] = {}
        self._lock = asyncio.Lock()

    def register(self, identity: str, roles: Iterable[str]) -> None:
        self._roles.setdefault(identity, set()).update(roles)

    def register_auditor(self, identity: str, token: Optional[str] = None, token_hash: Optional[str] = None) -> None:
        """Register an auditor with a raw token or a precomputed bcrypt hash."""
        if token is None and token_hash is None:
            raise ValueError("token or token_hash required")
        self.register(identity, ["auditor"])
        self._audit_tokens[identity] = token_hash or hash_audit_token(token)

    @classmethod
    def from_file(cls, path: str | Path) -> "InMemoryActorRegistry":
        """Load a registry seed file.

        Raises:
            ValueError: If the file is not a valid seed document
        """
        registry = cls()
        try:
            data = json.loads(Path(path).read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise ValueError(f"Cannot load actor registry from {path}: {e}")

        for actor in data.get("actors", []):
            if not actor.get("did"):
                raise ValueError(f"Actor entry without did in {path}")
            registry.register(actor["did"], actor.get("roles", []))
        for auditor in data.get("auditors", []):
            if not auditor.get("did") or not auditor.get("tokenHash"):
                raise ValueError(f"Auditor entry needs did and tokenHash in {path}")
            registry.register_auditor(auditor["did"], token_hash=auditor["tokenHash"])

        log.info(f"Loaded actor registry from {path}: {len(registry._roles)} actors")
        return registry

    async def is_authorized(self, identity: str, role: str) -> bool:
        async with self._lock:
            return role in self._roles.get(identity, set())

    async def verify_audit_token(self, auditor_id: str, token: str) -> bool:
        async with self._lock:
            expected = self._audit_tokens.get(auditor_id)
        if not expected or not token:
            return False
        try:
            return bcrypt_lib.checkpw(token.encode(), expected.encode())
        except ValueError:
            log.warning(f"Malformed audit token hash for {auditor_id}")
            return False
