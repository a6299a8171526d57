"""Credential data model.

Signed credentials are immutable once returned by the signer. Lifecycle
state lives beside the credential in a :class:`CredentialRecord`, never in
the signed payload.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from rxguard.core.exceptions import InvalidCredentialState


W3C_CREDENTIALS_CONTEXT = "https://www.w3.org/2018/credentials/v1"
BBS_CONTEXT = "https://w3id.org/security/bbs/v1"
MEDICAL_VOCAB = "https://quarkid.org/medical#"


class CredentialKind(str, Enum):
    """Credential types issued by the workflow."""

    PRESCRIPTION = "prescription"
    DISPENSING = "dispensing"
    CONFIRMATION = "confirmation"

    @property
    def type_name(self) -> str:
        return CREDENTIAL_TYPE_NAMES[self]


CREDENTIAL_TYPE_NAMES: dict[CredentialKind, str] = {
    CredentialKind.PRESCRIPTION: "PrescriptionCredential",
    CredentialKind.DISPENSING: "DispensingCredential",
    CredentialKind.CONFIRMATION: "ConfirmationCredential",
}


class PrescriptionState(str, Enum):
    """Externally tracked prescription lifecycle."""

    CREATED = "created"
    VERIFIED = "verified"
    DISPENSED = "dispensed"
    CONFIRMED = "confirmed"
    REVOKED = "revoked"


ALLOWED_TRANSITIONS: dict[PrescriptionState, frozenset[PrescriptionState]] = {
    PrescriptionState.CREATED: frozenset({
        PrescriptionState.VERIFIED,
        PrescriptionState.DISPENSED,
        PrescriptionState.REVOKED,
    }),
    PrescriptionState.VERIFIED: frozenset({
        PrescriptionState.VERIFIED,
        PrescriptionState.DISPENSED,
        PrescriptionState.REVOKED,
    }),
    PrescriptionState.DISPENSED: frozenset({
        PrescriptionState.CONFIRMED,
        PrescriptionState.REVOKED,
    }),
    PrescriptionState.CONFIRMED: frozenset({PrescriptionState.REVOKED}),
    PrescriptionState.REVOKED: frozenset(),
}


def check_transition(
    credential_id: str,
    current: PrescriptionState,
    requested: PrescriptionState,
) -> None:
    """Raise InvalidCredentialState unless current -> requested is allowed."""
    if requested not in ALLOWED_TRANSITIONS[current]:
        raise InvalidCredentialState(credential_id, current.value, requested.value)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 date or datetime. Naive values are taken as UTC.

    Raises:
        ValueError: If the value is not an ISO-8601 string
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    else:
        raise ValueError(f"Not a timestamp: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def get_path(data: Any, path: str) -> Any:
    """Look up a dotted path in nested dicts. Returns None when absent."""
    current = data
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


# =============================================================================
# Identity documents and keys
# =============================================================================


@dataclass(frozen=True)
class VerificationMethod:
    """One verification method from an identity document."""

    id: str
    type: str
    controller: Optional[str] = None
    public_key_jwk: Optional[dict] = None


@dataclass(frozen=True)
class IdentityDocument:
    """Resolved identity document (only the parts the resolver needs)."""

    id: str
    verification_methods: tuple[VerificationMethod, ...] = ()

    @property
    def method_types(self) -> list[str]:
        return [vm.type for vm in self.verification_methods]

    @classmethod
    def from_dict(cls, doc: dict) -> "IdentityDocument":
        """Build from a DID-document style dict.

        Raises:
            ValueError: If the document has no id
        """
        if not isinstance(doc, dict) or not doc.get("id"):
            raise ValueError("Identity document must be an object with an id")
        methods = []
        for vm in doc.get("verificationMethod") or []:
            if not isinstance(vm, dict) or "id" not in vm or "type" not in vm:
                continue
            methods.append(
                VerificationMethod(
                    id=vm["id"],
                    type=vm["type"],
                    controller=vm.get("controller"),
                    public_key_jwk=vm.get("publicKeyJwk"),
                )
            )
        return cls(id=doc["id"], verification_methods=tuple(methods))


@dataclass(frozen=True)
class SigningKey:
    """A key the caller's signer can use."""

    key_id: str
    suite: str
    public_key_jwk: dict = field(default_factory=dict)


# =============================================================================
# Signed credentials
# =============================================================================


@dataclass(frozen=True)
class SignedCredential:
    """A signed W3C-style credential.

    Accessors return copies so the signed payload cannot be mutated.
    """

    raw: dict

    @classmethod
    def from_dict(cls, data: dict) -> "SignedCredential":
        if not isinstance(data, dict):
            raise ValueError("Credential must be an object")
        for key in ("id", "credentialSubject", "proof"):
            if key not in data:
                raise ValueError(f"Credential missing '{key}'")
        return cls(raw=copy.deepcopy(data))

    @property
    def id(self) -> str:
        return self.raw["id"]

    @property
    def type(self) -> list[str]:
        value = self.raw.get("type", [])
        return [value] if isinstance(value, str) else list(value)

    @property
    def issuer(self) -> str:
        issuer = self.raw.get("issuer")
        if isinstance(issuer, dict):
            return issuer.get("id", "")
        return issuer or ""

    @property
    def issuance_date(self) -> Optional[str]:
        return self.raw.get("issuanceDate")

    @property
    def expiration_date(self) -> Optional[str]:
        return self.raw.get("expirationDate")

    @property
    def subject(self) -> dict:
        return copy.deepcopy(self.raw["credentialSubject"])

    @property
    def proof(self) -> dict:
        return copy.deepcopy(self.raw["proof"])

    @property
    def proof_type(self) -> Optional[str]:
        proof = self.raw.get("proof")
        if isinstance(proof, dict):
            return proof.get("type")
        return None

    def to_dict(self) -> dict:
        return copy.deepcopy(self.raw)


@dataclass
class CredentialRecord:
    """Stored credential plus its externally tracked state.

    ``state`` is only meaningful for prescription records.
    """

    credential: SignedCredential
    kind: CredentialKind
    prescription_id: str
    state: Optional[PrescriptionState] = None
    anchor_hash: Optional[str] = None
    prescription_credential_id: Optional[str] = None
    dispensing_credential_id: Optional[str] = None
    fraud_score: Optional[int] = None
    created_at: str = field(default_factory=lambda: utc_now().isoformat())
    updated_at: Optional[str] = None

    @property
    def credential_id(self) -> str:
        return self.credential.id

    @property
    def revoked(self) -> bool:
        return self.state == PrescriptionState.REVOKED
