"""Credential issuance.

Builds the unsigned credential from validated claims and makes exactly one
signer call. Claim validation always runs first, so malformed input never
reaches the signer.
"""

import hashlib
import json
import logging
import secrets
import uuid
from datetime import datetime
from typing import Any, Optional, Union

from rxguard.collaborators import Signer, call_collaborator
from rxguard.core.config import EngineConfig
from rxguard.core.exceptions import InvalidClaims, ServiceUnavailable
from rxguard.credentials.models import (
    BBS_CONTEXT,
    MEDICAL_VOCAB,
    W3C_CREDENTIALS_CONTEXT,
    CredentialKind,
    SignedCredential,
    get_path,
    parse_timestamp,
    utc_now,
)
from rxguard.credentials.suites import ResolvedKey, Suite

log = logging.getLogger(__name__)


REQUIRED_FIELDS: dict[CredentialKind, tuple[str, ...]] = {
    CredentialKind.PRESCRIPTION: (
        "prescription.medicationName",
        "prescription.dosage",
        "prescription.frequency",
        "prescription.duration",
        "prescription.quantity",
        "prescription.refills",
        "prescription.validUntil",
        "patientInfo.name",
        "doctor.name",
        "doctor.licenseNumber",
    ),
    CredentialKind.DISPENSING: (
        "dispensingEvent.prescriptionId",
        "dispensingEvent.pharmacyName",
        "dispensingEvent.pharmacistLicense",
        "dispensingEvent.medicationDispensed.batchNumber",
        "dispensingEvent.medicationDispensed.expirationDate",
        "dispensingEvent.medicationDispensed.quantityDispensed",
    ),
    CredentialKind.CONFIRMATION: (
        "confirmation.dispensingCredentialId",
        "confirmation.confirmedAt",
    ),
}

POSITIVE_INT_FIELDS = ("prescription.quantity", "dispensingEvent.medicationDispensed.quantityDispensed")
NON_NEGATIVE_INT_FIELDS = ("prescription.refills",)
TIMESTAMP_FIELDS = (
    "prescription.validUntil",
    "dispensingEvent.medicationDispensed.expirationDate",
    "dispensingEvent.dispensedDate",
    "confirmation.confirmedAt",
)


def _is_missing(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def validate_claims(kind: CredentialKind, claims: dict) -> None:
    """Check required and well-formed claim fields for a credential kind.

    Raises:
        InvalidClaims: Listing every missing or malformed field
    """
    bad: list[str] = []
    for path in REQUIRED_FIELDS[kind]:
        if _is_missing(get_path(claims, path)):
            bad.append(path)

    for path in POSITIVE_INT_FIELDS:
        value = get_path(claims, path)
        if path not in bad and value is not None and not (_is_int(value) and value > 0):
            bad.append(path)

    for path in NON_NEGATIVE_INT_FIELDS:
        value = get_path(claims, path)
        if path not in bad and value is not None and not (_is_int(value) and value >= 0):
            bad.append(path)

    for path in TIMESTAMP_FIELDS:
        value = get_path(claims, path)
        if path in bad or _is_missing(value):
            continue
        try:
            parse_timestamp(value)
        except (TypeError, ValueError):
            bad.append(path)

    if bad:
        raise InvalidClaims(bad)


# =============================================================================
# Hashing
# =============================================================================


def canonical_json(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def sha256_hex(obj: Any) -> str:
    return hashlib.sha256(canonical_json(obj).encode("utf-8")).hexdigest()


def credential_hash(credential: Union[SignedCredential, dict]) -> str:
    """Content hash of a signed credential."""
    raw = credential.raw if isinstance(credential, SignedCredential) else credential
    return sha256_hex(raw)


def anchor_hash(credential: SignedCredential) -> str:
    """Hash binding a prescription to its doctor, patient and issuance time.

    Suitable for publishing as a ledger anchor; publishing itself happens elsewhere.
    """
    subject = credential.raw["credentialSubject"]
    return sha256_hex({
        "credentialId": credential.id,
        "prescriptionId": get_path(subject, "prescription.id"),
        "doctorDid": credential.issuer,
        "patientDid": subject.get("id"),
        "timestamp": get_path(subject, "issuanceProof.timestamp"),
    })


# =============================================================================
# Claim builders
# =============================================================================


def build_prescription_claims(
    patient: dict,
    prescription: dict,
    doctor: dict,
    now: Optional[datetime] = None,
) -> dict:
    """Assemble prescription claims. Adds the prescription id, status and issuance proof."""
    now = now or utc_now()
    return {
        "patientInfo": {k: v for k, v in patient.items() if v is not None},
        "prescription": {
            **{k: v for k, v in prescription.items() if v is not None},
            "id": f"rx-{uuid.uuid4()}",
            "prescribedDate": now.isoformat(),
            "status": "active",
        },
        "doctor": {k: v for k, v in doctor.items() if v is not None},
        "issuanceProof": {
            "nonce": secrets.token_hex(32),
            "timestamp": now.isoformat(),
        },
    }


def build_dispensing_claims(
    prescription: SignedCredential,
    pharmacy_did: str,
    pharmacy_name: Optional[str],
    pharmacist_license: Optional[str],
    medication: dict,
    patient_confirmation: bool = False,
    now: Optional[datetime] = None,
) -> dict:
    """Assemble dispensing claims referencing the prescription by id and content hash."""
    now = now or utc_now()
    subject = prescription.raw["credentialSubject"]
    dispensed = {k: v for k, v in medication.items() if v is not None}
    dispensed.setdefault("name", get_path(subject, "prescription.medicationName"))
    return {
        "dispensingEvent": {
            "prescriptionId": get_path(subject, "prescription.id"),
            "prescriptionCredentialId": prescription.id,
            "pharmacyDid": pharmacy_did,
            "pharmacyName": pharmacy_name,
            "pharmacistLicense": pharmacist_license,
            "medicationDispensed": dispensed,
            "dispensedDate": now.isoformat(),
            "patientConfirmation": bool(patient_confirmation),
        },
        "originalPrescriptionHash": credential_hash(prescription),
    }


def build_confirmation_claims(
    dispensing: SignedCredential,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> dict:
    now = now or utc_now()
    event = dispensing.raw["credentialSubject"].get("dispensingEvent", {})
    confirmation = {
        "dispensingCredentialId": dispensing.id,
        "prescriptionId": event.get("prescriptionId"),
        "confirmedAt": now.isoformat(),
    }
    if notes:
        confirmation["notes"] = notes
    return {"confirmation": confirmation}


# =============================================================================
# Issuer
# =============================================================================


class CredentialIssuer:
    """Issues credentials through the external signer."""

    def __init__(self, signer: Signer, config: EngineConfig):
        self._signer = signer
        self._config = config

    async def issue(
        self,
        credential_type: CredentialKind,
        issuer_id: str,
        subject_id: str,
        claims: dict,
        resolved_key: ResolvedKey,
        expiration_date: Optional[str] = None,
    ) -> SignedCredential:
        """Validate claims, build the credential and sign it once.

        Raises:
            InvalidClaims: Before any signer call, if claims are incomplete
            ServiceUnavailable: If the signer fails or returns no proof
        """
        validate_claims(credential_type, claims)

        credential_id = f"urn:uuid:{uuid.uuid4()}"
        context: list = [W3C_CREDENTIALS_CONTEXT]
        if resolved_key.suite == Suite.BBS:
            context.append(BBS_CONTEXT)
        context.append({"@vocab": MEDICAL_VOCAB})

        unsigned = {
            "@context": context,
            "id": credential_id,
            "type": ["VerifiableCredential", credential_type.type_name],
            "issuer": issuer_id,
            "issuanceDate": utc_now().isoformat(),
            "credentialSubject": {"id": subject_id, **claims},
        }
        if expiration_date:
            unsigned["expirationDate"] = expiration_date

        signed = await call_collaborator(
            "signer",
            credential_id,
            self._signer.sign(unsigned, resolved_key.verification_method_id, resolved_key.suite.value),
            self._config.collaborator_timeout_seconds,
        )
        try:
            credential = SignedCredential.from_dict(signed)
        except ValueError as e:
            raise ServiceUnavailable("signer", credential_id, f"Signer returned malformed credential: {e}")

        log.info(
            f"Issued {credential_type.value} credential {credential.id} "
            f"issuer={issuer_id[:24]}... suite={resolved_key.suite.value}"
        )
        return credential
