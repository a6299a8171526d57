"""Shared fixtures: an in-memory signer/KMS double, identity documents and a wired service."""
import copy
import secrets
from datetime import datetime, timedelta, timezone

import bcrypt
import pytest

from rxguard.audit.logger import AuditLogger, reset_audit_logger
from rxguard.collaborators import IdentityResolver, Signer
from rxguard.core.config import EngineConfig
from rxguard.core.exceptions import DisclosureUnsupported, NotFound
from rxguard.credentials.models import IdentityDocument, SigningKey
from rxguard.credentials.suites import (
    BBS_DERIVED_PROOF_TYPE,
    BBS_KEY_TYPE,
    BBS_SIGNATURE_TYPE,
    ES256K_KEY_TYPE,
    SUITE_PROOF_TYPES,
    Suite,
)
from rxguard.service import FraudPreventionService, reset_fraud_prevention_service
from rxguard.store.memory import InMemoryActorRegistry, InMemoryCredentialStore


# =============================================================================
# Identities
# =============================================================================

DOCTOR = "did:example:doctor-1"
LEGACY_DOCTOR = "did:example:doctor-legacy"
PHARMACY = "did:example:pharmacy-1"
PATIENT = "did:example:patient-1"
INSURER = "did:example:insurer-1"
AUDITOR = "did:example:auditor-1"
AUDIT_TOKEN = "audit-secret-token"
# Low work factor keeps checkpw fast in tests
AUDIT_TOKEN_HASH = bcrypt.hashpw(AUDIT_TOKEN.encode(), bcrypt.gensalt(rounds=4)).decode()

BBS_JWK = {"kty": "EC", "crv": "BLS12381_G2", "x": "bbs-x-coordinate", "y": "bbs-y-coordinate"}
ES256K_JWK = {"kty": "EC", "crv": "secp256k1", "x": "k1-x", "y": "k1-y"}


def make_document(did: str, bbs: bool = True, es256k: bool = True, bbs_jwk: dict | None = None) -> dict:
    """DID-document style dict with the requested verification methods."""
    methods = []
    if bbs:
        methods.append({
            "id": f"{did}#bbs-1",
            "type": BBS_KEY_TYPE,
            "controller": did,
            "publicKeyJwk": bbs_jwk or BBS_JWK,
        })
    if es256k:
        methods.append({
            "id": f"{did}#k1-1",
            "type": ES256K_KEY_TYPE,
            "controller": did,
            "publicKeyJwk": ES256K_JWK,
        })
    return {"id": did, "verificationMethod": methods}


def make_keys() -> list[SigningKey]:
    return [
        SigningKey("kms-bbs-1", Suite.BBS.value, dict(BBS_JWK)),
        SigningKey("kms-k1-1", Suite.ES256K.value, dict(ES256K_JWK)),
    ]


# =============================================================================
# Collaborator doubles
# =============================================================================


def _frame_subject(subject: dict, frame: dict) -> dict:
    if not frame.get("@explicit"):
        return copy.deepcopy(subject)
    out = {}
    for key, sub_frame in frame.items():
        if key.startswith("@") or key not in subject:
            continue
        value = subject[key]
        if isinstance(value, dict) and isinstance(sub_frame, dict) and sub_frame:
            out[key] = _frame_subject(value, sub_frame)
        else:
            out[key] = copy.deepcopy(value)
    return out


class FakeSigner(Signer):
    """Records sign/derive calls. Derived proofs carry fresh random bytes."""

    def __init__(self, keys: list[SigningKey] | None = None):
        self.keys = make_keys() if keys is None else keys
        self.sign_calls: list[tuple[dict, str, str]] = []
        self.derive_calls: list[tuple[dict, dict]] = []

    async def list_keys(self) -> list[SigningKey]:
        return list(self.keys)

    async def sign(self, credential: dict, verification_method_id: str, suite: str) -> dict:
        self.sign_calls.append((copy.deepcopy(credential), verification_method_id, suite))
        signed = copy.deepcopy(credential)
        signed["proof"] = {
            "type": SUITE_PROOF_TYPES[Suite(suite)],
            "created": datetime.now(timezone.utc).isoformat(),
            "verificationMethod": verification_method_id,
            "proofPurpose": "assertionMethod",
            "proofValue": secrets.token_hex(32),
        }
        return signed

    async def derive(self, credential: dict, frame: dict) -> dict:
        self.derive_calls.append((copy.deepcopy(credential), copy.deepcopy(frame)))
        if credential["proof"]["type"] != BBS_SIGNATURE_TYPE:
            raise DisclosureUnsupported()
        derived = {k: copy.deepcopy(v) for k, v in credential.items() if k != "proof"}
        derived["credentialSubject"] = _frame_subject(
            credential["credentialSubject"], frame["credentialSubject"]
        )
        derived["proof"] = {
            "type": BBS_DERIVED_PROOF_TYPE,
            "verificationMethod": credential["proof"]["verificationMethod"],
            "nonce": secrets.token_hex(16),
            "proofValue": secrets.token_hex(48),
        }
        return derived


class FakeResolver(IdentityResolver):
    def __init__(self, documents: dict[str, dict]):
        self.documents = documents

    async def resolve(self, identity: str) -> IdentityDocument:
        if identity not in self.documents:
            raise NotFound("identity", identity)
        return IdentityDocument.from_dict(self.documents[identity])


# =============================================================================
# Input helpers
# =============================================================================


def iso_in(days: int) -> str:
    return (datetime.now(timezone.utc) + timedelta(days=days)).isoformat()


def make_prescription_input(**overrides) -> dict:
    prescription = {
        "medicationName": "Amoxicillin 500mg",
        "dosage": "500mg",
        "frequency": "every 8 hours",
        "duration": "7 days",
        "quantity": 21,
        "refills": 0,
        "validUntil": iso_in(30),
    }
    prescription.update(overrides)
    return prescription


PATIENT_INFO = {
    "name": "Jordan Rivera",
    "birthDate": "1985-04-12",
    "insuranceProvider": "Acme Health",
    "insuranceNumber": "AH-445566",
}
DOCTOR_INFO = {"name": "Dr. Sam Lee", "licenseNumber": "MD-12345", "specialization": "General Practice"}


def make_medication(**overrides) -> dict:
    medication = {
        "batchNumber": "BATCH-2026-001",
        "expirationDate": iso_in(365),
        "quantityDispensed": 21,
    }
    medication.update(overrides)
    return medication


async def issue_sample(service: FraudPreventionService, doctor: str = DOCTOR, **overrides):
    return await service.issue_prescription(
        doctor_id=doctor,
        patient_id=PATIENT,
        patient=dict(PATIENT_INFO),
        prescription=make_prescription_input(**overrides),
        doctor=dict(DOCTOR_INFO),
    )


async def dispense_sample(service: FraudPreventionService, prescription_credential_id: str, **overrides):
    return await service.create_dispensing_proof(
        prescription_credential_id=prescription_credential_id,
        pharmacy_id=PHARMACY,
        pharmacy_name="Main Street Pharmacy",
        pharmacist_license="PH-7788",
        medication=make_medication(**overrides),
    )


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def reset_singletons():
    reset_audit_logger()
    reset_fraud_prevention_service()
    yield
    reset_audit_logger()
    reset_fraud_prevention_service()


@pytest.fixture
def documents():
    return {
        DOCTOR: make_document(DOCTOR),
        LEGACY_DOCTOR: make_document(LEGACY_DOCTOR, bbs=False),
        PHARMACY: make_document(PHARMACY),
        PATIENT: make_document(PATIENT),
    }


@pytest.fixture
def signer():
    return FakeSigner()


@pytest.fixture
def resolver(documents):
    return FakeResolver(documents)


@pytest.fixture
def store():
    return InMemoryCredentialStore()


@pytest.fixture
def registry():
    registry = InMemoryActorRegistry()
    registry.register(DOCTOR, ["doctor"])
    registry.register(LEGACY_DOCTOR, ["doctor"])
    registry.register(PHARMACY, ["pharmacy"])
    registry.register(INSURER, ["insurance"])
    registry.register_auditor(AUDITOR, token_hash=AUDIT_TOKEN_HASH)
    return registry


@pytest.fixture
def audit_log():
    return AuditLogger()


@pytest.fixture
def config():
    return EngineConfig(collaborator_timeout_seconds=5.0)


@pytest.fixture
def service(signer, resolver, store, registry, audit_log, config):
    return FraudPreventionService(
        signer=signer,
        resolver=resolver,
        store=store,
        registry=registry,
        audit_log=audit_log,
        config=config,
    )
