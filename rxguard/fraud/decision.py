"""Claim verification and approval.

:class:`ClaimVerifier` gathers evidence and produces a
:class:`VerificationProof`. :class:`ApprovalPolicy` turns a proof into a
decision. The two are separate so the approval rule can change without
touching evidence gathering.

A denied claim is a successful result. Missing credentials raise
``NotFound`` instead of producing a score.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from rxguard.collaborators import ActorRegistry, CredentialStore, call_collaborator
from rxguard.core.config import EngineConfig
from rxguard.core.exceptions import NotFound
from rxguard.credentials.issuer import credential_hash, sha256_hex
from rxguard.credentials.models import CredentialKind, CredentialRecord, utc_now
from rxguard.fraud import scoring
from rxguard.fraud.scoring import FraudEvidence, RiskLevel

log = logging.getLogger(__name__)

DOCTOR_ROLE = "doctor"
PHARMACY_ROLE = "pharmacy"


@dataclass(frozen=True)
class VerificationProof:
    """Evidence-backed result of verifying one insurance claim."""

    insurer_id: str
    prescription_credential_id: str
    dispensing_credential_id: str
    prescription_exists: bool
    medication_dispensed: bool
    doctor_authorized: bool
    pharmacy_authorized: bool
    patient_confirmed: bool
    fraud_score: int
    risk_level: RiskLevel
    failed_checks: tuple[str, ...]
    verification_timestamp: str
    proof_hash: str
    claim_amount: Optional[float] = None
    prescription_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "insurerId": self.insurer_id,
            "prescriptionCredentialId": self.prescription_credential_id,
            "dispensingCredentialId": self.dispensing_credential_id,
            "prescriptionId": self.prescription_id,
            "prescriptionExists": self.prescription_exists,
            "medicationDispensed": self.medication_dispensed,
            "doctorAuthorized": self.doctor_authorized,
            "pharmacyAuthorized": self.pharmacy_authorized,
            "patientConfirmed": self.patient_confirmed,
            "fraudScore": self.fraud_score,
            "riskLevel": self.risk_level.value,
            "failedChecks": list(self.failed_checks),
            "claimAmount": self.claim_amount,
            "verificationTimestamp": self.verification_timestamp,
            "proofHash": self.proof_hash,
        }


@dataclass(frozen=True)
class ClaimDecision:
    approved: bool
    reasons: tuple[str, ...] = ()
    max_score: int = 50


@dataclass(frozen=True)
class VerificationRecord:
    """Stored proof and decision, used for statistics."""

    proof: VerificationProof
    decision: ClaimDecision
    recorded_at: str = field(default_factory=lambda: utc_now().isoformat())


class ApprovalPolicy:
    """Approve iff score < max_score and the prescription exists, was dispensed and confirmed.

    Doctor and pharmacy authorization are reported on the proof but do not gate.
    """

    def __init__(self, max_score: int = 50):
        self.max_score = max_score

    def decide(self, proof: VerificationProof) -> ClaimDecision:
        reasons = []
        if proof.fraud_score >= self.max_score:
            reasons.append(f"fraud_score {proof.fraud_score} >= {self.max_score}")
        if not proof.prescription_exists:
            reasons.append("prescription does not exist or is revoked")
        if not proof.medication_dispensed:
            reasons.append("medication not dispensed against this prescription")
        if not proof.patient_confirmed:
            reasons.append("patient has not confirmed receipt")
        return ClaimDecision(
            approved=not reasons,
            reasons=tuple(reasons),
            max_score=self.max_score,
        )


class ClaimVerifier:
    def __init__(self, store: CredentialStore, registry: ActorRegistry, config: EngineConfig):
        self._store = store
        self._registry = registry
        self._config = config

    async def _load(self, credential_id: str, kind: CredentialKind) -> CredentialRecord:
        record = await call_collaborator(
            "credential_store",
            credential_id,
            self._store.get(credential_id),
            self._config.collaborator_timeout_seconds,
        )
        if record is None or record.kind != kind:
            raise NotFound(f"{kind.value} credential", credential_id)
        return record

    async def _authorized(self, identity: str, role: str) -> bool:
        if not identity:
            return False
        return bool(await call_collaborator(
            "actor_registry",
            identity,
            self._registry.is_authorized(identity, role),
            self._config.collaborator_timeout_seconds,
        ))

    async def verify_claim(
        self,
        insurer_id: str,
        prescription_credential_id: str,
        dispensing_credential_id: str,
        claim_amount: Optional[float] = None,
        reference_time: Optional[datetime] = None,
    ) -> VerificationProof:
        """Verify one claim and return the evidence-backed proof.

        Raises:
            NotFound: If either credential, or the prescription the dispensing
                credential references, does not exist
            ServiceUnavailable: If the store or registry fails
        """
        prescription = await self._load(prescription_credential_id, CredentialKind.PRESCRIPTION)
        dispensing = await self._load(dispensing_credential_id, CredentialKind.DISPENSING)

        # The dispensing credential must point at a prescription that exists.
        referenced_id = dispensing.prescription_credential_id
        if referenced_id != prescription_credential_id:
            await self._load(referenced_id or "", CredentialKind.PRESCRIPTION)
        medication_dispensed = referenced_id == prescription_credential_id

        confirmation = await call_collaborator(
            "credential_store",
            dispensing_credential_id,
            self._store.find_confirmation(dispensing_credential_id),
            self._config.collaborator_timeout_seconds,
        )

        doctor_ok = await self._authorized(prescription.credential.issuer, DOCTOR_ROLE)
        pharmacy_ok = await self._authorized(dispensing.credential.issuer, PHARMACY_ROLE)

        evidence: FraudEvidence = scoring.gather_evidence(
            prescription.credential.subject,
            dispensing.credential.subject,
            prescription_revoked=prescription.revoked,
            confirmation_present=confirmation is not None,
            doctor_authorized=doctor_ok,
            pharmacy_authorized=pharmacy_ok,
            reference_time=reference_time or utc_now(),
        )
        result = scoring.assess(
            evidence, self._config.fraud_weights, self._config.risk_thresholds
        )

        verification_timestamp = utc_now().isoformat()
        bundle = {
            "insurerId": insurer_id,
            "prescriptionHash": credential_hash(prescription.credential),
            "dispensingHash": credential_hash(dispensing.credential),
            "confirmationHash": credential_hash(confirmation.credential) if confirmation else None,
            "evidence": evidence.to_dict(),
            "medicationDispensed": medication_dispensed,
            "fraudScore": result.score,
            "claimAmount": claim_amount,
            "timestamp": verification_timestamp,
        }

        proof = VerificationProof(
            insurer_id=insurer_id,
            prescription_credential_id=prescription_credential_id,
            dispensing_credential_id=dispensing_credential_id,
            prescription_id=prescription.prescription_id,
            prescription_exists=evidence.prescription_exists and evidence.prescription_not_revoked,
            medication_dispensed=medication_dispensed,
            doctor_authorized=doctor_ok,
            pharmacy_authorized=pharmacy_ok,
            patient_confirmed=evidence.patient_confirmed,
            fraud_score=result.score,
            risk_level=result.risk_level,
            failed_checks=result.failed_checks,
            verification_timestamp=verification_timestamp,
            proof_hash=sha256_hex(bundle),
            claim_amount=claim_amount,
        )
        log.info(
            f"Verified claim prescription={prescription_credential_id} "
            f"dispensing={dispensing_credential_id} score={result.score} "
            f"risk={result.risk_level.value}"
        )
        return proof
