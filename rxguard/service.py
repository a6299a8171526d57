"""Prescription fraud-prevention service.

Orchestrates the engine components for each workflow step:

    doctor issues -> pharmacy verifies -> pharmacy dispenses ->
    patient confirms -> insurer verifies claim -> auditor inspects

Credentials are signed once and then only ever disclosed; lifecycle state
is tracked in the credential store.
"""

import logging
from collections import Counter
from dataclasses import dataclass
from typing import Optional, Union

from rxguard.audit.disclosure import AuditDisclosureService
from rxguard.audit.logger import AuditLogEntry, AuditLogger
from rxguard.collaborators import (
    ActorRegistry,
    CredentialStore,
    IdentityResolver,
    Signer,
    call_collaborator,
)
from rxguard.core.config import EngineConfig
from rxguard.core.exceptions import (
    DuplicateDispensing,
    Forbidden,
    InvalidClaims,
    InvalidCredentialState,
    NotFound,
)
from rxguard.credentials.issuer import (
    CredentialIssuer,
    anchor_hash,
    build_confirmation_claims,
    build_dispensing_claims,
    build_prescription_claims,
    validate_claims,
)
from rxguard.credentials.models import (
    CredentialKind,
    CredentialRecord,
    PrescriptionState,
    SignedCredential,
    check_transition,
)
from rxguard.credentials.suites import ResolvedKey, resolve_signing_key
from rxguard.disclosure.engine import DisclosureEngine, PartialDisclosure
from rxguard.disclosure.frames import DisclosureFrameName, parse_frame_name
from rxguard.fraud import scoring
from rxguard.fraud.decision import (
    DOCTOR_ROLE,
    PHARMACY_ROLE,
    ApprovalPolicy,
    ClaimDecision,
    ClaimVerifier,
    VerificationProof,
    VerificationRecord,
)
from rxguard.fraud.scoring import FraudScore, RiskLevel

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class IssuedPrescription:
    credential: SignedCredential
    record: CredentialRecord
    resolved_key: ResolvedKey


@dataclass(frozen=True)
class DispensingResult:
    credential: SignedCredential
    record: CredentialRecord
    fraud: FraudScore


@dataclass(frozen=True)
class ClaimVerification:
    proof: VerificationProof
    decision: ClaimDecision


class FraudPreventionService:
    def __init__(
        self,
        signer: Signer,
        resolver: IdentityResolver,
        store: CredentialStore,
        registry: ActorRegistry,
        audit_log: AuditLogger,
        config: Optional[EngineConfig] = None,
    ):
        self.config = config or EngineConfig()
        self.signer = signer
        self.resolver = resolver
        self.store = store
        self.registry = registry
        self.audit_log = audit_log

        self.issuer = CredentialIssuer(signer, self.config)
        self.disclosure = DisclosureEngine(signer, self.config)
        self.verifier = ClaimVerifier(store, registry, self.config)
        self.policy = ApprovalPolicy(self.config.approval_thresholds.max_score)
        self.audit_disclosure = AuditDisclosureService(
            self.disclosure, store, audit_log, self.config
        )

    # -------------------------------------------------------------------------
    # Collaborator helpers
    # -------------------------------------------------------------------------

    async def _call(self, collaborator: str, target: str, awaitable):
        return await call_collaborator(
            collaborator, target, awaitable, self.config.collaborator_timeout_seconds
        )

    async def _resolve_key(self, issuer_id: str) -> ResolvedKey:
        document = await self._call("identity_resolver", issuer_id, self.resolver.resolve(issuer_id))
        keys = await self._call("signer", issuer_id, self.signer.list_keys())
        return resolve_signing_key(document, keys)

    async def _load(self, credential_id: str, kind: Optional[CredentialKind] = None) -> CredentialRecord:
        record = await self._call("credential_store", credential_id, self.store.get(credential_id))
        if record is None or (kind is not None and record.kind != kind):
            label = f"{kind.value} credential" if kind else "credential"
            raise NotFound(label, credential_id)
        return record

    async def _authorized(self, identity: str, role: str) -> bool:
        return bool(await self._call("actor_registry", identity, self.registry.is_authorized(identity, role)))

    # -------------------------------------------------------------------------
    # Workflow
    # -------------------------------------------------------------------------

    async def issue_prescription(
        self,
        doctor_id: str,
        patient_id: str,
        patient: dict,
        prescription: dict,
        doctor: dict,
    ) -> IssuedPrescription:
        """Doctor issues a prescription credential to a patient.

        Raises:
            InvalidClaims: Before any collaborator call, if fields are missing
            NoCompatibleKey: If the doctor's document has no usable key
        """
        claims = build_prescription_claims(
            patient={**patient, "did": patient_id},
            prescription=prescription,
            doctor={**doctor, "did": doctor_id},
        )
        validate_claims(CredentialKind.PRESCRIPTION, claims)

        resolved = await self._resolve_key(doctor_id)
        credential = await self.issuer.issue(
            CredentialKind.PRESCRIPTION,
            doctor_id,
            patient_id,
            claims,
            resolved,
            expiration_date=claims["prescription"]["validUntil"],
        )
        record = CredentialRecord(
            credential=credential,
            kind=CredentialKind.PRESCRIPTION,
            prescription_id=claims["prescription"]["id"],
            state=PrescriptionState.CREATED,
            anchor_hash=anchor_hash(credential),
        )
        await self._call("credential_store", credential.id, self.store.put(record))

        if not resolved.disclosure_capable:
            log.warning(
                f"Prescription {credential.id} signed with {resolved.suite.value}; "
                f"selective disclosure will be unavailable"
            )
        self.audit_log.log(
            action="prescription.issue",
            principal=doctor_id,
            resource=credential.id,
            details={"prescription_id": record.prescription_id, "suite": resolved.suite.value},
        )
        return IssuedPrescription(credential=credential, record=record, resolved_key=resolved)

    async def verify_for_pharmacy(
        self,
        prescription_credential_id: str,
        pharmacy_id: str,
    ) -> PartialDisclosure:
        """Pharmacy receives the pharmacy disclosure; a fresh prescription moves to verified."""
        record = await self._load(prescription_credential_id, CredentialKind.PRESCRIPTION)
        if record.revoked:
            raise InvalidCredentialState(
                prescription_credential_id, record.state.value, PrescriptionState.VERIFIED.value
            )

        disclosure = await self.disclosure.derive(record.credential, DisclosureFrameName.PHARMACY)

        if record.state == PrescriptionState.CREATED:
            await self._call(
                "credential_store",
                prescription_credential_id,
                self.store.update_state(prescription_credential_id, PrescriptionState.VERIFIED),
            )
        self.audit_log.log(
            action="prescription.verify",
            principal=pharmacy_id,
            resource=prescription_credential_id,
        )
        return disclosure

    async def create_dispensing_proof(
        self,
        prescription_credential_id: str,
        pharmacy_id: str,
        pharmacy_name: Optional[str],
        pharmacist_license: Optional[str],
        medication: dict,
        patient_confirmation: bool = False,
    ) -> DispensingResult:
        """Pharmacy records dispensing against a prescription.

        Raises:
            NotFound: If the prescription does not exist
            InvalidCredentialState: If the prescription is revoked or already past dispensing
            DuplicateDispensing: If a dispensing credential already exists
            InvalidClaims: If dispensing fields are missing
        """
        prescription = await self._load(prescription_credential_id, CredentialKind.PRESCRIPTION)

        existing = await self._call(
            "credential_store",
            prescription_credential_id,
            self.store.find_dispensing(prescription_credential_id),
        )
        if existing is not None:
            raise DuplicateDispensing(prescription_credential_id, existing.credential_id)
        check_transition(prescription_credential_id, prescription.state, PrescriptionState.DISPENSED)

        claims = build_dispensing_claims(
            prescription.credential,
            pharmacy_did=pharmacy_id,
            pharmacy_name=pharmacy_name,
            pharmacist_license=pharmacist_license,
            medication=medication,
            patient_confirmation=patient_confirmation,
        )
        validate_claims(CredentialKind.DISPENSING, claims)

        resolved = await self._resolve_key(pharmacy_id)
        patient_id = prescription.credential.raw["credentialSubject"].get("id", "")
        credential = await self.issuer.issue(
            CredentialKind.DISPENSING, pharmacy_id, patient_id, claims, resolved
        )

        evidence = scoring.gather_evidence(
            prescription.credential.subject,
            credential.subject,
            prescription_revoked=prescription.revoked,
            doctor_authorized=await self._authorized(prescription.credential.issuer, DOCTOR_ROLE),
            pharmacy_authorized=await self._authorized(pharmacy_id, PHARMACY_ROLE),
        )
        fraud = scoring.assess(evidence, self.config.fraud_weights, self.config.risk_thresholds)

        record = CredentialRecord(
            credential=credential,
            kind=CredentialKind.DISPENSING,
            prescription_id=prescription.prescription_id,
            prescription_credential_id=prescription_credential_id,
            fraud_score=fraud.score,
        )
        await self._call(
            "credential_store",
            credential.id,
            self.store.put_with_transition(record, prescription_credential_id, PrescriptionState.DISPENSED),
        )

        if fraud.risk_level == RiskLevel.HIGH:
            log.warning(
                f"FRAUD ALERT: dispensing {credential.id} for {prescription.prescription_id} "
                f"scored {fraud.score} failed={list(fraud.failed_checks)}",
                extra={"prescription_id": prescription.prescription_id, "fraud_score": fraud.score},
            )
        self.audit_log.log(
            action="dispensing.create",
            principal=pharmacy_id,
            resource=credential.id,
            details={"prescription_id": prescription.prescription_id, "fraud_score": fraud.score},
        )
        return DispensingResult(credential=credential, record=record, fraud=fraud)

    async def confirm_dispensing(
        self,
        dispensing_credential_id: str,
        patient_id: str,
        notes: Optional[str] = None,
    ) -> SignedCredential:
        """Patient confirms receipt by issuing a confirmation credential."""
        dispensing = await self._load(dispensing_credential_id, CredentialKind.DISPENSING)
        if dispensing.credential.raw["credentialSubject"].get("id") != patient_id:
            raise Forbidden(f"{patient_id} is not the patient of {dispensing_credential_id}")

        existing = await self._call(
            "credential_store",
            dispensing_credential_id,
            self.store.find_confirmation(dispensing_credential_id),
        )
        if existing is not None:
            raise InvalidCredentialState(
                dispensing_credential_id,
                PrescriptionState.CONFIRMED.value,
                PrescriptionState.CONFIRMED.value,
            )

        prescription_credential_id = dispensing.prescription_credential_id or ""
        prescription = await self._load(prescription_credential_id, CredentialKind.PRESCRIPTION)
        check_transition(prescription_credential_id, prescription.state, PrescriptionState.CONFIRMED)

        claims = build_confirmation_claims(dispensing.credential, notes=notes)
        validate_claims(CredentialKind.CONFIRMATION, claims)

        resolved = await self._resolve_key(patient_id)
        credential = await self.issuer.issue(
            CredentialKind.CONFIRMATION, patient_id, patient_id, claims, resolved
        )
        record = CredentialRecord(
            credential=credential,
            kind=CredentialKind.CONFIRMATION,
            prescription_id=dispensing.prescription_id,
            prescription_credential_id=prescription_credential_id,
            dispensing_credential_id=dispensing_credential_id,
        )
        await self._call(
            "credential_store",
            credential.id,
            self.store.put_with_transition(record, prescription_credential_id, PrescriptionState.CONFIRMED),
        )
        self.audit_log.log(
            action="dispensing.confirm",
            principal=patient_id,
            resource=dispensing_credential_id,
        )
        return credential

    async def verify_insurance_claim(
        self,
        insurer_id: str,
        prescription_credential_id: str,
        dispensing_credential_id: str,
        claim_amount: Optional[float] = None,
    ) -> ClaimVerification:
        """Insurer verifies a claim. A denial is returned, not raised."""
        proof = await self.verifier.verify_claim(
            insurer_id,
            prescription_credential_id,
            dispensing_credential_id,
            claim_amount=claim_amount,
        )
        decision = self.policy.decide(proof)
        await self._call(
            "credential_store",
            dispensing_credential_id,
            self.store.add_verification(VerificationRecord(proof=proof, decision=decision)),
        )

        if proof.risk_level == RiskLevel.HIGH:
            log.warning(
                f"FRAUD ALERT: claim on {prescription_credential_id} scored {proof.fraud_score}",
                extra={"prescription_id": proof.prescription_id, "fraud_score": proof.fraud_score},
            )
        self.audit_log.log(
            action="claim.verify",
            principal=insurer_id,
            resource=dispensing_credential_id,
            status="success" if decision.approved else "denied",
            details={"fraud_score": proof.fraud_score, "proof_hash": proof.proof_hash},
        )
        return ClaimVerification(proof=proof, decision=decision)

    async def get_disclosure(
        self,
        credential_id: str,
        frame_name: Union[str, DisclosureFrameName],
    ) -> PartialDisclosure:
        """Derive a role frame over any stored credential.

        The audit frame is only available through :meth:`audit_full_disclosure`.
        """
        name = parse_frame_name(frame_name)
        if name == DisclosureFrameName.AUDIT:
            raise Forbidden("Audit disclosure requires an authorized audit request")
        record = await self._load(credential_id)
        return await self.disclosure.derive(record.credential, name)

    async def audit_full_disclosure(
        self,
        auditor_id: str,
        prescription_credential_id: str,
        reason: str,
        authorization_token: str,
    ) -> tuple[PartialDisclosure, AuditLogEntry]:
        """Authorized auditor receives the full credential; the access is logged."""
        if not authorization_token:
            raise InvalidClaims(["authorizationToken"])
        valid = await self._call(
            "actor_registry",
            auditor_id,
            self.registry.verify_audit_token(auditor_id, authorization_token),
        )
        if not valid:
            self.audit_log.log(
                action="disclosure.full",
                principal=auditor_id,
                resource=prescription_credential_id,
                status="denied",
            )
            raise Forbidden(f"Auditor {auditor_id} is not authorized")

        return await self.audit_disclosure.derive_full_disclosure(
            auditor_id, prescription_credential_id, reason, authorization_token
        )

    async def revoke_prescription(
        self,
        prescription_credential_id: str,
        doctor_id: str,
        reason: Optional[str] = None,
    ) -> CredentialRecord:
        """Prescribing doctor revokes a prescription."""
        record = await self._load(prescription_credential_id, CredentialKind.PRESCRIPTION)
        if record.credential.issuer != doctor_id:
            raise Forbidden(f"{doctor_id} did not issue {prescription_credential_id}")

        updated = await self._call(
            "credential_store",
            prescription_credential_id,
            self.store.update_state(prescription_credential_id, PrescriptionState.REVOKED),
        )
        self.audit_log.log(
            action="prescription.revoke",
            principal=doctor_id,
            resource=prescription_credential_id,
            status="revoked",
            details={"reason": reason} if reason else None,
        )
        return updated

    async def get_prescription(self, prescription_credential_id: str) -> CredentialRecord:
        return await self._load(prescription_credential_id, CredentialKind.PRESCRIPTION)

    async def get_statistics(self) -> dict:
        """Aggregate claim verification statistics."""
        records: list[VerificationRecord] = await self._call(
            "credential_store", "verifications", self.store.list_verifications()
        )
        total = len(records)
        scores = [r.proof.fraud_score for r in records]
        by_risk = Counter(r.proof.risk_level.value for r in records)
        by_day = Counter(r.proof.verification_timestamp[:10] for r in records)
        approved = sum(1 for r in records if r.decision.approved)

        return {
            "total_verifications": total,
            "fraud_attempts": sum(1 for s in scores if s >= self.config.risk_thresholds.high),
            "average_fraud_score": round(sum(scores) / total, 2) if total else 0.0,
            "approved": approved,
            "denied": total - approved,
            "by_risk": {level.value: by_risk.get(level.value, 0) for level in RiskLevel},
            "verifications_by_day": dict(sorted(by_day.items())),
        }


_service: FraudPreventionService | None = None


def get_fraud_prevention_service() -> FraudPreventionService:
    """Get the global service, building it from the environment on first use."""
    global _service
    if _service is None:
        _service = build_service_from_env()
    return _service


def set_fraud_prevention_service(service: FraudPreventionService | None) -> None:
    global _service
    _service = service


def reset_fraud_prevention_service() -> None:
    """Reset the global service (for testing)."""
    global _service
    _service = None


def build_service_from_env() -> FraudPreventionService:
    """Wire the remote KMS, resolver and in-memory store from configuration.

    Raises:
        RuntimeError: If the KMS or resolver URL is not configured
    """
    from rxguard.audit.logger import get_audit_logger
    from rxguard.core import config
    from rxguard.kms.client import HttpIdentityResolver, RemoteKMSClient
    from rxguard.store.memory import InMemoryActorRegistry, InMemoryCredentialStore

    if not config.KMS_URL or not config.DID_RESOLVER_URL:
        raise RuntimeError("RXGUARD_KMS_URL and RXGUARD_DID_RESOLVER_URL must be set")

    registry = (
        InMemoryActorRegistry.from_file(config.ACTOR_REGISTRY_PATH)
        if config.ACTOR_REGISTRY_PATH
        else InMemoryActorRegistry()
    )
    return FraudPreventionService(
        signer=RemoteKMSClient(config.KMS_URL, timeout=config.KMS_TIMEOUT_SECONDS),
        resolver=HttpIdentityResolver(config.DID_RESOLVER_URL, timeout=config.DID_RESOLVER_TIMEOUT_SECONDS),
        store=InMemoryCredentialStore(),
        registry=registry,
        audit_log=get_audit_logger(),
        config=EngineConfig.from_env(),
    )
