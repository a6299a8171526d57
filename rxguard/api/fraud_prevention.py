"""Fraud-prevention endpoints.

Each workflow step is restricted to one actor role, taken from the
``X-Actor-Role`` header set by the upstream gateway.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from fastapi.responses import JSONResponse

from rxguard.api.models import (
    AuditDisclosureRequest,
    AuditDisclosureResponse,
    ClaimVerificationResponse,
    ConfirmDispensingRequest,
    ConfirmationResponse,
    CreateDispensingRequest,
    CreatePrescriptionRequest,
    DisclosureResponse,
    DispensingResponse,
    ErrorResponse,
    PrescriptionResponse,
    RevokePrescriptionRequest,
    RevokeResponse,
    StatisticsResponse,
    VerifyClaimRequest,
    VerifyPrescriptionRequest,
)
from rxguard.core.exceptions import (
    ErrorCode,
    InvalidClaims,
    NoCompatibleKey,
    NotFound,
    RxGuardError,
    ServiceUnavailable,
)
from rxguard.disclosure.frames import parse_frame_name
from rxguard.service import FraudPreventionService, get_fraud_prevention_service

log = logging.getLogger(__name__)
router = APIRouter(prefix="/fraud-prevention", tags=["fraud-prevention"])

VALID_ROLES = ("doctor", "pharmacy", "insurance", "patient", "auditor")

ERROR_STATUS: dict[str, int] = {
    ErrorCode.INVALID_CLAIMS: 400,
    ErrorCode.UNKNOWN_DISCLOSURE_FRAME: 400,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.INVALID_CREDENTIAL_STATE: 409,
    ErrorCode.DUPLICATE_DISPENSING: 409,
    ErrorCode.NO_COMPATIBLE_KEY: 422,
    ErrorCode.DISCLOSURE_UNSUPPORTED: 422,
    ErrorCode.SERVICE_UNAVAILABLE: 503,
    ErrorCode.INTERNAL_ERROR: 502,
}


def error_response(exc: RxGuardError) -> JSONResponse:
    """Render an engine error. Never used for a denied claim."""
    details = None
    if isinstance(exc, InvalidClaims):
        details = {"fields": exc.fields}
    elif isinstance(exc, NoCompatibleKey):
        details = {
            "documentTypes": exc.document_types,
            "availableKeyIds": exc.available_key_ids,
        }
    elif isinstance(exc, NotFound):
        details = {"kind": exc.kind, "id": exc.identifier}
    elif isinstance(exc, ServiceUnavailable):
        details = {"collaborator": exc.collaborator, "target": exc.target}

    body = ErrorResponse(
        code=exc.code,
        message=exc.message,
        recoverable=exc.recoverable,
        details=details,
    )
    return JSONResponse(status_code=ERROR_STATUS.get(exc.code, 500), content=body.model_dump())


def require_role(*roles: str):
    """Dependency rejecting requests whose X-Actor-Role is not in ``roles``."""

    async def check(x_actor_role: Optional[str] = Header(None)) -> str:
        role = (x_actor_role or "").lower()
        if role not in VALID_ROLES:
            raise HTTPException(status_code=401, detail="Missing or unknown X-Actor-Role")
        if role not in roles:
            raise HTTPException(
                status_code=403,
                detail=f"Role {role} cannot perform this operation",
            )
        return role

    return check


def _service() -> FraudPreventionService:
    return get_fraud_prevention_service()


def _disclosure_model(disclosure) -> DisclosureResponse:
    return DisclosureResponse(**disclosure.to_dict())


@router.post(
    "/prescription/create",
    response_model=PrescriptionResponse,
    status_code=201,
    dependencies=[Depends(require_role("doctor"))],
)
async def create_prescription(
    request: CreatePrescriptionRequest,
    service: FraudPreventionService = Depends(_service),
) -> PrescriptionResponse:
    issued = await service.issue_prescription(
        doctor_id=request.doctorDid,
        patient_id=request.patientDid,
        patient=request.patientInfo.model_dump(exclude_none=True),
        prescription=request.prescription.model_dump(exclude_none=True),
        doctor=request.doctorInfo.model_dump(exclude_none=True),
    )
    return PrescriptionResponse(
        credential=issued.credential.to_dict(),
        prescriptionId=issued.record.prescription_id,
        state=issued.record.state.value,
        suite=issued.resolved_key.suite.value,
        anchorHash=issued.record.anchor_hash,
    )


@router.post(
    "/prescription/verify",
    response_model=DisclosureResponse,
    dependencies=[Depends(require_role("pharmacy"))],
)
async def verify_prescription(
    request: VerifyPrescriptionRequest,
    service: FraudPreventionService = Depends(_service),
) -> DisclosureResponse:
    disclosure = await service.verify_for_pharmacy(
        request.prescriptionCredentialId, request.pharmacyDid
    )
    return _disclosure_model(disclosure)


@router.get("/prescription/{credential_id}/disclosure", response_model=DisclosureResponse)
async def get_disclosure(
    credential_id: str,
    actor_type: str = Query(..., alias="actorType"),
    role: str = Depends(require_role("pharmacy", "insurance")),
    service: FraudPreventionService = Depends(_service),
) -> DisclosureResponse:
    frame = parse_frame_name(actor_type)
    if frame.value != role:
        raise HTTPException(status_code=403, detail=f"Role {role} cannot request the {frame.value} frame")
    disclosure = await service.get_disclosure(credential_id, frame)
    return _disclosure_model(disclosure)


@router.post(
    "/prescription/{credential_id}/revoke",
    response_model=RevokeResponse,
    dependencies=[Depends(require_role("doctor"))],
)
async def revoke_prescription(
    credential_id: str,
    request: RevokePrescriptionRequest,
    service: FraudPreventionService = Depends(_service),
) -> RevokeResponse:
    record = await service.revoke_prescription(credential_id, request.doctorDid, request.reason)
    return RevokeResponse(
        credentialId=record.credential_id,
        state=record.state.value,
        updatedAt=record.updated_at,
    )


@router.post(
    "/dispensing/create",
    response_model=DispensingResponse,
    status_code=201,
    dependencies=[Depends(require_role("pharmacy"))],
)
async def create_dispensing(
    request: CreateDispensingRequest,
    service: FraudPreventionService = Depends(_service),
) -> DispensingResponse:
    result = await service.create_dispensing_proof(
        prescription_credential_id=request.prescriptionCredentialId,
        pharmacy_id=request.pharmacyDid,
        pharmacy_name=request.pharmacyName,
        pharmacist_license=request.pharmacistLicense,
        medication={
            "batchNumber": request.batchNumber,
            "expirationDate": request.expirationDate,
            "quantityDispensed": request.quantityDispensed,
        },
        patient_confirmation=request.patientConfirmation,
    )
    return DispensingResponse(
        credential=result.credential.to_dict(),
        fraudScore=result.fraud.score,
        riskLevel=result.fraud.risk_level.value,
        failedChecks=list(result.fraud.failed_checks),
    )


@router.post(
    "/dispensing/{credential_id}/confirm",
    response_model=ConfirmationResponse,
    status_code=201,
    dependencies=[Depends(require_role("patient"))],
)
async def confirm_dispensing(
    credential_id: str,
    request: ConfirmDispensingRequest,
    service: FraudPreventionService = Depends(_service),
) -> ConfirmationResponse:
    credential = await service.confirm_dispensing(credential_id, request.patientDid, request.notes)
    return ConfirmationResponse(credential=credential.to_dict())


@router.post(
    "/insurance/verify",
    response_model=ClaimVerificationResponse,
    dependencies=[Depends(require_role("insurance"))],
)
async def verify_claim(
    request: VerifyClaimRequest,
    service: FraudPreventionService = Depends(_service),
) -> ClaimVerificationResponse:
    result = await service.verify_insurance_claim(
        insurer_id=request.insurerDid,
        prescription_credential_id=request.prescriptionCredentialId,
        dispensing_credential_id=request.dispensingCredentialId,
        claim_amount=request.claimAmount,
    )
    return ClaimVerificationResponse(
        verificationProof=result.proof.to_dict(),
        claimApproved=result.decision.approved,
        denialReasons=list(result.decision.reasons),
    )


@router.post(
    "/audit/full-disclosure",
    response_model=AuditDisclosureResponse,
    dependencies=[Depends(require_role("auditor"))],
)
async def audit_full_disclosure(
    request: AuditDisclosureRequest,
    service: FraudPreventionService = Depends(_service),
) -> AuditDisclosureResponse:
    disclosure, entry = await service.audit_full_disclosure(
        auditor_id=request.auditorDid,
        prescription_credential_id=request.prescriptionCredentialId,
        reason=request.auditReason,
        authorization_token=request.authorizationToken,
    )
    return AuditDisclosureResponse(
        disclosure=_disclosure_model(disclosure),
        auditEntry=entry.to_dict(),
    )


@router.get("/statistics", response_model=StatisticsResponse)
async def statistics(
    service: FraudPreventionService = Depends(_service),
) -> StatisticsResponse:
    stats = await service.get_statistics()
    return StatisticsResponse(
        totalVerifications=stats["total_verifications"],
        fraudAttempts=stats["fraud_attempts"],
        averageFraudScore=stats["average_fraud_score"],
        approved=stats["approved"],
        denied=stats["denied"],
        byRisk=stats["by_risk"],
        verificationsByDay=stats["verifications_by_day"],
    )
