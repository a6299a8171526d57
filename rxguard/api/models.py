"""API models for the fraud-prevention endpoints.

Field names follow the camelCase wire format of the credential payloads.
"""
from typing import Any, Optional

from pydantic import BaseModel, Field


# =============================================================================
# Request Models
# =============================================================================


class PatientInfo(BaseModel):
    name: Optional[str] = Field(None, description="Patient name")
    birthDate: Optional[str] = Field(None, description="Birth date (ISO8601)")
    insuranceProvider: Optional[str] = Field(None, description="Insurance provider")
    insuranceNumber: Optional[str] = Field(None, description="Insurance member number")


class PrescriptionDetails(BaseModel):
    medicationName: Optional[str] = None
    dosage: Optional[str] = None
    frequency: Optional[str] = None
    duration: Optional[str] = None
    quantity: Optional[int] = None
    refills: Optional[int] = None
    validUntil: Optional[str] = Field(None, description="Expiry (ISO8601)")
    instructions: Optional[str] = None


class DoctorInfo(BaseModel):
    name: Optional[str] = None
    licenseNumber: Optional[str] = None
    specialization: Optional[str] = None


class CreatePrescriptionRequest(BaseModel):
    """Doctor issues a prescription to a patient."""

    doctorDid: str = Field(..., description="Prescribing doctor identity")
    patientDid: str = Field(..., description="Patient identity")
    patientInfo: PatientInfo
    prescription: PrescriptionDetails
    doctorInfo: DoctorInfo


class VerifyPrescriptionRequest(BaseModel):
    prescriptionCredentialId: str
    pharmacyDid: str


class CreateDispensingRequest(BaseModel):
    prescriptionCredentialId: str
    pharmacyDid: str
    pharmacyName: Optional[str] = None
    pharmacistLicense: Optional[str] = None
    batchNumber: Optional[str] = None
    expirationDate: Optional[str] = None
    quantityDispensed: Optional[int] = None
    patientConfirmation: bool = False


class ConfirmDispensingRequest(BaseModel):
    patientDid: str
    notes: Optional[str] = None


class VerifyClaimRequest(BaseModel):
    insurerDid: str
    prescriptionCredentialId: str
    dispensingCredentialId: str
    claimAmount: Optional[float] = Field(None, ge=0)


class RevokePrescriptionRequest(BaseModel):
    doctorDid: str
    reason: Optional[str] = None


class AuditDisclosureRequest(BaseModel):
    auditorDid: str
    prescriptionCredentialId: str
    auditReason: str
    authorizationToken: str


# =============================================================================
# Response Models
# =============================================================================


class ErrorResponse(BaseModel):
    """Returned when a request could not be evaluated."""

    code: str
    message: str
    recoverable: bool
    details: Optional[dict[str, Any]] = None


class PrescriptionResponse(BaseModel):
    credential: dict[str, Any]
    prescriptionId: str
    state: str
    suite: str
    anchorHash: Optional[str] = None


class DisclosureResponse(BaseModel):
    credentialId: str
    frame: str
    frameVersion: str
    revealed: dict[str, Any]
    derivedCredential: dict[str, Any]


class DispensingResponse(BaseModel):
    credential: dict[str, Any]
    fraudScore: int
    riskLevel: str
    failedChecks: list[str]


class ConfirmationResponse(BaseModel):
    credential: dict[str, Any]


class VerificationProofModel(BaseModel):
    insurerId: str
    prescriptionCredentialId: str
    dispensingCredentialId: str
    prescriptionId: Optional[str] = None
    prescriptionExists: bool
    medicationDispensed: bool
    doctorAuthorized: bool
    pharmacyAuthorized: bool
    patientConfirmed: bool
    fraudScore: int
    riskLevel: str
    failedChecks: list[str]
    claimAmount: Optional[float] = None
    verificationTimestamp: str
    proofHash: str


class ClaimVerificationResponse(BaseModel):
    """Successful evaluation. ``claimApproved`` may be false."""

    verificationProof: VerificationProofModel
    claimApproved: bool
    denialReasons: list[str] = Field(default_factory=list)


class RevokeResponse(BaseModel):
    credentialId: str
    state: str
    updatedAt: Optional[str] = None


class AuditLogEntryModel(BaseModel):
    entryId: str
    auditorId: str
    prescriptionId: str
    prescriptionCredentialId: str
    reason: str
    accessedAt: str
    tokenFingerprint: str
    previousHash: str
    entryHash: str


class AuditDisclosureResponse(BaseModel):
    disclosure: DisclosureResponse
    auditEntry: AuditLogEntryModel


class StatisticsResponse(BaseModel):
    totalVerifications: int
    fraudAttempts: int
    averageFraudScore: float
    approved: int
    denied: int
    byRisk: dict[str, int]
    verificationsByDay: dict[str, int]
