"""Fraud scoring.

Pure functions over an evidence snapshot. The caller gathers evidence from
the store and registry; nothing here performs I/O.

Each failed check adds its weight; the total is capped at 100. Weights are
non-negative, so failing an additional check never lowers the score.
"""

from dataclasses import asdict, dataclass, fields
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Optional

from rxguard.credentials.models import get_path, parse_timestamp

MAX_SCORE = 100


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class FraudEvidence:
    """Evidence snapshot. True means the check passed."""

    prescription_exists: bool
    prescription_unexpired: bool
    prescription_not_revoked: bool
    doctor_authorized: bool
    pharmacy_authorized: bool
    quantity_consistent: bool
    dates_consistent: bool
    patient_confirmed: bool

    def failed_checks(self) -> list[str]:
        return [f.name for f in fields(self) if not getattr(self, f.name)]

    def to_dict(self) -> dict[str, bool]:
        return asdict(self)


@dataclass(frozen=True)
class FraudWeights:
    """Weight added to the score when the matching check fails."""

    prescription_exists: int = 100
    prescription_unexpired: int = 50
    prescription_not_revoked: int = 50
    doctor_authorized: int = 20
    pharmacy_authorized: int = 20
    quantity_consistent: int = 40
    dates_consistent: int = 30
    patient_confirmed: int = 30

    def __post_init__(self):
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValueError(f"Fraud weight {f.name} must be a non-negative int, got {value!r}")

    @classmethod
    def from_mapping(cls, overrides: Optional[Mapping[str, Any]] = None) -> "FraudWeights":
        """Defaults updated with ``overrides``.

        Raises:
            ValueError: On unknown check names or invalid weights
        """
        merged = cls().to_dict()
        if overrides:
            unknown = set(overrides) - set(merged)
            if unknown:
                raise ValueError(f"Unknown fraud checks: {sorted(unknown)}")
            merged.update(overrides)
        return cls(**merged)

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


DEFAULT_FRAUD_WEIGHTS: dict[str, int] = FraudWeights().to_dict()


@dataclass(frozen=True)
class RiskThresholds:
    """Band boundaries: low < medium <= score < high <= score."""

    medium: int = 25
    high: int = 50

    def __post_init__(self):
        if not 0 <= self.medium <= self.high <= MAX_SCORE:
            raise ValueError(
                f"Risk thresholds must satisfy 0 <= medium <= high <= {MAX_SCORE}"
            )


@dataclass(frozen=True)
class FraudScore:
    score: int
    risk_level: RiskLevel
    failed_checks: tuple[str, ...]


def score(evidence: FraudEvidence, weights: FraudWeights) -> int:
    """Sum the weights of failed checks, capped at 100."""
    total = sum(getattr(weights, name) for name in evidence.failed_checks())
    return min(total, MAX_SCORE)


def risk_band(value: int, thresholds: RiskThresholds = RiskThresholds()) -> RiskLevel:
    if value >= thresholds.high:
        return RiskLevel.HIGH
    if value >= thresholds.medium:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def assess(
    evidence: FraudEvidence,
    weights: FraudWeights,
    thresholds: RiskThresholds = RiskThresholds(),
) -> FraudScore:
    value = score(evidence, weights)
    return FraudScore(
        score=value,
        risk_level=risk_band(value, thresholds),
        failed_checks=tuple(evidence.failed_checks()),
    )


def _timestamp_or_none(value: Any) -> Optional[datetime]:
    try:
        return parse_timestamp(value)
    except (TypeError, ValueError):
        return None


def gather_evidence(
    prescription_subject: Optional[dict],
    dispensing_subject: Optional[dict],
    *,
    prescription_revoked: bool = False,
    confirmation_present: bool = False,
    doctor_authorized: bool = False,
    pharmacy_authorized: bool = False,
    reference_time: Optional[datetime] = None,
) -> FraudEvidence:
    """Build the evidence snapshot from already-loaded subjects.

    Expiry is judged at the dispensing date when the dispensing subject has
    one, otherwise at ``reference_time``. Unparseable dates fail their check.
    """
    exists = prescription_subject is not None
    event = get_path(dispensing_subject, "dispensingEvent") or {}

    valid_until = _timestamp_or_none(get_path(prescription_subject, "prescription.validUntil"))
    prescribed = _timestamp_or_none(get_path(prescription_subject, "prescription.prescribedDate"))
    dispensed = _timestamp_or_none(event.get("dispensedDate"))
    batch_expiry = _timestamp_or_none(get_path(event, "medicationDispensed.expirationDate"))

    at = dispensed or reference_time
    unexpired = exists and valid_until is not None and at is not None and at <= valid_until

    prescribed_qty = get_path(prescription_subject, "prescription.quantity")
    dispensed_qty = get_path(event, "medicationDispensed.quantityDispensed")
    quantity_ok = (
        isinstance(prescribed_qty, int)
        and isinstance(dispensed_qty, int)
        and 0 < dispensed_qty <= prescribed_qty
    )

    dates_ok = (
        prescribed is not None
        and dispensed is not None
        and valid_until is not None
        and prescribed <= dispensed <= valid_until
        and (batch_expiry is None or batch_expiry >= dispensed)
    )

    confirmed = bool(event.get("patientConfirmation")) or confirmation_present

    return FraudEvidence(
        prescription_exists=exists,
        prescription_unexpired=unexpired,
        prescription_not_revoked=exists and not prescription_revoked,
        doctor_authorized=doctor_authorized,
        pharmacy_authorized=pharmacy_authorized,
        quantity_consistent=quantity_ok,
        dates_consistent=dates_ok,
        patient_confirmed=confirmed,
    )
