"""Disclosure frames.

A frame is a named, versioned list of dotted ``credentialSubject`` paths
revealed to one requester role. The set of frame names is closed; unknown
tags are rejected by :func:`parse_frame_name` before reaching the engine.
"""

import copy
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Mapping, Union

from rxguard.core.exceptions import UnknownDisclosureFrame
from rxguard.credentials.models import (
    BBS_CONTEXT,
    MEDICAL_VOCAB,
    W3C_CREDENTIALS_CONTEXT,
)


class DisclosureFrameName(str, Enum):
    PHARMACY = "pharmacy"
    INSURANCE = "insurance"
    AUDIT = "audit"


def parse_frame_name(value: Union[str, DisclosureFrameName]) -> DisclosureFrameName:
    """Map a requested tag onto the closed frame set.

    Raises:
        UnknownDisclosureFrame: If the tag is not a known frame
    """
    if isinstance(value, DisclosureFrameName):
        return value
    try:
        return DisclosureFrameName(value)
    except ValueError:
        raise UnknownDisclosureFrame(str(value))


@dataclass(frozen=True)
class DisclosureFrame:
    """Field template for one requester role."""

    name: DisclosureFrameName
    version: str
    fields: tuple[str, ...]
    reveal_all: bool = False

    @property
    def field_set(self) -> frozenset[str]:
        return frozenset(self.fields)

    def to_jsonld(self, credential_types: Iterable[str]) -> dict:
        """Build the JSON-LD frame sent to the signer's derive call."""
        frame: dict = {
            "@context": [W3C_CREDENTIALS_CONTEXT, BBS_CONTEXT, {"@vocab": MEDICAL_VOCAB}],
            "type": list(credential_types),
        }
        if self.reveal_all:
            frame["credentialSubject"] = {}
            return frame

        frame["@explicit"] = True
        subject: dict = {"@explicit": True}
        for path in self.fields:
            node = subject
            parts = path.split(".")
            for part in parts[:-1]:
                child = node.get(part)
                if not child:
                    child = {"@explicit": True}
                    node[part] = child
                node = child
            node.setdefault(parts[-1], {})
        frame["credentialSubject"] = subject
        return frame


def apply_frame(subject: dict, frame: DisclosureFrame) -> dict:
    """Project a credential subject onto a frame's paths.

    Paths absent from the subject are skipped. When a path names a nested
    object the whole object is revealed.
    """
    if frame.reveal_all:
        return copy.deepcopy(subject)

    revealed: dict = {}
    for path in frame.fields:
        parts = path.split(".")
        source = subject
        for part in parts:
            if not isinstance(source, dict) or part not in source:
                break
            source = source[part]
        else:
            target = revealed
            for part in parts[:-1]:
                target = target.setdefault(part, {})
            target[parts[-1]] = copy.deepcopy(source)
    return revealed


# =============================================================================
# Default frames
# =============================================================================

PRESCRIPTION_FIELDS = (
    "prescription.id",
    "prescription.medicationName",
    "prescription.dosage",
    "prescription.frequency",
    "prescription.duration",
    "prescription.quantity",
    "prescription.refills",
    "prescription.status",
    "prescription.prescribedDate",
    "prescription.validUntil",
)

PHARMACY_FIELDS = ("id",) + PRESCRIPTION_FIELDS + (
    "doctor.licenseNumber",
    "doctor.specialization",
)

INSURANCE_FIELDS = (
    "id",
    "patientInfo.insuranceProvider",
    "patientInfo.insuranceNumber",
    "prescription.id",
    "prescription.medicationName",
    "prescription.status",
    "prescription.prescribedDate",
    "prescription.validUntil",
    "dispensingEvent.prescriptionId",
    "dispensingEvent.dispensedDate",
    "dispensingEvent.patientConfirmation",
    "dispensingEvent.medicationDispensed.name",
    "confirmation.dispensingCredentialId",
    "confirmation.confirmedAt",
    "issuanceProof.timestamp",
)

AUDIT_FIELDS = tuple(dict.fromkeys(
    PHARMACY_FIELDS
    + INSURANCE_FIELDS
    + (
        "patientInfo.did",
        "patientInfo.name",
        "patientInfo.birthDate",
        "doctor.did",
        "doctor.name",
        "issuanceProof.nonce",
    )
))

FRAMES_VERSION = "1.0"

DEFAULT_FRAMES: dict[DisclosureFrameName, DisclosureFrame] = {
    DisclosureFrameName.PHARMACY: DisclosureFrame(
        DisclosureFrameName.PHARMACY, FRAMES_VERSION, PHARMACY_FIELDS
    ),
    DisclosureFrameName.INSURANCE: DisclosureFrame(
        DisclosureFrameName.INSURANCE, FRAMES_VERSION, INSURANCE_FIELDS
    ),
    DisclosureFrameName.AUDIT: DisclosureFrame(
        DisclosureFrameName.AUDIT, FRAMES_VERSION, AUDIT_FIELDS, reveal_all=True
    ),
}

# Paths a frame may never reveal, directly or through a parent path.
FORBIDDEN_PATHS: dict[DisclosureFrameName, tuple[str, ...]] = {
    DisclosureFrameName.PHARMACY: (
        "patientInfo.insuranceProvider",
        "patientInfo.insuranceNumber",
    ),
    DisclosureFrameName.INSURANCE: (
        "prescription.dosage",
        "prescription.frequency",
        "prescription.duration",
        "prescription.instructions",
    ),
    DisclosureFrameName.AUDIT: (),
}


def _reveals(field: str, forbidden: str) -> bool:
    return field == forbidden or forbidden.startswith(field + ".")


def validate_frames(frames: Mapping[DisclosureFrameName, DisclosureFrame]) -> None:
    """Check the frame invariants.

    Raises:
        ValueError: If a frame is missing or an invariant is violated
    """
    missing = [name.value for name in DisclosureFrameName if name not in frames]
    if missing:
        raise ValueError(f"Disclosure frames missing: {missing}")

    for name, frame in frames.items():
        if frame.name != name:
            raise ValueError(f"Frame registered as {name.value} is named {frame.name.value}")
        if frame.reveal_all and name != DisclosureFrameName.AUDIT:
            raise ValueError(f"Only the audit frame may reveal everything, not {name.value}")
        for forbidden in FORBIDDEN_PATHS[name]:
            for path in frame.fields:
                if _reveals(path, forbidden):
                    raise ValueError(f"Frame {name.value} must not reveal {forbidden}")

    audit = frames[DisclosureFrameName.AUDIT]
    for name, frame in frames.items():
        if name == DisclosureFrameName.AUDIT:
            continue
        extra = frame.field_set - audit.field_set
        if extra:
            raise ValueError(
                f"Audit frame must cover every {name.value} field; missing {sorted(extra)}"
            )
