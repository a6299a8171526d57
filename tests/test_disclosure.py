"""Tests for disclosure frames and derivation."""

import pytest
from unittest.mock import AsyncMock

from rxguard.core.config import EngineConfig
from rxguard.core.exceptions import (
    DisclosureUnsupported,
    ServiceUnavailable,
    UnknownDisclosureFrame,
)
from rxguard.credentials.issuer import CredentialIssuer, build_prescription_claims
from rxguard.credentials.models import CredentialKind
from rxguard.credentials.suites import ResolvedKey, Suite
from rxguard.disclosure.engine import DisclosureEngine
from rxguard.disclosure.frames import (
    DEFAULT_FRAMES,
    DisclosureFrame,
    DisclosureFrameName,
    apply_frame,
    parse_frame_name,
    validate_frames,
)

from tests.conftest import DOCTOR, DOCTOR_INFO, PATIENT, PATIENT_INFO, FakeSigner, make_prescription_input

BBS_KEY = ResolvedKey(f"{DOCTOR}#bbs-1", Suite.BBS, "Bls12381G2Key2020")
K1_KEY = ResolvedKey(f"{DOCTOR}#k1-1", Suite.ES256K, "EcdsaSecp256k1VerificationKey2019")


async def issue(signer, key=BBS_KEY):
    claims = build_prescription_claims(
        patient=dict(PATIENT_INFO, did=PATIENT),
        prescription=make_prescription_input(),
        doctor=dict(DOCTOR_INFO, did=DOCTOR),
    )
    return await CredentialIssuer(signer, EngineConfig()).issue(
        CredentialKind.PRESCRIPTION, DOCTOR, PATIENT, claims, key
    )


class TestParseFrameName:
    @pytest.mark.parametrize("name", ["pharmacy", "insurance", "audit"])
    def test_known(self, name):
        assert parse_frame_name(name).value == name

    @pytest.mark.parametrize("name", ["doctor", "PHARMACY", "", "admin"])
    def test_unknown(self, name):
        with pytest.raises(UnknownDisclosureFrame):
            parse_frame_name(name)


class TestFrameInvariants:
    def test_default_frames_are_valid(self):
        validate_frames(DEFAULT_FRAMES)

    def test_audit_covers_every_frame(self):
        audit = DEFAULT_FRAMES[DisclosureFrameName.AUDIT].field_set
        for name, frame in DEFAULT_FRAMES.items():
            assert frame.field_set <= audit, name

    def test_pharmacy_cannot_reveal_insurance(self):
        frames = dict(DEFAULT_FRAMES)
        frames[DisclosureFrameName.PHARMACY] = DisclosureFrame(
            DisclosureFrameName.PHARMACY, "2.0", ("prescription.id", "patientInfo.insuranceProvider")
        )
        with pytest.raises(ValueError, match="insuranceProvider"):
            validate_frames(frames)

    def test_parent_path_counts_as_revealing(self):
        frames = dict(DEFAULT_FRAMES)
        frames[DisclosureFrameName.PHARMACY] = DisclosureFrame(
            DisclosureFrameName.PHARMACY, "2.0", ("patientInfo",)
        )
        with pytest.raises(ValueError, match="must not reveal"):
            validate_frames(frames)

    def test_insurance_cannot_reveal_dosage(self):
        frames = dict(DEFAULT_FRAMES)
        frames[DisclosureFrameName.INSURANCE] = DisclosureFrame(
            DisclosureFrameName.INSURANCE, "2.0", ("prescription.dosage",)
        )
        with pytest.raises(ValueError, match="dosage"):
            validate_frames(frames)

    def test_audit_must_be_superset(self):
        frames = dict(DEFAULT_FRAMES)
        frames[DisclosureFrameName.AUDIT] = DisclosureFrame(
            DisclosureFrameName.AUDIT, "2.0", ("id",), reveal_all=True
        )
        with pytest.raises(ValueError, match="Audit frame must cover"):
            validate_frames(frames)

    def test_missing_frame(self):
        frames = dict(DEFAULT_FRAMES)
        del frames[DisclosureFrameName.INSURANCE]
        with pytest.raises(ValueError, match="insurance"):
            validate_frames(frames)

    def test_engine_config_rejects_bad_frames(self):
        frames = dict(DEFAULT_FRAMES)
        frames[DisclosureFrameName.PHARMACY] = DisclosureFrame(
            DisclosureFrameName.PHARMACY, "1.0", ("id",), reveal_all=True
        )
        with pytest.raises(ValueError):
            EngineConfig(disclosure_frames=frames)


class TestApplyFrame:
    SUBJECT = {
        "id": PATIENT,
        "patientInfo": {"name": "J", "insuranceProvider": "Acme"},
        "prescription": {"medicationName": "A", "dosage": "5mg", "status": "active"},
    }

    def test_pharmacy_projection(self):
        revealed = apply_frame(self.SUBJECT, DEFAULT_FRAMES[DisclosureFrameName.PHARMACY])
        assert revealed == {
            "id": PATIENT,
            "prescription": {"medicationName": "A", "dosage": "5mg", "status": "active"},
        }

    def test_insurance_projection(self):
        revealed = apply_frame(self.SUBJECT, DEFAULT_FRAMES[DisclosureFrameName.INSURANCE])
        assert revealed == {
            "id": PATIENT,
            "patientInfo": {"insuranceProvider": "Acme"},
            "prescription": {"medicationName": "A", "status": "active"},
        }

    def test_audit_reveals_everything(self):
        assert apply_frame(self.SUBJECT, DEFAULT_FRAMES[DisclosureFrameName.AUDIT]) == self.SUBJECT


class TestJsonLdFrame:
    def test_explicit_nesting(self):
        frame = DEFAULT_FRAMES[DisclosureFrameName.INSURANCE].to_jsonld(["VerifiableCredential"])
        subject = frame["credentialSubject"]

        assert frame["@explicit"] is True
        assert subject["@explicit"] is True
        assert subject["patientInfo"] == {"@explicit": True, "insuranceProvider": {}, "insuranceNumber": {}}
        assert subject["dispensingEvent"]["medicationDispensed"] == {"@explicit": True, "name": {}}
        assert "dosage" not in subject["prescription"]

    def test_audit_frame_is_not_explicit(self):
        frame = DEFAULT_FRAMES[DisclosureFrameName.AUDIT].to_jsonld(["VerifiableCredential"])
        assert frame["credentialSubject"] == {}
        assert "@explicit" not in frame


class TestDisclosureEngine:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("frame", list(DisclosureFrameName))
    async def test_same_frame_reveals_same_values(self, frame):
        signer = FakeSigner()
        credential = await issue(signer)
        engine = DisclosureEngine(signer, EngineConfig())

        first = await engine.derive(credential, frame)
        second = await engine.derive(credential, frame)

        assert first.revealed == second.revealed
        assert first.proof["proofValue"] != second.proof["proofValue"]
        assert first.frame == frame
        assert first.frame_version == "1.0"

    @pytest.mark.asyncio
    async def test_pharmacy_hides_insurance_identifiers(self):
        signer = FakeSigner()
        credential = await issue(signer)
        disclosure = await DisclosureEngine(signer, EngineConfig()).derive(credential, "pharmacy")

        assert "patientInfo" not in disclosure.revealed
        assert disclosure.revealed["prescription"]["dosage"] == "500mg"
        assert disclosure.revealed["doctor"] == {
            "licenseNumber": "MD-12345",
            "specialization": "General Practice",
        }

    @pytest.mark.asyncio
    async def test_insurance_hides_instructions(self):
        signer = FakeSigner()
        credential = await issue(signer)
        disclosure = await DisclosureEngine(signer, EngineConfig()).derive(credential, "insurance")

        prescription = disclosure.revealed["prescription"]
        assert prescription["medicationName"] == "Amoxicillin 500mg"
        for hidden in ("dosage", "frequency", "duration"):
            assert hidden not in prescription
        assert disclosure.revealed["patientInfo"]["insuranceNumber"] == "AH-445566"

    @pytest.mark.asyncio
    async def test_audit_reveals_full_subject(self):
        signer = FakeSigner()
        credential = await issue(signer)
        disclosure = await DisclosureEngine(signer, EngineConfig()).derive(credential, "audit")

        assert disclosure.revealed == credential.subject

    @pytest.mark.asyncio
    async def test_fallback_suite_cannot_derive(self):
        signer = FakeSigner()
        credential = await issue(signer, key=K1_KEY)
        engine = DisclosureEngine(signer, EngineConfig())

        for frame in DisclosureFrameName:
            with pytest.raises(DisclosureUnsupported):
                await engine.derive(credential, frame)
        assert signer.derive_calls == []

    @pytest.mark.asyncio
    async def test_unknown_frame_rejected_before_signer(self):
        signer = FakeSigner()
        credential = await issue(signer)

        with pytest.raises(UnknownDisclosureFrame):
            await DisclosureEngine(signer, EngineConfig()).derive(credential, "doctor")
        assert signer.derive_calls == []

    @pytest.mark.asyncio
    async def test_signer_timeout(self):
        signer = FakeSigner()
        credential = await issue(signer)
        signer.derive = AsyncMock(side_effect=TimeoutError())

        with pytest.raises(ServiceUnavailable) as exc_info:
            await DisclosureEngine(signer, EngineConfig()).derive(credential, "pharmacy")
        assert exc_info.value.target == credential.id

    @pytest.mark.asyncio
    async def test_extra_fields_from_signer_are_not_revealed(self):
        signer = FakeSigner()
        credential = await issue(signer)
        full = credential.to_dict()
        signer.derive = AsyncMock(return_value=full)

        disclosure = await DisclosureEngine(signer, EngineConfig()).derive(credential, "pharmacy")
        assert "patientInfo" not in disclosure.revealed
