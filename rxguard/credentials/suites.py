"""Signing key and suite resolution.

Walks a fixed preference list of key types and picks the first verification
method in the issuer's identity document that the caller can actually sign
with. The disclosure-capable BBS+ suite is always preferred; secp256k1 is
the fallback and cannot derive partial disclosures.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from rxguard.core.exceptions import NoCompatibleKey
from rxguard.credentials.models import IdentityDocument, SigningKey


class Suite(str, Enum):
    """Signature suites understood by the signer."""

    BBS = "bbsbls2020"
    ES256K = "es256k"


BBS_KEY_TYPE = "Bls12381G2Key2020"
ES256K_KEY_TYPE = "EcdsaSecp256k1VerificationKey2019"

BBS_SIGNATURE_TYPE = "BbsBlsSignature2020"
BBS_DERIVED_PROOF_TYPE = "BbsBlsSignatureProof2020"
ES256K_SIGNATURE_TYPE = "EcdsaSecp256k1Signature2019"

SUITE_PROOF_TYPES: dict[Suite, str] = {
    Suite.BBS: BBS_SIGNATURE_TYPE,
    Suite.ES256K: ES256K_SIGNATURE_TYPE,
}

# Order matters: first match wins.
KEY_PREFERENCE: tuple[tuple[str, Suite], ...] = (
    (BBS_KEY_TYPE, Suite.BBS),
    (ES256K_KEY_TYPE, Suite.ES256K),
)

DISCLOSURE_CAPABLE_SUITES = frozenset({Suite.BBS})


@dataclass(frozen=True)
class ResolvedKey:
    """The verification method and suite chosen for signing."""

    verification_method_id: str
    suite: Suite
    key_type: str

    @property
    def disclosure_capable(self) -> bool:
        return self.suite in DISCLOSURE_CAPABLE_SUITES


def supports_disclosure(proof_type: Optional[str]) -> bool:
    """True if a credential with this proof type can derive partial disclosures."""
    return proof_type == BBS_SIGNATURE_TYPE


def _jwk_matches(document_jwk: Optional[dict], key_jwk: Optional[dict]) -> bool:
    if not document_jwk or not key_jwk:
        return False
    for coord in ("x", "y"):
        value = document_jwk.get(coord)
        if not value or value != key_jwk.get(coord):
            return False
    return True


def resolve_signing_key(
    document: IdentityDocument,
    available_keys: Iterable[SigningKey],
) -> ResolvedKey:
    """Pick the verification method and suite to sign with.

    BBS+ methods only match when an available BBS+ key has the same public
    key coordinates (x and y). The secp256k1 fallback matches whenever the
    document exposes a method of that type.

    Raises:
        NoCompatibleKey: If no preference entry matches
    """
    keys = list(available_keys)

    for key_type, suite in KEY_PREFERENCE:
        for vm in document.verification_methods:
            if vm.type != key_type:
                continue
            if suite == Suite.BBS:
                if any(
                    k.suite == suite.value and _jwk_matches(vm.public_key_jwk, k.public_key_jwk)
                    for k in keys
                ):
                    return ResolvedKey(vm.id, suite, key_type)
            else:
                return ResolvedKey(vm.id, suite, key_type)

    raise NoCompatibleKey(
        document_types=document.method_types,
        available_key_ids=[k.key_id for k in keys],
    )
