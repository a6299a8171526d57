"""Partial disclosure derivation.

Given a BBS+-signed credential and a frame name, asks the signer to derive
a proof that reveals only the frame's fields. The credential is never
re-signed.
"""

import logging
from dataclasses import dataclass
from typing import Union

from rxguard.collaborators import Signer, call_collaborator
from rxguard.core.config import EngineConfig
from rxguard.core.exceptions import DisclosureUnsupported, ServiceUnavailable
from rxguard.credentials.models import SignedCredential
from rxguard.credentials.suites import supports_disclosure
from rxguard.disclosure.frames import DisclosureFrameName, apply_frame, parse_frame_name

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class PartialDisclosure:
    """Derived credential plus the subject fields it reveals."""

    credential_id: str
    frame: DisclosureFrameName
    frame_version: str
    revealed: dict
    derived_credential: dict

    @property
    def proof(self) -> dict:
        return self.derived_credential.get("proof", {})

    def to_dict(self) -> dict:
        return {
            "credentialId": self.credential_id,
            "frame": self.frame.value,
            "frameVersion": self.frame_version,
            "revealed": self.revealed,
            "derivedCredential": self.derived_credential,
        }


class DisclosureEngine:
    def __init__(self, signer: Signer, config: EngineConfig):
        self._signer = signer
        self._config = config

    async def derive(
        self,
        credential: SignedCredential,
        frame_name: Union[str, DisclosureFrameName],
    ) -> PartialDisclosure:
        """Derive the named frame's disclosure from a signed credential.

        Revealed values are the frame's projection of the derived subject,
        so the same frame over the same credential always reveals the same
        values even though proof bytes differ between derivations.

        Raises:
            UnknownDisclosureFrame: If the frame name is not in the closed set
            DisclosureUnsupported: If the credential's suite cannot derive
            ServiceUnavailable: If the signer fails
        """
        name = parse_frame_name(frame_name)
        frame = self._config.frame(name)

        if not supports_disclosure(credential.proof_type):
            raise DisclosureUnsupported(
                f"Credential {credential.id} signed with {credential.proof_type}, "
                f"cannot derive {name.value} disclosure"
            )

        derived = await call_collaborator(
            "signer",
            credential.id,
            self._signer.derive(credential.to_dict(), frame.to_jsonld(credential.type)),
            self._config.collaborator_timeout_seconds,
        )
        subject = derived.get("credentialSubject") if isinstance(derived, dict) else None
        if not isinstance(subject, dict):
            raise ServiceUnavailable(
                "signer", credential.id, "Signer returned derived credential without a subject"
            )

        log.debug(f"Derived {name.value} disclosure v{frame.version} for {credential.id}")
        return PartialDisclosure(
            credential_id=credential.id,
            frame=name,
            frame_version=frame.version,
            revealed=apply_frame(subject, frame),
            derived_credential=derived,
        )
