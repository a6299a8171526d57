"""Engine exceptions.

Every error carries a stable ``code`` from :class:`ErrorCode` and a
human-readable ``message``. The HTTP layer maps each subclass to a status
code; the engine itself never catches these.

A denied claim is NOT an error. Errors mean the engine could not evaluate.
"""

from typing import Optional


class ErrorCode:
    """Error code constants."""

    INVALID_CLAIMS = "INVALID_CLAIMS"
    NO_COMPATIBLE_KEY = "NO_COMPATIBLE_KEY"
    DISCLOSURE_UNSUPPORTED = "DISCLOSURE_UNSUPPORTED"
    UNKNOWN_DISCLOSURE_FRAME = "UNKNOWN_DISCLOSURE_FRAME"
    NOT_FOUND = "NOT_FOUND"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    INVALID_CREDENTIAL_STATE = "INVALID_CREDENTIAL_STATE"
    DUPLICATE_DISPENSING = "DUPLICATE_DISPENSING"
    FORBIDDEN = "FORBIDDEN"
    INTERNAL_ERROR = "INTERNAL_ERROR"


# Whether the caller may retry the same request later.
ERROR_RECOVERABILITY: dict[str, bool] = {
    ErrorCode.INVALID_CLAIMS: False,
    ErrorCode.NO_COMPATIBLE_KEY: False,
    ErrorCode.DISCLOSURE_UNSUPPORTED: False,
    ErrorCode.UNKNOWN_DISCLOSURE_FRAME: False,
    ErrorCode.NOT_FOUND: False,
    ErrorCode.SERVICE_UNAVAILABLE: True,
    ErrorCode.INVALID_CREDENTIAL_STATE: False,
    ErrorCode.DUPLICATE_DISPENSING: False,
    ErrorCode.FORBIDDEN: False,
    ErrorCode.INTERNAL_ERROR: False,
}


class RxGuardError(Exception):
    """Base exception for engine operations."""

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(message)

    @property
    def recoverable(self) -> bool:
        return ERROR_RECOVERABILITY.get(self.code, False)


class InvalidClaims(RxGuardError):
    """Required claim fields are missing or malformed.

    Raised before any signer call.
    """

    def __init__(self, fields: list[str], message: Optional[str] = None):
        self.fields = list(fields)
        super().__init__(
            ErrorCode.INVALID_CLAIMS,
            message or f"Missing or invalid claim fields: {', '.join(self.fields)}",
        )


class NoCompatibleKey(RxGuardError):
    """No key in the caller's key set matches the identity document."""

    def __init__(self, document_types: list[str], available_key_ids: list[str]):
        self.document_types = list(document_types)
        self.available_key_ids = list(available_key_ids)
        super().__init__(
            ErrorCode.NO_COMPATIBLE_KEY,
            f"No compatible signing key: document exposes {self.document_types}, "
            f"available keys {self.available_key_ids}",
        )


class DisclosureUnsupported(RxGuardError):
    """The credential was signed with a suite that cannot derive partial disclosures."""

    def __init__(self, message: str = "Credential suite does not support selective disclosure"):
        super().__init__(ErrorCode.DISCLOSURE_UNSUPPORTED, message)


class UnknownDisclosureFrame(RxGuardError):
    """A disclosure frame tag outside the closed set was requested."""

    def __init__(self, frame: str):
        self.frame = frame
        super().__init__(
            ErrorCode.UNKNOWN_DISCLOSURE_FRAME,
            f"Unknown disclosure frame: {frame!r}",
        )


class NotFound(RxGuardError):
    """A referenced credential does not exist."""

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(ErrorCode.NOT_FOUND, f"{kind} not found: {identifier}")


class ServiceUnavailable(RxGuardError):
    """A collaborator (signer, resolver, store, registry) failed or timed out."""

    def __init__(self, collaborator: str, target: str, message: Optional[str] = None):
        self.collaborator = collaborator
        self.target = target
        super().__init__(
            ErrorCode.SERVICE_UNAVAILABLE,
            message or f"{collaborator} unavailable while processing {target}",
        )


class InvalidCredentialState(RxGuardError):
    """The requested lifecycle transition is not allowed."""

    def __init__(self, credential_id: str, current: str, requested: str):
        self.credential_id = credential_id
        self.current = current
        self.requested = requested
        super().__init__(
            ErrorCode.INVALID_CREDENTIAL_STATE,
            f"Credential {credential_id} cannot move from {current} to {requested}",
        )


class DuplicateDispensing(RxGuardError):
    """A dispensing credential already exists for the prescription."""

    def __init__(self, prescription_id: str, existing_id: str):
        self.prescription_id = prescription_id
        self.existing_id = existing_id
        super().__init__(
            ErrorCode.DUPLICATE_DISPENSING,
            f"Prescription {prescription_id} already dispensed by {existing_id}",
        )


class Forbidden(RxGuardError):
    """The caller is not allowed to perform the operation."""

    def __init__(self, message: str = "Operation not permitted"):
        super().__init__(ErrorCode.FORBIDDEN, message)
