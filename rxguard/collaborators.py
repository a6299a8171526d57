"""Collaborator interfaces consumed by the engine.

Implementations live in ``rxguard.kms`` (remote signer and resolver) and
``rxguard.store`` (in-memory store and registry). The engine only talks to
these ABCs, and every call goes through :func:`call_collaborator` so that
transport failures and timeouts surface as ``ServiceUnavailable``.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Optional, TypeVar

from rxguard.core.exceptions import RxGuardError, ServiceUnavailable
from rxguard.credentials.models import (
    CredentialRecord,
    IdentityDocument,
    PrescriptionState,
    SigningKey,
)

T = TypeVar("T")


async def call_collaborator(
    collaborator: str,
    target: str,
    awaitable: Awaitable[T],
    timeout: Optional[float] = None,
) -> T:
    """Await a collaborator call, mapping transport failures.

    Engine errors raised by the collaborator pass through unchanged.

    Raises:
        ServiceUnavailable: On timeout, connection or OS-level failure
    """
    try:
        if timeout:
            return await asyncio.wait_for(awaitable, timeout)
        return await awaitable
    except RxGuardError:
        raise
    except (asyncio.TimeoutError, TimeoutError) as e:
        raise ServiceUnavailable(
            collaborator, target, f"{collaborator} timed out after {timeout}s for {target}"
        ) from e
    except (ConnectionError, OSError) as e:
        raise ServiceUnavailable(
            collaborator, target, f"{collaborator} failed for {target}: {e}"
        ) from e


class Signer(ABC):
    """External signer/KMS. Holds the private keys; the engine never does."""

    @abstractmethod
    async def list_keys(self) -> list[SigningKey]:
        ...

    @abstractmethod
    async def sign(self, credential: dict, verification_method_id: str, suite: str) -> dict:
        """Return the credential with a ``proof`` attached."""
        ...

    @abstractmethod
    async def derive(self, credential: dict, frame: dict) -> dict:
        """Return a derived credential revealing only what the JSON-LD frame selects."""
        ...


class IdentityResolver(ABC):
    @abstractmethod
    async def resolve(self, identity: str) -> IdentityDocument:
        ...


class CredentialStore(ABC):
    """Persistence for signed credentials and their external state.

    ``put`` and ``put_with_transition`` must reject a second dispensing
    credential for the same prescription id with ``DuplicateDispensing``.
    """

    @abstractmethod
    async def get(self, credential_id: str) -> Optional[CredentialRecord]:
        ...

    @abstractmethod
    async def put(self, record: CredentialRecord) -> None:
        ...

    @abstractmethod
    async def update_state(self, credential_id: str, state: PrescriptionState) -> CredentialRecord:
        ...

    @abstractmethod
    async def put_with_transition(
        self,
        record: CredentialRecord,
        prescription_credential_id: str,
        state: PrescriptionState,
    ) -> CredentialRecord:
        """Store a record and move its prescription to ``state`` atomically.

        Either both writes happen or neither does.
        """
        ...

    @abstractmethod
    async def find_dispensing(self, prescription_credential_id: str) -> Optional[CredentialRecord]:
        ...

    @abstractmethod
    async def find_confirmation(self, dispensing_credential_id: str) -> Optional[CredentialRecord]:
        ...

    @abstractmethod
    async def add_verification(self, record: Any) -> None:
        ...

    @abstractmethod
    async def list_verifications(self) -> list[Any]:
        ...


class ActorRegistry(ABC):
    @abstractmethod
    async def is_authorized(self, identity: str, role: str) -> bool:
        ...

    @abstractmethod
    async def verify_audit_token(self, auditor_id: str, token: str) -> bool:
        ...


class AuditLogSink(ABC):
    """Append-only sink. Returns the entry as sealed into the log."""

    @abstractmethod
    async def append(self, entry: Any) -> Any:
        ...
