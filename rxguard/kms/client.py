"""HTTP clients for the remote KMS and the identity resolver.

The KMS holds the private keys and performs BBS+ / secp256k1 signing and
BBS+ proof derivation. These clients only move JSON; transport failures map
to ``ServiceUnavailable`` so the engine can report which collaborator failed.
"""

import logging
from typing import Any, Optional
from urllib.parse import quote

import httpx

from rxguard.collaborators import IdentityResolver, Signer
from rxguard.core.exceptions import (
    DisclosureUnsupported,
    ErrorCode,
    NotFound,
    RxGuardError,
    ServiceUnavailable,
)
from rxguard.credentials.models import IdentityDocument, SigningKey

log = logging.getLogger(__name__)


class RemoteKMSClient(Signer):
    """Signer backed by a KMS HTTP API.

    Endpoints::

        GET  /keys    -> {"keys": [{"keyId", "suite", "publicKeyJwk"}]}
        POST /sign    {"credential", "verificationMethod", "suite"} -> {"credential"}
        POST /derive  {"credential", "frame"} -> {"credential"}
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not base_url:
            raise ValueError("KMS base URL is required")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url, timeout=self.timeout, transport=self._transport
        )

    async def _request(self, method: str, path: str, target: str, json: Any = None) -> dict:
        try:
            async with self._client() as client:
                response = await client.request(method, path, json=json)
        except httpx.TimeoutException:
            raise ServiceUnavailable("signer", target, f"KMS timeout after {self.timeout}s")
        except httpx.RequestError as e:
            raise ServiceUnavailable("signer", target, f"KMS network error: {e}")

        if response.status_code >= 500:
            raise ServiceUnavailable(
                "signer", target, f"KMS returned HTTP {response.status_code}"
            )
        try:
            body = response.json()
        except ValueError:
            raise ServiceUnavailable("signer", target, "KMS returned non-JSON response")

        if response.status_code >= 400:
            code = body.get("code") if isinstance(body, dict) else None
            message = body.get("message", "") if isinstance(body, dict) else ""
            if code == ErrorCode.DISCLOSURE_UNSUPPORTED:
                raise DisclosureUnsupported(message or "KMS cannot derive from this credential")
            raise RxGuardError(
                ErrorCode.INTERNAL_ERROR,
                f"KMS rejected {method} {path} with HTTP {response.status_code}: {message}",
            )
        if not isinstance(body, dict):
            raise ServiceUnavailable("signer", target, "KMS returned unexpected payload")
        return body

    async def list_keys(self) -> list[SigningKey]:
        body = await self._request("GET", "/keys", "keys")
        keys = []
        for item in body.get("keys", []):
            if not isinstance(item, dict) or "keyId" not in item or "suite" not in item:
                log.warning(f"Ignoring malformed KMS key entry: {item!r}")
                continue
            keys.append(
                SigningKey(
                    key_id=item["keyId"],
                    suite=item["suite"],
                    public_key_jwk=item.get("publicKeyJwk") or {},
                )
            )
        return keys

    async def sign(self, credential: dict, verification_method_id: str, suite: str) -> dict:
        body = await self._request(
            "POST",
            "/sign",
            credential.get("id", "credential"),
            json={
                "credential": credential,
                "verificationMethod": verification_method_id,
                "suite": suite,
            },
        )
        return body.get("credential", {})

    async def derive(self, credential: dict, frame: dict) -> dict:
        body = await self._request(
            "POST",
            "/derive",
            credential.get("id", "credential"),
            json={"credential": credential, "frame": frame},
        )
        return body.get("credential", {})


class HttpIdentityResolver(IdentityResolver):
    """Resolves identity documents from a universal-resolver style endpoint."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not base_url:
            raise ValueError("Resolver base URL is required")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def resolve(self, identity: str) -> IdentityDocument:
        """Fetch and parse the identity document.

        Raises:
            NotFound: If the resolver does not know the identity
            ServiceUnavailable: On network failure or an unusable response
        """
        url = f"{self.base_url}/identifiers/{quote(identity, safe=':')}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(url, headers={"Accept": "application/did+ld+json, application/json"})
        except httpx.TimeoutException:
            raise ServiceUnavailable("identity_resolver", identity, f"Resolver timeout after {self.timeout}s")
        except httpx.RequestError as e:
            raise ServiceUnavailable("identity_resolver", identity, f"Resolver network error: {e}")

        if response.status_code == 404:
            raise NotFound("identity", identity)
        if response.status_code != 200:
            raise ServiceUnavailable(
                "identity_resolver", identity, f"Resolver returned HTTP {response.status_code}"
            )

        try:
            body = response.json()
            document = body.get("didDocument", body) if isinstance(body, dict) else body
            return IdentityDocument.from_dict(document)
        except ValueError as e:
            raise ServiceUnavailable("identity_resolver", identity, f"Invalid identity document: {e}")
