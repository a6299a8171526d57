"""Tests for the remote KMS and identity resolver HTTP clients."""

import json

import httpx
import pytest

from rxguard.core.exceptions import DisclosureUnsupported, NotFound, RxGuardError, ServiceUnavailable
from rxguard.kms.client import HttpIdentityResolver, RemoteKMSClient

from tests.conftest import BBS_JWK, DOCTOR, make_document

KMS_URL = "http://kms.test"
RESOLVER_URL = "http://resolver.test/1.0"


def kms(handler) -> RemoteKMSClient:
    return RemoteKMSClient(KMS_URL, timeout=1.0, transport=httpx.MockTransport(handler))


def resolver(handler) -> HttpIdentityResolver:
    return HttpIdentityResolver(RESOLVER_URL, timeout=1.0, transport=httpx.MockTransport(handler))


class TestRemoteKMSClient:
    @pytest.mark.asyncio
    async def test_list_keys(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "GET"
            assert request.url.path == "/keys"
            return httpx.Response(200, json={"keys": [
                {"keyId": "k-bbs", "suite": "bbsbls2020", "publicKeyJwk": BBS_JWK},
                {"suite": "es256k"},
            ]})

        keys = await kms(handler).list_keys()

        assert [k.key_id for k in keys] == ["k-bbs"]
        assert keys[0].public_key_jwk == BBS_JWK

    @pytest.mark.asyncio
    async def test_sign_posts_credential(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            seen.update(body)
            signed = dict(body["credential"], proof={"type": "BbsBlsSignature2020"})
            return httpx.Response(200, json={"credential": signed})

        signed = await kms(handler).sign({"id": "urn:1"}, f"{DOCTOR}#bbs-1", "bbsbls2020")

        assert seen["verificationMethod"] == f"{DOCTOR}#bbs-1"
        assert seen["suite"] == "bbsbls2020"
        assert signed["proof"]["type"] == "BbsBlsSignature2020"

    @pytest.mark.asyncio
    async def test_derive_unsupported(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(422, json={"code": "DISCLOSURE_UNSUPPORTED", "message": "not BBS"})

        with pytest.raises(DisclosureUnsupported, match="not BBS"):
            await kms(handler).derive({"id": "urn:1"}, {})

    @pytest.mark.asyncio
    async def test_client_error_is_not_retriable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"message": "bad suite"})

        with pytest.raises(RxGuardError) as exc_info:
            await kms(handler).sign({"id": "urn:1"}, "vm", "nope")
        assert not isinstance(exc_info.value, ServiceUnavailable)
        assert exc_info.value.code == "INTERNAL_ERROR"
        assert exc_info.value.recoverable is False

    @pytest.mark.asyncio
    async def test_server_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, text="down")

        with pytest.raises(ServiceUnavailable) as exc_info:
            await kms(handler).sign({"id": "urn:1"}, "vm", "bbsbls2020")
        assert exc_info.value.collaborator == "signer"
        assert exc_info.value.target == "urn:1"

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("slow", request=request)

        with pytest.raises(ServiceUnavailable, match="timeout"):
            await kms(handler).list_keys()

    @pytest.mark.asyncio
    async def test_network_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(ServiceUnavailable, match="network error"):
            await kms(handler).list_keys()

    def test_requires_url(self):
        with pytest.raises(ValueError):
            RemoteKMSClient("")


class TestHttpIdentityResolver:
    @pytest.mark.asyncio
    async def test_resolve_wrapped_document(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == f"/1.0/identifiers/{DOCTOR}"
            return httpx.Response(200, json={"didDocument": make_document(DOCTOR)})

        doc = await resolver(handler).resolve(DOCTOR)

        assert doc.id == DOCTOR
        assert doc.method_types == ["Bls12381G2Key2020", "EcdsaSecp256k1VerificationKey2019"]

    @pytest.mark.asyncio
    async def test_resolve_bare_document(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=make_document(DOCTOR, bbs=False))

        doc = await resolver(handler).resolve(DOCTOR)
        assert doc.method_types == ["EcdsaSecp256k1VerificationKey2019"]

    @pytest.mark.asyncio
    async def test_unknown_identity(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404)

        with pytest.raises(NotFound):
            await resolver(handler).resolve(DOCTOR)

    @pytest.mark.asyncio
    async def test_invalid_document(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"verificationMethod": []})

        with pytest.raises(ServiceUnavailable, match="Invalid identity document"):
            await resolver(handler).resolve(DOCTOR)

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(ServiceUnavailable) as exc_info:
            await resolver(handler).resolve(DOCTOR)
        assert exc_info.value.collaborator == "identity_resolver"
