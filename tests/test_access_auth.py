"""Tests for the auth gate: Cloudflare Access JWTs and shared secrets."""

import json
import time

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from starlette.requests import Request

import audit
from access_auth import (
    AccessVerifier,
    Anonymous,
    AuthGate,
    DeviceToken,
    Rejected,
    UserIdentity,
    check_shared_secret,
)
from settings import load_settings

TEAM = "myteam.cloudflareaccess.com"
AUD = "aud-tag-123"


@pytest.fixture(scope="module")
def signing_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def jwks_calls():
    return []


@pytest.fixture
def verifier(signing_key, jwks_calls) -> AccessVerifier:
    jwk = json.loads(jwt.algorithms.RSAAlgorithm.to_jwk(signing_key.public_key()))
    jwk["kid"] = "key-1"

    def handler(request: httpx.Request) -> httpx.Response:
        jwks_calls.append(str(request.url))
        return httpx.Response(200, json={"keys": [jwk]})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AccessVerifier(TEAM, AUD, http_client=client)


def make_token(key, kid="key-1", **overrides) -> str:
    claims = {
        "email": "alice@example.com",
        "sub": "user-1",
        "aud": [AUD],
        "iss": f"https://{TEAM}",
        "exp": int(time.time()) + 300,
        "iat": int(time.time()),
    }
    claims.update(overrides)
    return jwt.encode(claims, key, algorithm="RS256", headers={"kid": kid})


def make_request(path="/api/admin/devices", query=b"", headers=None) -> Request:
    return Request({
        "type": "http",
        "method": "GET",
        "scheme": "https",
        "server": ("moltbot.example.com", 443),
        "path": path,
        "query_string": query,
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
    })


class TestSharedSecret:
    def test_match(self):
        assert check_shared_secret("s3cret", "s3cret", "cdp") == DeviceToken("cdp")

    def test_mismatch_and_missing(self):
        assert check_shared_secret("nope", "s3cret", "cdp") == Rejected("bad_token")
        assert check_shared_secret(None, "s3cret", "cdp") == Rejected("no_token")

    def test_unconfigured_secret_rejects_everything(self):
        assert check_shared_secret("", "", "cdp") == Rejected("not_configured")
        assert check_shared_secret("anything", "", "cdp") == Rejected("not_configured")


class TestAccessVerifier:
    """JWT checks against the team JWKS."""

    @pytest.mark.asyncio
    async def test_valid_token(self, verifier, signing_key, jwks_calls):
        decision = await verifier.verify(make_token(signing_key))
        assert isinstance(decision, UserIdentity)
        assert decision.email == "alice@example.com"
        assert jwks_calls == [f"https://{TEAM}/cdn-cgi/access/certs"]

    @pytest.mark.asyncio
    async def test_keys_are_cached(self, verifier, signing_key, jwks_calls):
        await verifier.verify(make_token(signing_key))
        await verifier.verify(make_token(signing_key))
        assert len(jwks_calls) == 1

    @pytest.mark.asyncio
    async def test_wrong_audience(self, verifier, signing_key):
        decision = await verifier.verify(make_token(signing_key, aud=["someone-else"]))
        assert decision == Rejected("wrong_audience")

    @pytest.mark.asyncio
    async def test_expired(self, verifier, signing_key):
        decision = await verifier.verify(make_token(signing_key, exp=int(time.time()) - 600))
        assert decision == Rejected("expired")

    @pytest.mark.asyncio
    async def test_wrong_issuer(self, verifier, signing_key):
        decision = await verifier.verify(make_token(signing_key, iss="https://evil.example.com"))
        assert decision == Rejected("invalid_token")

    @pytest.mark.asyncio
    async def test_signed_by_another_key(self, verifier):
        other = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        decision = await verifier.verify(make_token(other))
        assert decision == Rejected("bad_signature")

    @pytest.mark.asyncio
    async def test_unknown_kid_refetches_then_rejects(self, verifier, signing_key, jwks_calls):
        decision = await verifier.verify(make_token(signing_key, kid="rotated"))
        assert decision == Rejected("unknown_key")
        assert len(jwks_calls) == 1

    @pytest.mark.asyncio
    async def test_garbage_and_missing(self, verifier):
        assert await verifier.verify("not.a.jwt") == Rejected("bad_signature")
        assert await verifier.verify(None) == Rejected("no_token")

    @pytest.mark.asyncio
    async def test_jwks_unavailable(self, signing_key):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(503)))
        verifier = AccessVerifier(TEAM, AUD, http_client=client)
        assert await verifier.verify(make_token(signing_key)) == Rejected("jwks_unavailable")

    @pytest.mark.asyncio
    async def test_jwks_not_json(self, signing_key):
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda r: httpx.Response(200, text="<html>login</html>"))
        )
        verifier = AccessVerifier(TEAM, AUD, http_client=client)
        assert await verifier.verify(make_token(signing_key)) == Rejected("jwks_unavailable")

    @pytest.mark.asyncio
    async def test_malformed_jwk(self, signing_key):
        broken = {"kid": "key-1", "kty": "RSA", "n": "x"}
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda r: httpx.Response(200, json={"keys": [broken]}))
        )
        verifier = AccessVerifier(TEAM, AUD, http_client=client)
        assert await verifier.verify(make_token(signing_key)) == Rejected("invalid_token")


class TestAuthGate:
    @pytest.fixture
    def gate_settings(self, env):
        env.update({"CF_ACCESS_TEAM_DOMAIN": TEAM, "CF_ACCESS_AUD": AUD})
        return load_settings(env)

    @pytest.mark.asyncio
    async def test_admin_identity_from_header(self, gate_settings, verifier, signing_key):
        gate = AuthGate(gate_settings, verifier=verifier)
        request = make_request(headers={"CF-Access-JWT-Assertion": make_token(signing_key)})
        decision = await gate.identity(request)
        assert isinstance(decision, UserIdentity)

    @pytest.mark.asyncio
    async def test_admin_identity_from_cookie(self, gate_settings, verifier, signing_key):
        gate = AuthGate(gate_settings, verifier=verifier)
        request = make_request(headers={"Cookie": f"CF_Authorization={make_token(signing_key)}"})
        assert isinstance(await gate.identity(request), UserIdentity)

    @pytest.mark.asyncio
    async def test_rejection_is_audited(self, gate_settings, verifier):
        gate = AuthGate(gate_settings, verifier=verifier)
        decision = await gate.identity(make_request())
        assert decision == Rejected("no_token")
        entry = audit.read_audit_log(event="auth_rejected")[0]
        assert entry["reason"] == "no_token"
        assert entry["route"] == "admin"

    @pytest.mark.asyncio
    async def test_admin_without_access_fails_closed(self, settings):
        gate = AuthGate(settings)
        assert await gate.identity(make_request()) == Rejected("not_configured")

    @pytest.mark.asyncio
    async def test_dev_mode_bypass(self, env):
        env["DEV_MODE"] = "true"
        gate = AuthGate(load_settings(env))
        decision = await gate.identity(make_request())
        assert isinstance(decision, UserIdentity)
        assert decision.claims["dev_mode"] is True
        assert audit.read_audit_log(event="dev_mode_enabled")

    def test_cdp_secret_in_query(self, settings):
        gate = AuthGate(settings)
        assert gate.cdp(make_request("/cdp", query=b"secret=cdp-secret")) == DeviceToken("cdp")
        assert gate.cdp(make_request("/cdp", query=b"secret=wrong")) == Rejected("bad_token")

    def test_internal_bearer(self, settings):
        gate = AuthGate(settings)
        ok = make_request("/internal/storage/sync", headers={"Authorization": "Bearer internal-token"})
        assert gate.internal(ok) == DeviceToken("internal")
        assert gate.internal(make_request("/internal/storage/sync")) == Rejected("no_token")

    @pytest.mark.asyncio
    async def test_proxy_without_access_passes_through(self, settings):
        gate = AuthGate(settings)
        assert await gate.proxy(make_request("/")) == Anonymous()

    @pytest.mark.asyncio
    async def test_proxy_accepts_gateway_token(self, gate_settings, verifier):
        gate = AuthGate(gate_settings, verifier=verifier)
        decision = await gate.proxy(make_request("/", query=b"token=gw-token"))
        assert decision == DeviceToken("gateway")

    @pytest.mark.asyncio
    async def test_proxy_wrong_token_falls_back_to_access(self, gate_settings, verifier):
        gate = AuthGate(gate_settings, verifier=verifier)
        decision = await gate.proxy(make_request("/", query=b"token=wrong"))
        assert decision == Rejected("no_token")
