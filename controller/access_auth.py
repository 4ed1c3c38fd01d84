"""
Auth gate.

Two independent verification paths, picked by route class:
- shared secret (CDP shim, internal trigger, raw gateway token): constant-time
  comparison against a configured value;
- signed identity (admin and debug routes): a Cloudflare Access JWT verified
  against the team's published JWKS.

Every check yields an AuthDecision. Rejection reasons are kept for the audit
log only; HTTP callers see a bare 401/403.
"""

import json
import secrets
from dataclasses import dataclass, field
from typing import Optional, Union

import httpx
import jwt
from starlette.requests import HTTPConnection

from audit import audit_log

ACCESS_HEADER = "cf-access-jwt-assertion"
ACCESS_COOKIE = "CF_Authorization"

DEV_IDENTITY = {"email": "dev@localhost", "sub": "dev-mode", "dev_mode": True}


@dataclass(frozen=True)
class Rejected:
    reason: str


@dataclass(frozen=True)
class Anonymous:
    """Passed through unauthenticated; the gateway checks its own token."""


@dataclass(frozen=True)
class DeviceToken:
    device_id: str


@dataclass(frozen=True)
class UserIdentity:
    claims: dict = field(default_factory=dict)

    @property
    def email(self) -> str:
        return self.claims.get("email", "")


AuthDecision = Union[Rejected, Anonymous, DeviceToken, UserIdentity]


def check_shared_secret(supplied: Optional[str], expected: str, device_id: str) -> AuthDecision:
    """Compare a caller-supplied token with the configured secret."""
    if not expected:
        return Rejected("not_configured")
    if not supplied:
        return Rejected("no_token")
    if not secrets.compare_digest(supplied.encode(), expected.encode()):
        return Rejected("bad_token")
    return DeviceToken(device_id)


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if authorization and authorization.startswith("Bearer "):
        return authorization[7:].strip() or None
    return None


class AccessVerifier:
    """Verifies Cloudflare Access JWTs for one team domain and audience."""

    ALGORITHMS = ["RS256"]

    def __init__(self, team_domain: str, audience: str, http_client: Optional[httpx.AsyncClient] = None):
        self.team_domain = team_domain.removeprefix("https://").rstrip("/")
        self.audience = audience
        self.http_client = http_client
        self._keys: dict[str, dict] = {}

    @property
    def issuer(self) -> str:
        return f"https://{self.team_domain}"

    @property
    def jwks_url(self) -> str:
        return f"{self.issuer}/cdn-cgi/access/certs"

    async def _fetch_jwks(self):
        if self.http_client is not None:
            resp = await self.http_client.get(self.jwks_url)
        else:
            async with httpx.AsyncClient(timeout=5.0) as client:
                resp = await client.get(self.jwks_url)
        resp.raise_for_status()
        data = resp.json()
        keys = data.get("keys") if isinstance(data, dict) else None
        if not isinstance(keys, list):
            raise ValueError(f"JWKS at {self.jwks_url} has no key list")
        self._keys = {k["kid"]: k for k in keys if isinstance(k, dict) and k.get("kid")}

    async def _key_for(self, kid: str) -> Optional[dict]:
        if kid not in self._keys:
            # Cache miss: the provider may have rotated keys.
            await self._fetch_jwks()
        return self._keys.get(kid)

    async def verify(self, token: Optional[str]) -> AuthDecision:
        if not token:
            return Rejected("no_token")
        try:
            kid = jwt.get_unverified_header(token).get("kid")
        except jwt.DecodeError:
            return Rejected("bad_signature")
        if not kid:
            return Rejected("unknown_key")

        try:
            key_jwk = await self._key_for(kid)
        except (httpx.HTTPError, ValueError) as e:
            print(f"[auth] JWKS fetch failed: {e}", flush=True)
            return Rejected("jwks_unavailable")
        if key_jwk is None:
            return Rejected("unknown_key")

        try:
            key = jwt.algorithms.RSAAlgorithm.from_jwk(json.dumps(key_jwk))
        except (jwt.InvalidKeyError, ValueError, KeyError, TypeError) as e:
            print(f"[auth] Unusable JWK {kid}: {e}", flush=True)
            return Rejected("invalid_token")
        try:
            claims = jwt.decode(
                token,
                key=key,
                algorithms=self.ALGORITHMS,
                audience=self.audience,
                issuer=self.issuer,
                options={"require": ["exp", "aud"]},
            )
        except jwt.ExpiredSignatureError:
            return Rejected("expired")
        except jwt.InvalidAudienceError:
            return Rejected("wrong_audience")
        except jwt.InvalidSignatureError:
            return Rejected("bad_signature")
        except jwt.InvalidTokenError:
            return Rejected("invalid_token")
        return UserIdentity(claims)


def access_token_from(conn: HTTPConnection) -> Optional[str]:
    return conn.headers.get(ACCESS_HEADER) or conn.cookies.get(ACCESS_COOKIE)


class AuthGate:
    """Applies the right verification path for each route class."""

    def __init__(self, settings, verifier: Optional[AccessVerifier] = None):
        self.settings = settings
        if verifier is None and settings.access_configured:
            verifier = AccessVerifier(settings.cf_access_team_domain, settings.cf_access_aud)
        self.verifier = verifier
        if settings.dev_mode:
            print("[auth] DEV_MODE enabled: Access verification is bypassed", flush=True)
            audit_log("dev_mode_enabled", {"identity": DEV_IDENTITY["email"]})

    def _reject(self, route: str, conn: HTTPConnection, decision: Rejected) -> Rejected:
        audit_log("auth_rejected", {"route": route, "reason": decision.reason, "path": conn.url.path})
        return decision

    async def identity(self, conn: HTTPConnection, route: str = "admin") -> AuthDecision:
        """Signed-identity path for admin and debug routes."""
        if self.settings.dev_mode:
            return UserIdentity(dict(DEV_IDENTITY))
        if self.verifier is None:
            return self._reject(route, conn, Rejected("not_configured"))
        decision = await self.verifier.verify(access_token_from(conn))
        if isinstance(decision, Rejected):
            return self._reject(route, conn, decision)
        return decision

    def cdp(self, conn: HTTPConnection) -> AuthDecision:
        decision = check_shared_secret(conn.query_params.get("secret"), self.settings.cdp_secret, "cdp")
        if isinstance(decision, Rejected):
            return self._reject("cdp", conn, decision)
        return decision

    def internal(self, conn: HTTPConnection) -> AuthDecision:
        supplied = bearer_token(conn.headers.get("authorization"))
        decision = check_shared_secret(supplied, self.settings.internal_api_token, "internal")
        if isinstance(decision, Rejected):
            return self._reject("internal", conn, decision)
        return decision

    async def proxy(self, conn: HTTPConnection) -> AuthDecision:
        """
        Catch-all proxy. Without Access configured the gateway enforces its own
        token, so requests pass through; with Access, either a valid identity
        or the gateway token is accepted.
        """
        if self.settings.dev_mode:
            return UserIdentity(dict(DEV_IDENTITY))
        if self.verifier is None:
            return Anonymous()

        supplied = conn.query_params.get("token") or bearer_token(conn.headers.get("authorization"))
        if supplied and self.settings.gateway_token:
            decision = check_shared_secret(supplied, self.settings.gateway_token, "gateway")
            if isinstance(decision, DeviceToken):
                return decision

        decision = await self.verifier.verify(access_token_from(conn))
        if isinstance(decision, Rejected):
            return self._reject("proxy", conn, decision)
        return decision
