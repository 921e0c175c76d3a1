"""
herald_identity.py — Principals, access tokens and bearer verification.

Access tokens are HS256 JWTs minted by TokenIssuer and validated without any
store lookup (signature + expiry). A bearer that is not one of ours is tried
as a federated identity token (OIDC, RS256 via JWKS); the first time a
federated subject is seen a Principal is created for it.

CredentialVerifier collapses every failure into one generic message so the
caller cannot tell which path came close to succeeding.
"""

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

import jwt

from herald_config import PrincipalSeed
from herald_errors import Failure, authentication_failed

logger = logging.getLogger("herald-identity")

JWT_ALGORITHM = "HS256"
FEDERATED_ALGORITHMS = ["RS256"]


# ---------------------------------------------------------------------------
# Principals
# ---------------------------------------------------------------------------

@dataclass
class Principal:
    id: str
    email: str = ""
    display_name: str = ""
    photo_url: str = ""
    tier: str = "free"
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def summary(self) -> dict[str, str]:
        return {"id": self.id, "email": self.email, "tier": self.tier}


@dataclass
class FederatedIdentity:
    subject: str
    email: str = ""
    name: str = ""
    picture: str = ""


class PrincipalStore(Protocol):
    async def get(self, principal_id: str) -> Principal | None: ...

    async def get_or_create(self, identity: FederatedIdentity) -> Principal: ...


class MemoryPrincipalStore:
    """In-process PrincipalStore. The federated subject is the principal id."""

    def __init__(self, seeds: list[PrincipalSeed] | None = None):
        self.principals: dict[str, Principal] = {}
        self._lock = asyncio.Lock()
        for seed in seeds or []:
            self.principals[seed.id] = Principal(
                id=seed.id, email=seed.email,
                display_name=seed.display_name, tier=seed.tier,
            )

    async def get(self, principal_id: str) -> Principal | None:
        return self.principals.get(principal_id)

    async def get_or_create(self, identity: FederatedIdentity) -> Principal:
        async with self._lock:
            principal = self.principals.get(identity.subject)
            if principal is None:
                principal = Principal(
                    id=identity.subject,
                    email=identity.email,
                    display_name=identity.name,
                    photo_url=identity.picture,
                )
                self.principals[principal.id] = principal
                logger.info("principal created: %s", principal.id)
            return principal


# ---------------------------------------------------------------------------
# Access tokens
# ---------------------------------------------------------------------------

class TokenIssuer:
    def __init__(self, signing_secret: str, issuer_url: str, ttl: int):
        if not signing_secret:
            raise ValueError("a signing secret is required to issue access tokens")
        self._secret = signing_secret
        self.issuer_url = issuer_url.rstrip("/")
        self.ttl = ttl

    def issue(self, principal_id: str, scope: str = "") -> tuple[str, int]:
        now = int(time.time())
        payload = {
            "sub": principal_id,
            "iss": self.issuer_url,
            "iat": now,
            "exp": now + self.ttl,
            "jti": secrets.token_hex(16),
        }
        if scope:
            payload["scope"] = scope
        return jwt.encode(payload, self._secret, algorithm=JWT_ALGORITHM), self.ttl

    def decode(self, token: str) -> dict[str, Any]:
        """Verify signature, issuer and expiry. Raises jwt.InvalidTokenError."""
        return jwt.decode(
            token,
            self._secret,
            algorithms=[JWT_ALGORITHM],
            issuer=self.issuer_url,
            options={"require": ["sub", "exp", "iss", "jti"]},
        )


# ---------------------------------------------------------------------------
# Federated identity tokens
# ---------------------------------------------------------------------------

class FederatedTokenError(Exception):
    pass


class FederatedVerifier(Protocol):
    async def verify(self, token: str) -> FederatedIdentity: ...


class OIDCTokenVerifier:
    """Verify identity tokens from an OIDC provider (e.g. Firebase Auth).

    The token must carry a signature that checks out against the provider's
    JWKS; a bare identifier is never accepted in its place.
    """

    def __init__(self, issuer: str, audience: str, jwks_url: str):
        self.issuer = issuer
        self.audience = audience
        self._jwks = jwt.PyJWKClient(jwks_url, cache_keys=True)

    def _verify_sync(self, token: str) -> dict[str, Any]:
        signing_key = self._jwks.get_signing_key_from_jwt(token)
        return jwt.decode(
            token,
            signing_key.key,
            algorithms=FEDERATED_ALGORITHMS,
            audience=self.audience,
            issuer=self.issuer,
            options={"require": ["sub", "exp", "iss", "aud"]},
        )

    async def verify(self, token: str) -> FederatedIdentity:
        try:
            claims = await asyncio.to_thread(self._verify_sync, token)
        except jwt.PyJWTError as e:
            raise FederatedTokenError(str(e)) from e
        return FederatedIdentity(
            subject=claims["sub"],
            email=claims.get("email", ""),
            name=claims.get("name", ""),
            picture=claims.get("picture", ""),
        )


class DisabledFederatedVerifier:
    """Used when no identity provider is configured: rejects everything."""

    async def verify(self, token: str) -> FederatedIdentity:
        raise FederatedTokenError("federated identity verification is not configured")


# ---------------------------------------------------------------------------
# Bearer verification
# ---------------------------------------------------------------------------

def parse_bearer(header: str | None) -> str | None:
    if not header or not header.lower().startswith("bearer "):
        return None
    token = header[7:].strip()
    return token or None


class CredentialVerifier:
    def __init__(self, issuer: TokenIssuer, federated: FederatedVerifier,
                 principals: PrincipalStore):
        self.issuer = issuer
        self.federated = federated
        self.principals = principals

    async def resolve_federated(self, token: str) -> Principal | Failure:
        try:
            identity = await self.federated.verify(token)
        except FederatedTokenError as e:
            return authentication_failed(f"federated token rejected: {e}")
        return await self.principals.get_or_create(identity)

    async def verify(self, bearer: str | None) -> Principal | Failure:
        if not bearer:
            return authentication_failed("no bearer token")

        try:
            claims = self.issuer.decode(bearer)
        except jwt.InvalidTokenError as e:
            logger.debug("local token rejected (%s), trying federated", e)
        else:
            principal = await self.principals.get(claims["sub"])
            if principal is None:
                return authentication_failed("principal not found")
            return principal

        result = await self.resolve_federated(bearer)
        if isinstance(result, Failure):
            logger.info("bearer rejected on both paths: %s", result.reason)
        return result
