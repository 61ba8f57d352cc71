"""Bearer credential verification against the identity provider.

Tokens are verified by signature, either with the legacy shared HS256 secret
or with the provider's published key set (JWKS). When the key set cannot be
fetched at all, verification may fall back to checking the unverified claims
(issuer, audience, expiry, subject). That path trades strictness for
availability, so the resulting identity is flagged ``claims_only`` and the
event is logged; an invalid signature never falls back.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from jose import ExpiredSignatureError, JWTError, jwt

logger = logging.getLogger(__name__)

ASYMMETRIC_ALGORITHMS = ("ES256", "ES384", "RS256", "RS384", "RS512")
DEFAULT_ALGORITHM = "ES256"


class VerificationMethod(str, Enum):
    SIGNATURE = "signature"
    CLAIMS_ONLY = "claims_only"


class InvalidCredentialError(ValueError):
    """The credential is malformed, expired, or fails verification."""


class KeySetUnavailableError(RuntimeError):
    """The published key set could not be retrieved."""


@dataclass(frozen=True)
class VerifiedIdentity:
    subject: str
    method: VerificationMethod
    claims: Dict[str, Any] = field(default_factory=dict)
    email: Optional[str] = None
    expires_at: Optional[int] = None

    @property
    def verified_by_signature(self) -> bool:
        return self.method is VerificationMethod.SIGNATURE


KeySetFetcher = Callable[[str], Awaitable[Dict[str, Any]]]


class JwksCache:
    """Key-set cache with an explicit TTL; one instance per verifier."""

    def __init__(
        self,
        url: str,
        ttl_seconds: int = 3600,
        *,
        fetcher: Optional[KeySetFetcher] = None,
        clock: Callable[[], float] = time.monotonic,
        timeout_seconds: float = 5.0,
    ):
        self.url = url
        self.ttl_seconds = max(int(ttl_seconds), 0)
        self._fetcher = fetcher or self._fetch_over_http
        self._clock = clock
        self._timeout_seconds = timeout_seconds
        self._keys: Optional[List[Dict[str, Any]]] = None
        self._expires_at = 0.0

    async def _fetch_over_http(self, url: str) -> Dict[str, Any]:
        async with httpx.AsyncClient(timeout=self._timeout_seconds) as client:
            response = await client.get(url, headers={"Accept": "application/json"})
            response.raise_for_status()
            return response.json()

    def invalidate(self) -> None:
        self._keys = None
        self._expires_at = 0.0

    async def get_keys(self) -> List[Dict[str, Any]]:
        now = self._clock()
        if self._keys is not None and now < self._expires_at:
            return self._keys
        if not self.url:
            raise KeySetUnavailableError("JWKS URL is not configured")

        try:
            payload = await self._fetcher(self.url)
        except (httpx.HTTPError, ValueError) as exc:
            raise KeySetUnavailableError(f"JWKS fetch failed: {exc}") from exc

        keys = payload.get("keys") if isinstance(payload, dict) else None
        if not isinstance(keys, list):
            raise KeySetUnavailableError("JWKS response has no key list")

        self._keys = [key for key in keys if isinstance(key, dict)]
        self._expires_at = now + self.ttl_seconds
        return self._keys

    async def find_key(self, kid: str) -> Optional[Dict[str, Any]]:
        """Return the JWK for ``kid``, refreshing once to pick up rotated keys."""
        keys = await self.get_keys()
        match = next((key for key in keys if key.get("kid") == kid), None)
        if match is not None:
            return match
        self.invalidate()
        keys = await self.get_keys()
        return next((key for key in keys if key.get("kid") == kid), None)


class TokenVerifier:
    def __init__(
        self,
        *,
        jwks_cache: Optional[JwksCache] = None,
        hs256_secret: str = "",
        issuer: str = "",
        audience: str = "",
        allow_claims_only_fallback: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self.jwks_cache = jwks_cache
        self.hs256_secret = hs256_secret or ""
        self.issuer = issuer or ""
        self.audience = audience or ""
        self.allow_claims_only_fallback = allow_claims_only_fallback
        self._clock = clock

    async def verify(self, token: str) -> VerifiedIdentity:
        """Verify ``token`` and return the caller identity.

        Raises InvalidCredentialError for bad credentials and
        KeySetUnavailableError when the key set is unreachable and the
        claims-only fallback is disabled.
        """
        token = str(token or "").strip()
        if not token:
            raise InvalidCredentialError("Missing bearer credential.")

        try:
            header = jwt.get_unverified_header(token)
            claims = jwt.get_unverified_claims(token)
        except JWTError as exc:
            raise InvalidCredentialError("Malformed bearer credential.") from exc

        self._check_expiry(claims)

        algorithm = str(header.get("alg") or DEFAULT_ALGORITHM)
        if algorithm == "HS256":
            if not self.hs256_secret:
                raise InvalidCredentialError("HS256 credentials are not accepted.")
            payload = self._decode(token, self.hs256_secret, algorithm)
            return self._identity(payload, VerificationMethod.SIGNATURE)

        if algorithm not in ASYMMETRIC_ALGORITHMS:
            raise InvalidCredentialError(f"Unsupported credential algorithm {algorithm}.")

        kid = str(header.get("kid") or "").strip()
        if not kid:
            raise InvalidCredentialError("Credential header is missing kid.")

        if self.jwks_cache is None:
            raise InvalidCredentialError(f"No key set is configured for {algorithm} credentials.")

        try:
            key = await self.jwks_cache.find_key(kid)
        except KeySetUnavailableError as exc:
            if not self.allow_claims_only_fallback:
                raise
            return self._verify_claims_only(claims, reason=str(exc))

        if key is None:
            raise InvalidCredentialError(f"No published key matches kid {kid}.")

        payload = self._decode(token, key, algorithm)
        return self._identity(payload, VerificationMethod.SIGNATURE)

    def _check_expiry(self, claims: Dict[str, Any]) -> None:
        exp = claims.get("exp")
        if exp is None:
            raise InvalidCredentialError("Credential has no expiry.")
        try:
            expires_at = int(exp)
        except (TypeError, ValueError) as exc:
            raise InvalidCredentialError("Credential expiry is malformed.") from exc
        if expires_at <= int(self._clock()):
            raise InvalidCredentialError("Credential has expired.")

    def _decode(self, token: str, key: Any, algorithm: str) -> Dict[str, Any]:
        try:
            return jwt.decode(
                token,
                key,
                algorithms=[algorithm],
                audience=self.audience or None,
                issuer=self.issuer or None,
                options={"verify_aud": bool(self.audience), "require_exp": True},
            )
        except ExpiredSignatureError as exc:
            raise InvalidCredentialError("Credential has expired.") from exc
        except JWTError as exc:
            raise InvalidCredentialError(f"Credential verification failed: {exc}") from exc

    def _verify_claims_only(self, claims: Dict[str, Any], *, reason: str) -> VerifiedIdentity:
        issuer = str(claims.get("iss") or "")
        if self.issuer and issuer != self.issuer:
            raise InvalidCredentialError("Invalid credential issuer.")
        if not issuer:
            raise InvalidCredentialError("Credential has no issuer.")
        if self.audience:
            audience = claims.get("aud")
            audiences = [audience] if isinstance(audience, str) else list(audience or [])
            if self.audience not in audiences:
                raise InvalidCredentialError("Invalid credential audience.")

        identity = self._identity(claims, VerificationMethod.CLAIMS_ONLY)
        logger.warning(
            "Credential for subject %s accepted on claims only (signature NOT verified): %s",
            identity.subject,
            reason,
        )
        return identity

    @staticmethod
    def _identity(payload: Dict[str, Any], method: VerificationMethod) -> VerifiedIdentity:
        subject = str(payload.get("sub") or "").strip()
        if not subject:
            raise InvalidCredentialError("Credential missing subject.")
        email = str(payload.get("email") or "").strip() or None
        exp = payload.get("exp")
        return VerifiedIdentity(
            subject=subject,
            method=method,
            claims=dict(payload),
            email=email,
            expires_at=int(exp) if exp is not None else None,
        )


def build_token_verifier(settings: Any, jwks_url: str) -> TokenVerifier:
    """Build the verifier (and its key-set cache) from application settings."""
    cache = None
    if jwks_url:
        cache = JwksCache(
            jwks_url,
            ttl_seconds=settings.JWKS_CACHE_TTL_SECONDS,
            timeout_seconds=settings.JWKS_FETCH_TIMEOUT_SECONDS,
        )
    return TokenVerifier(
        jwks_cache=cache,
        hs256_secret=settings.SUPABASE_JWT_SECRET,
        issuer=settings.AUTH_TOKEN_ISSUER,
        audience=settings.AUTH_TOKEN_AUDIENCE,
        allow_claims_only_fallback=settings.AUTH_ALLOW_CLAIMS_ONLY_FALLBACK,
    )
