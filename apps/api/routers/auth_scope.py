"""Authentication dependencies: user bearer tokens, service key, worker identity."""

from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, Query, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config import jwks_url, settings
from services.errors import AuthenticationError, UpstreamError
from services.storage import StorageGateway
from services.token_verifier import (
    InvalidCredentialError,
    KeySetUnavailableError,
    TokenVerifier,
    VerifiedIdentity,
    build_token_verifier,
)

logger = logging.getLogger(__name__)

auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    identity: VerifiedIdentity

    @property
    def user_id(self) -> str:
        return self.identity.subject

    @property
    def email(self) -> Optional[str]:
        return self.identity.email

    @property
    def verification(self) -> str:
        return self.identity.method.value


@dataclass
class WorkerContext:
    worker_id: str


def get_token_verifier(request: Request) -> TokenVerifier:
    """Return the app-wide verifier, building it (and its key-set cache) on first use."""
    verifier = getattr(request.app.state, "token_verifier", None)
    if verifier is None:
        verifier = build_token_verifier(settings, jwks_url())
        request.app.state.token_verifier = verifier
    return verifier


def get_storage_gateway(request: Request) -> StorageGateway:
    gateway = getattr(request.app.state, "storage_gateway", None)
    if gateway is None:
        gateway = StorageGateway.from_settings(settings)
        request.app.state.storage_gateway = gateway
    return gateway


async def _authenticate(token: str, verifier: TokenVerifier) -> AuthContext:
    try:
        identity = await verifier.verify(token)
    except InvalidCredentialError as exc:
        raise AuthenticationError(str(exc)) from exc
    except KeySetUnavailableError as exc:
        logger.error("Credential rejected, key set unavailable and fallback disabled: %s", exc)
        raise UpstreamError("Identity provider key set is unavailable.") from exc
    return AuthContext(identity=identity)


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
    verifier: TokenVerifier = Depends(get_token_verifier),
) -> AuthContext:
    """Resolve the authenticated user from the Bearer token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise AuthenticationError("Missing Bearer token.")
    return await _authenticate(credentials.credentials, verifier)


async def get_proxy_auth_context(
    token: Optional[str] = Query(None),
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
    verifier: TokenVerifier = Depends(get_token_verifier),
) -> AuthContext:
    """Like get_auth_context, but also accepts ``?token=`` for header-less consumers."""
    raw = credentials.credentials if credentials and credentials.scheme.lower() == "bearer" else token
    if not raw:
        raise AuthenticationError("Missing Bearer token.")
    return await _authenticate(raw, verifier)


def _secret_matches(presented: Optional[str], expected: str) -> bool:
    if not presented or not expected:
        return False
    return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))


async def require_service_key(x_api_key: Optional[str] = Header(None, alias="X-API-Key")) -> None:
    if not _secret_matches(x_api_key, settings.API_SECRET_KEY):
        raise AuthenticationError("Invalid service credential.")


async def get_worker_context(
    x_worker_id: Optional[str] = Header(None, alias="X-Worker-Id"),
    x_worker_secret: Optional[str] = Header(None, alias="X-Worker-Secret"),
) -> WorkerContext:
    worker_id = (x_worker_id or "").strip()
    if not worker_id:
        raise AuthenticationError("X-Worker-Id header required.")
    if not _secret_matches(x_worker_secret, settings.WORKER_SHARED_SECRET):
        raise AuthenticationError("Invalid worker credential.")
    return WorkerContext(worker_id=worker_id)
