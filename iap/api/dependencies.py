"""
FastAPI Dependencies - Session and admin-key authentication.

Player routes take an HS256 session token issued by the identity gateway.
Internal routes take the x-admin-key header and are hidden (404) when no
admin key is configured.
"""

import hmac
from dataclasses import dataclass
from typing import Any

import jwt
from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from structlog import get_logger

from iap.config import settings
from iap.services.entitlements import EntitlementService

logger = get_logger(__name__)

# Bearer token scheme for session auth
bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class SessionIdentity:
    """Authenticated player identity from a session token."""

    profile_id: str
    subject: str
    claims: dict[str, Any]


def decode_session_token(token: str) -> dict[str, Any]:
    """
    Verify an HS256 session token and return its claims.

    Issuer and audience are checked when configured; clock skew is allowed
    as leeway on exp/nbf/iat.

    Raises:
        jwt.InvalidTokenError: If the token is malformed, expired or mis-signed
    """
    options: dict[str, Any] = {"require": ["exp"]}
    kwargs: dict[str, Any] = {}
    if settings.session_issuer:
        kwargs["issuer"] = settings.session_issuer
    if settings.session_audience:
        kwargs["audience"] = settings.session_audience
    else:
        options["verify_aud"] = False
    claims: dict[str, Any] = jwt.decode(
        token,
        settings.session_secret,
        algorithms=["HS256"],
        leeway=settings.clock_skew_seconds,
        options=options,
        **kwargs,
    )
    return claims


def profile_id_from_claims(claims: dict[str, Any]) -> str:
    """nakama_user_id when present, otherwise sub."""
    nakama_user_id = str(claims.get("nakama_user_id") or "").strip()
    if nakama_user_id:
        return nakama_user_id
    return str(claims.get("sub") or "").strip()


async def get_session_identity(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> SessionIdentity:
    """
    FastAPI dependency to validate the player session token.

    Accepts: Authorization: Bearer {session_token}

    Raises:
        HTTPException 401 if no token, invalid token or no subject
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="missing bearer session",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        claims = decode_session_token(credentials.credentials)
    except jwt.InvalidTokenError as exc:
        logger.warning("session_token_invalid", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"invalid session: {exc}",
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc

    profile_id = profile_id_from_claims(claims)
    if not profile_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="session missing subject",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return SessionIdentity(
        profile_id=profile_id,
        subject=str(claims.get("sub") or ""),
        claims=claims,
    )


async def require_admin_key(
    x_admin_key: str | None = Header(None, description="Internal admin key"),
) -> None:
    """
    FastAPI dependency guarding internal routes.

    Raises:
        HTTPException 404 if internal routes are disabled (no admin key set)
        HTTPException 401 if the supplied key is missing or wrong
    """
    if not settings.iap_admin_key:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Route not found")
    if not x_admin_key or not hmac.compare_digest(
        x_admin_key.encode(), settings.iap_admin_key.encode()
    ):
        logger.warning("admin_key_rejected", supplied=bool(x_admin_key))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid admin key",
        )


def get_entitlement_service(request: Request) -> EntitlementService:
    """FastAPI dependency returning the service built at startup."""
    service: EntitlementService | None = getattr(request.app.state, "entitlement_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="entitlement service not initialized",
        )
    return service


def get_request_id(request: Request) -> str | None:
    """Request id set by the request-id middleware."""
    return getattr(request.state, "request_id", None)
