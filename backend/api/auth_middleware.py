"""
Authentication middleware for Supabase JWT verification.

Sign-in and sessions live entirely in Supabase Auth. This module only checks
the access token the frontend forwards and turns it into an AuthContext:
1. Extract the Bearer token from the Authorization header
2. Verify it (ES256 via the project's JWKS, or the legacy HS256 secret)
3. Read the user id and email from the verified claims

SECURITY: Never trust user ids sent in query parameters or bodies.
Always use the AuthContext returned by these dependencies.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

import httpx
from fastapi import Header, HTTPException, status
from jose import JWTError, jwt

from config import settings

logger = logging.getLogger(__name__)

# Cache for JWKS public keys
_jwks_cache: dict | None = None


@dataclass
class AuthContext:
    """Verified identity of the caller, taken from the JWT claims."""
    user_id: UUID
    email: str

    @property
    def user_id_str(self) -> str:
        return str(self.user_id)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def _extract_token(authorization: Optional[str]) -> str:
    """
    Extract the JWT token from the Authorization header.

    Raises:
        HTTPException: If header is missing or malformed
    """
    if not authorization:
        raise _unauthorized("Missing Authorization header")

    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _unauthorized("Invalid Authorization header format. Expected: Bearer <token>")

    return parts[1]


async def _get_jwks() -> dict:
    """Fetch and cache the Supabase project's JWKS."""
    global _jwks_cache

    if _jwks_cache is not None:
        return _jwks_cache

    if not settings.SUPABASE_URL:
        logger.error("SUPABASE_URL not configured")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Authentication not configured",
        )

    jwks_url = f"{settings.SUPABASE_URL}/auth/v1/.well-known/jwks.json"

    try:
        async with httpx.AsyncClient() as client:
            response = await client.get(jwks_url)
            response.raise_for_status()
            _jwks_cache = response.json()
            logger.info("Fetched JWKS from %s", jwks_url)
            return _jwks_cache
    except httpx.HTTPError as e:
        logger.error("Failed to fetch JWKS from %s: %s", jwks_url, e)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to fetch authentication keys",
        )


def _get_signing_key(jwks: dict, token: str) -> dict:
    """Find the JWKS key matching the token's kid header."""
    global _jwks_cache

    try:
        unverified_header = jwt.get_unverified_header(token)
    except JWTError:
        raise _unauthorized("Invalid token header")

    kid = unverified_header.get("kid")
    if not kid:
        raise _unauthorized("Token missing key ID")

    for key in jwks.get("keys", []):
        if key.get("kid") == kid:
            return key

    # Keys may have rotated; refetch on the next request
    _jwks_cache = None
    raise _unauthorized("Token signed with unknown key")


async def _verify_jwt(token: str) -> dict:
    """
    Verify the JWT token and return the payload.

    Raises:
        HTTPException: If token is invalid or expired
    """
    try:
        alg = jwt.get_unverified_header(token).get("alg", "HS256")
    except JWTError as e:
        logger.warning("Failed to decode token header: %s", e)
        raise _unauthorized("Invalid token format")

    try:
        if alg == "ES256":
            jwks = await _get_jwks()
            signing_key = _get_signing_key(jwks, token)
            return jwt.decode(
                token,
                signing_key,
                algorithms=["ES256"],
                options={"verify_aud": False},  # Supabase sets aud to "authenticated"
            )

        if not settings.SUPABASE_JWT_SECRET:
            logger.error("SUPABASE_JWT_SECRET not configured for HS256 token")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Authentication not configured",
            )
        return jwt.decode(
            token,
            settings.SUPABASE_JWT_SECRET,
            algorithms=["HS256"],
            options={"verify_aud": False},
        )
    except JWTError as e:
        logger.warning("JWT verification failed: %s", e)
        raise _unauthorized("Invalid or expired token")


def auth_context_from_claims(payload: dict) -> AuthContext:
    """Build an AuthContext from verified claims."""
    sub = payload.get("sub")
    if not sub:
        raise _unauthorized("Invalid token: missing subject")
    try:
        user_id = UUID(str(sub))
    except ValueError:
        raise _unauthorized("Invalid token: malformed subject")

    return AuthContext(user_id=user_id, email=payload.get("email") or "")


async def get_current_auth(
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> AuthContext:
    """
    FastAPI dependency that verifies the JWT and returns AuthContext.

    Usage:
        @router.get("/protected")
        async def protected_route(auth: AuthContext = Depends(get_current_auth)):
            ...
    """
    token = _extract_token(authorization)
    payload = await _verify_jwt(token)
    return auth_context_from_claims(payload)
