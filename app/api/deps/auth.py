"""JWT validation and user authentication dependencies.

This module provides:
- JWT validation against the identity provider's JWKS
- User lookup and auto-creation on first authenticated request
"""

import logging
import time
from typing import Annotated, Any

import httpx
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwk, jwt
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.database import get_db
from app.domain.user_operations import user_ops
from app.models.user import User

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)

# Cache for JWKS with TTL to handle key rotation
_jwks_cache: dict[str, Any] = {}
_jwks_cache_timestamp: float = 0.0
_JWKS_CACHE_TTL_SECONDS: float = 3600.0  # 1 hour


async def _fetch_jwks() -> dict[str, Any]:
    """Fetch JWKS from the identity provider and update the cache."""
    global _jwks_cache_timestamp
    async with httpx.AsyncClient(timeout=settings.provider_timeout_seconds) as client:
        response = await client.get(settings.auth_jwks_url)
        response.raise_for_status()
        jwks = response.json()
        _jwks_cache.clear()
        _jwks_cache.update(jwks)
        _jwks_cache_timestamp = time.monotonic()
        return jwks


async def get_jwks(force_refresh: bool = False) -> dict[str, Any]:
    """Fetch and cache the JWKS with a 1-hour TTL."""
    cache_age = time.monotonic() - _jwks_cache_timestamp
    if _jwks_cache and not force_refresh and cache_age < _JWKS_CACHE_TTL_SECONDS:
        return _jwks_cache

    return await _fetch_jwks()


def get_signing_key(jwks: dict[str, Any], token: str) -> Any:
    """Build the public key from the JWKS entry matching the token's kid."""
    kid = jwt.get_unverified_header(token).get("kid")

    for key in jwks.get("keys", []):
        if key.get("kid") == kid:
            return jwk.construct(key, algorithm=key.get("alg") or settings.auth_algorithms[0])

    raise ValueError("Unable to find matching key in JWKS")


def decode_token(token: str, jwks: dict[str, Any]) -> dict[str, Any]:
    """Verify signature, audience and issuer; return the claims."""
    options = {"verify_aud": bool(settings.auth_audience)}
    claims = jwt.decode(
        token,
        get_signing_key(jwks, token),
        algorithms=settings.auth_algorithms,
        audience=settings.auth_audience or None,
        issuer=settings.auth_issuer or None,
        options=options,
    )
    if not claims.get("sub"):
        raise ValueError("Token has no subject")
    return claims


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> User:
    """
    Validate the bearer JWT and return the current user.

    Creates the user record on the first authenticated call.
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )

    token = credentials.credentials

    try:
        claims = decode_token(token, await get_jwks())
    except (JWTError, ValueError) as first_error:
        # Key rotation may have occurred - force a JWKS refresh and retry once
        try:
            logger.info("JWT validation failed with cached JWKS, forcing refresh")
            claims = decode_token(token, await get_jwks(force_refresh=True))
        except (JWTError, ValueError, httpx.HTTPError):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Could not validate credentials",
            ) from first_error
    except httpx.HTTPError:
        logger.error("Could not fetch JWKS")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        ) from None

    user_metadata = claims.get("user_metadata") or {}
    return await user_ops.get_or_create(
        db,
        user_id=str(claims["sub"]),
        email=claims.get("email"),
        display_name=claims.get("name") or user_metadata.get("full_name"),
    )


# Type aliases for cleaner dependency injection
DbSession = Annotated[AsyncSession, Depends(get_db)]
CurrentUser = Annotated[User, Depends(get_current_user)]
