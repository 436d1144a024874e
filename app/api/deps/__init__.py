"""API dependencies - re-exports from submodules."""

from .auth import (
    CurrentUser,
    DbSession,
    decode_token,
    get_current_user,
    get_jwks,
    get_signing_key,
    security,
)
from .internal import verify_cron_secret

__all__ = [
    # Auth
    "security",
    "get_jwks",
    "get_signing_key",
    "decode_token",
    "get_current_user",
    "DbSession",
    "CurrentUser",
    # Internal
    "verify_cron_secret",
]
