"""Caller identity for backend calls."""

import logging

from firebase_admin import auth  # type: ignore[import-untyped]

from watchwise_shared.errors import Unauthenticated

logger = logging.getLogger(__name__)


def require_caller(uid: str | None) -> str:
    """Return the bound caller id, or raise Unauthenticated."""
    if not uid or not uid.strip():
        raise Unauthenticated("User must be authenticated")
    return uid


def verify_caller(id_token: str | None) -> str:
    """Verify a Firebase ID token and return the caller's uid."""
    if not id_token:
        raise Unauthenticated("Missing ID token")
    try:
        decoded = auth.verify_id_token(id_token)
    except (ValueError, auth.InvalidIdTokenError, auth.ExpiredIdTokenError) as e:
        logger.warning("Rejected ID token: %s", e)
        raise Unauthenticated("Invalid ID token") from e
    return require_caller(decoded.get("uid"))
