"""Utilities for issuing and validating session bearer tokens."""

from __future__ import annotations

from typing import Any

import jwt

from ..config import get_settings
from .sessions import Session


def issue_session_token(session: Session) -> tuple[str, int]:
    """Create a signed JWT pointing at a stored session.

    Parameters
    ----------
    session:
        Session persisted in the session store; its id becomes the ``sid`` claim.

    Returns
    -------
    tuple[str, int]
        A tuple containing the encoded JWT string and its TTL (in seconds).
    """

    settings = get_settings()
    issued_at = int(session.created_at)
    expires_at = int(session.expires_at)
    payload: dict[str, Any] = {
        "iss": settings.jwt_issuer,
        "sub": str(session.account_id),
        "sid": session.session_id,
        "iat": issued_at,
        "exp": expires_at,
    }
    token = jwt.encode(payload, settings.jwt_secret, algorithm="HS256")
    return token, max(expires_at - issued_at, 0)


def decode_session_token(token: str) -> dict[str, Any]:
    """Decode and verify a session JWT returning its payload.

    Raises
    ------
    jwt.PyJWTError
        Propagated when the token is invalid, expired, or signed by another issuer.
    """

    settings = get_settings()
    return jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=["HS256"],
        issuer=settings.jwt_issuer,
        options={"require": ["sid", "sub", "exp"]},
    )
