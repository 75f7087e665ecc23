"""
RS256 access-token verification.

Tokens are issued by the account directory; a deployment of this service only
needs the public key. ``create_access_token`` signs with the private key and
exists for local tooling and tests. Claims: ``sub`` (account id), ``iss``,
``type="access"`` and an optional ``role`` (``admin`` unlocks /admin).
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import jwt

from kcr.config import get_settings

ADMIN_ROLE = "admin"
ACCESS_TOKEN_TYPE = "access"

_keys: dict[str, str] = {}


def _read_key(path: str) -> str:
    """Read a PEM file once per path."""
    if path not in _keys:
        _keys[path] = Path(path).read_text()
    return _keys[path]


def reset_keys() -> None:
    """Forget cached PEM contents (tests rotate key files)."""
    _keys.clear()


def create_access_token(account_id: int, role: str | None = None) -> str:
    """
    Sign an access token for ``account_id``.

    Args:
        account_id: The account's database ID.
        role: Optional role claim, e.g. ``"admin"``.
    """
    settings = get_settings()
    now = datetime.now(timezone.utc)
    claims: dict[str, Any] = {
        "sub": str(account_id),
        "iat": now,
        "exp": now + timedelta(minutes=settings.jwt_access_token_expire_minutes),
        "iss": settings.jwt_issuer,
        "type": ACCESS_TOKEN_TYPE,
    }
    if role:
        claims["role"] = role
    return jwt.encode(claims, _read_key(settings.jwt_private_key_path), algorithm=settings.jwt_algorithm)


def verify_token(token: str, expected_type: str = ACCESS_TOKEN_TYPE) -> dict[str, Any]:
    """
    Verify signature, issuer, expiry and token type.

    Raises:
        jwt.InvalidTokenError: On any failure; expiry is reported as "Token has expired".
    """
    settings = get_settings()
    try:
        claims: dict[str, Any] = jwt.decode(
            token,
            _read_key(settings.jwt_public_key_path),
            algorithms=[settings.jwt_algorithm],
            issuer=settings.jwt_issuer,
            options={"require": ["sub", "exp", "iss"]},
        )
    except jwt.ExpiredSignatureError:
        msg = "Token has expired"
        raise jwt.InvalidTokenError(msg) from None

    if claims.get("type") != expected_type:
        msg = f"Expected token type '{expected_type}', got '{claims.get('type')}'"
        raise jwt.InvalidTokenError(msg)
    return claims
