"""FastAPI authentication dependencies."""

from __future__ import annotations

import jwt
from fastapi import Depends, Header, HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from kcr.accounts.service import get_account
from kcr.auth.jwt import ADMIN_ROLE, verify_token
from kcr.database import get_session
from kcr.db.models import Account, PartnerKey
from kcr.errors import NotFoundError
from kcr.rewards.partners import authenticate_partner

_bearer = HTTPBearer()


async def get_token_payload(
    credentials: HTTPAuthorizationCredentials = Security(_bearer),
) -> dict:
    """Verify the bearer JWT. Raises 401 on failure."""
    try:
        return verify_token(credentials.credentials, expected_type="access")
    except jwt.InvalidTokenError as e:
        raise HTTPException(status_code=401, detail=str(e)) from e


async def get_current_account(
    payload: dict = Depends(get_token_payload),
    db: AsyncSession = Depends(get_session),
) -> Account:
    """
    Return the Account behind the bearer token.

    Raises 401 for unknown accounts and 403 for deactivated ones.
    """
    try:
        account = await get_account(db, int(payload["sub"]), include_inactive=True)
    except (NotFoundError, KeyError, ValueError) as e:
        raise HTTPException(status_code=401, detail="Account not found") from e
    if not account.is_active:
        raise HTTPException(status_code=403, detail="Account is deactivated")
    return account


async def require_admin(payload: dict = Depends(get_token_payload)) -> dict:
    """Allow only tokens carrying ``role=admin``."""
    if payload.get("role") != ADMIN_ROLE:
        raise HTTPException(status_code=403, detail="Admin access required")
    return payload


async def require_partner(
    x_partner_key: str | None = Header(default=None),
    db: AsyncSession = Depends(get_session),
) -> PartnerKey:
    """Authenticate a partner by its ``X-Partner-Key`` header."""
    if not x_partner_key:
        raise HTTPException(status_code=401, detail="Missing partner key")
    partner = await authenticate_partner(db, x_partner_key)
    if partner is None:
        raise HTTPException(status_code=401, detail="Invalid partner key")
    return partner
