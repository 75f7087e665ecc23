"""Admin endpoints: catalog management, ledger corrections, partner keys."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from kcr.accounts.service import deactivate_account, get_account, reactivate_account
from kcr.auth.dependencies import require_admin
from kcr.database import get_session
from kcr.db.models import Account, LedgerEntry
from kcr.points import ledger
from kcr.rewards import catalog
from kcr.rewards.partners import issue_partner_key
from kcr.rewards.router import coupon_fields
from kcr.rewards.schemas import (
    AccountStatusResponse,
    AdjustPointsRequest,
    AdminCouponResponse,
    CreateCouponRequest,
    IssuePartnerKeyRequest,
    LedgerWriteResponse,
    PartnerKeyResponse,
    VoidEntryRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/admin", tags=["Admin"], dependencies=[Depends(require_admin)])


def _admin_coupon(coupon, now: datetime) -> AdminCouponResponse:
    return AdminCouponResponse(
        **coupon_fields(coupon, now),
        code=coupon.code,
        is_active=coupon.is_active,
        unique_users=coupon.unique_users,
    )


def _ledger_write(entry: LedgerEntry) -> LedgerWriteResponse:
    return LedgerWriteResponse(
        entry_id=entry.id,
        account_id=entry.account_id,
        amount=entry.amount,
        reason=entry.reason,
        balance_after=entry.balance_after,
    )


def _account_status(account: Account) -> AccountStatusResponse:
    return AccountStatusResponse(
        id=account.id,
        username=account.username,
        status=account.status,
        balance=account.balance,
        deactivated_at=account.deactivated_at,
    )


@router.post("/coupons", response_model=AdminCouponResponse, status_code=201)
async def create_coupon(body: CreateCouponRequest, db: AsyncSession = Depends(get_session)):
    """Add a coupon to the catalog."""
    now = datetime.now(timezone.utc)
    try:
        coupon = await catalog.create_coupon(db, **body.model_dump(), now=now)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    await db.commit()
    return _admin_coupon(coupon, now)


@router.post("/coupons/{coupon_id}/deactivate", response_model=AdminCouponResponse)
async def deactivate_coupon(coupon_id: int, db: AsyncSession = Depends(get_session)):
    """Withdraw a coupon from the catalog."""
    now = datetime.now(timezone.utc)
    coupon = await catalog.deactivate_coupon(db, coupon_id, now)
    await db.commit()
    return _admin_coupon(coupon, now)


@router.post("/points/adjust", response_model=LedgerWriteResponse, status_code=201)
async def adjust_points(body: AdjustPointsRequest, db: AsyncSession = Depends(get_session)):
    """Grant or debit points by hand."""
    try:
        entry = await ledger.adjust(db, body.account_id, body.amount, body.note)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    await db.commit()
    logger.info("Admin adjusted account %s by %+d", body.account_id, body.amount)
    return _ledger_write(entry)


@router.post("/ledger/{entry_id}/void", response_model=LedgerWriteResponse, status_code=201)
async def void_ledger_entry(entry_id: int, body: VoidEntryRequest, db: AsyncSession = Depends(get_session)):
    """Void an entry; returns the compensating entry."""
    try:
        reversal = await ledger.void_entry(db, entry_id, body.note)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    await db.commit()
    return _ledger_write(reversal)


@router.post("/partners", response_model=PartnerKeyResponse, status_code=201)
async def create_partner_key(body: IssuePartnerKeyRequest, db: AsyncSession = Depends(get_session)):
    """Issue a partner API key. The key is only shown in this response."""
    full_key, record = await issue_partner_key(db, body.partner_name)
    await db.commit()
    return PartnerKeyResponse(
        id=record.id,
        partner_name=record.partner_name,
        key_prefix=record.key_prefix,
        api_key=full_key,
    )


@router.post("/accounts/{account_id}/deactivate", response_model=AccountStatusResponse)
async def deactivate(account_id: int, db: AsyncSession = Depends(get_session)):
    account = await deactivate_account(db, account_id)
    await db.commit()
    return _account_status(account)


@router.post("/accounts/{account_id}/reactivate", response_model=AccountStatusResponse)
async def reactivate(account_id: int, db: AsyncSession = Depends(get_session)):
    account = await reactivate_account(db, account_id)
    await db.commit()
    return _account_status(account)


@router.get("/accounts/{account_id}", response_model=AccountStatusResponse)
async def get_account_status(account_id: int, db: AsyncSession = Depends(get_session)):
    account = await get_account(db, account_id, include_inactive=True)
    return _account_status(account)
