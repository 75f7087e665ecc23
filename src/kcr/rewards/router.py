"""Rewards API endpoints: catalog, redemption and partner verification."""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from kcr.auth.dependencies import get_current_account, require_partner
from kcr.config import get_settings
from kcr.database import get_session
from kcr.db.models import Account, Coupon, CouponCategory, PartnerKey, Redemption, RedemptionStatus
from kcr.dependencies import get_redis_dep
from kcr.points import ledger
from kcr.rewards import catalog, redemption as redemption_service
from kcr.rewards.schemas import (
    AvailableCouponsResponse,
    CategoriesResponse,
    CategoryCount,
    CouponDetailResponse,
    CouponResponse,
    FeaturedCouponsResponse,
    MarkUsedRequest,
    RedeemResponse,
    RedemptionCouponSummary,
    RedemptionListResponse,
    RedemptionResponse,
)

router = APIRouter(prefix="/api/v1/rewards", tags=["Rewards"])


def coupon_fields(coupon: Coupon, now: datetime) -> dict:
    return {
        "id": coupon.id,
        "title": coupon.title,
        "description": coupon.description,
        "discount": coupon.discount,
        "discount_type": coupon.discount_type,
        "discount_value": coupon.discount_value,
        "points_cost": coupon.points_cost,
        "category": coupon.category,
        "partner_name": coupon.partner_name,
        "partner_contact": coupon.partner_contact or {},
        "terms": coupon.terms or [],
        "valid_from": coupon.valid_from,
        "valid_until": coupon.valid_until,
        "days_remaining": coupon.days_remaining(now),
        "usage_limit_total": coupon.usage_limit_total,
        "usage_limit_per_user": coupon.usage_limit_per_user,
        "total_redemptions": coupon.total_redemptions,
        "usage_percentage": coupon.usage_percentage,
        "is_valid": coupon.is_currently_valid(now),
        "is_featured": coupon.is_featured,
    }


def redemption_response(r: Redemption) -> RedemptionResponse:
    return RedemptionResponse(
        id=r.id,
        code=r.code,
        status=r.status,
        points_spent=r.points_spent,
        redeemed_at=r.redeemed_at,
        expires_at=r.expires_at,
        used_at=r.used_at,
        usage_details=r.usage_details or {},
        coupon=RedemptionCouponSummary(
            id=r.coupon.id,
            title=r.coupon.title,
            description=r.coupon.description,
            discount=r.coupon.discount,
            partner_name=r.coupon.partner_name,
            terms=r.coupon.terms or [],
        ),
    )


# ── Catalog ──


@router.get("/coupons", response_model=AvailableCouponsResponse)
async def list_available_coupons(
    category: CouponCategory | None = None,
    min_points: int | None = Query(default=None, ge=0),
    max_points: int | None = Query(default=None, ge=0),
    featured: bool = False,
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_session),
):
    """Coupons the caller can redeem right now."""
    now = datetime.now(timezone.utc)
    balance = await ledger.balance(db, account.id)
    coupons = await catalog.available_for(
        db,
        account.id,
        balance,
        now,
        category=category,
        min_points=min_points,
        max_points=max_points,
        featured_only=featured,
    )
    return AvailableCouponsResponse(
        coupons=[CouponResponse(**coupon_fields(c, now)) for c in coupons],
        balance=balance,
    )


@router.get("/coupons/featured", response_model=FeaturedCouponsResponse)
async def list_featured_coupons(
    limit: int | None = Query(default=None, ge=1, le=50),
    db: AsyncSession = Depends(get_session),
):
    """Featured coupons (public)."""
    now = datetime.now(timezone.utc)
    coupons = await catalog.featured(db, limit or get_settings().featured_default_limit, now)
    return FeaturedCouponsResponse(coupons=[CouponResponse(**coupon_fields(c, now)) for c in coupons])


@router.get("/coupons/categories", response_model=CategoriesResponse)
async def list_categories(db: AsyncSession = Depends(get_session)):
    """Coupon categories with counts of currently valid coupons (public)."""
    rows = await catalog.categories(db)
    return CategoriesResponse(categories=[CategoryCount(**r) for r in rows])


@router.get("/coupons/{coupon_id}", response_model=CouponDetailResponse)
async def get_coupon(
    coupon_id: int,
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_session),
):
    """Coupon detail with the caller's eligibility."""
    now = datetime.now(timezone.utc)
    coupon = await catalog.get_coupon(db, coupon_id)
    balance = await ledger.balance(db, account.id)
    prior = await catalog.prior_redemptions(db, account.id, coupon.id)
    check = catalog.redemption_hint(coupon, prior, balance, now)
    return CouponDetailResponse(
        **coupon_fields(coupon, now),
        can_redeem=check.ok,
        redemption_reason=check.reason.value if check.reason else None,
        has_enough_points=balance >= coupon.points_cost,
    )


# ── Redemption ──


@router.post("/coupons/{coupon_id}/redeem", response_model=RedeemResponse)
async def redeem_coupon(
    coupon_id: int,
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_session),
    redis=Depends(get_redis_dep),
):
    """Spend points on a coupon."""
    redemption = await redemption_service.redeem(db, account.id, coupon_id, redis=redis)
    return RedeemResponse(
        redemption=redemption_response(redemption),
        balance=await ledger.balance(db, account.id),
    )


@router.get("/my-redemptions", response_model=RedemptionListResponse)
async def list_my_redemptions(
    status: RedemptionStatus | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_session),
):
    """The caller's redemptions, newest first."""
    items, total = await redemption_service.list_redemptions(db, account.id, status, page=page, limit=limit)
    return RedemptionListResponse(
        redemptions=[redemption_response(r) for r in items],
        total=total,
        page=page,
        limit=limit,
    )


@router.get("/redemptions/{code}", response_model=RedemptionResponse)
async def get_my_redemption(
    code: str,
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_session),
):
    """One of the caller's redemptions by code."""
    redemption = await redemption_service.get_redemption_by_code(db, code, account_id=account.id)
    return redemption_response(redemption)


@router.patch("/redemptions/{code}/use", response_model=RedemptionResponse)
async def mark_redemption_used(
    code: str,
    body: MarkUsedRequest,
    partner: PartnerKey = Depends(require_partner),
    db: AsyncSession = Depends(get_session),
):
    """Partner verification: mark a redemption as used."""
    redemption = await redemption_service.mark_used(
        db,
        code,
        body.model_dump(exclude_none=True),
        partner_name=partner.partner_name,
    )
    return redemption_response(redemption)
