"""Reward catalog: coupon eligibility and catalog queries.

Eligibility is decided by a pure function over the coupon, the account's
prior redemption count and ``now``; the queries below translate the same
rules into SQL so listings never offer a coupon that ``redeem`` would refuse.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any, NamedTuple

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from kcr.db.models import Coupon, CouponCategory, CouponUsage, DiscountType
from kcr.errors import NotFoundError, RejectionReason

logger = logging.getLogger(__name__)

COUPON_CODE_RE = re.compile(r"^[A-Z0-9]+$")


class RedeemCheck(NamedTuple):
    ok: bool
    reason: RejectionReason | None = None


def check_redeemable(coupon: Coupon, prior_count: int, now: datetime) -> RedeemCheck:
    """Decide whether an account with ``prior_count`` redemptions may redeem.

    Checks run in a fixed order so the reported reason is stable:
    inactive, not yet valid, expired, global cap, per-account cap.
    """
    if not coupon.is_active:
        return RedeemCheck(False, RejectionReason.COUPON_INACTIVE)
    if now < coupon.valid_from:
        return RedeemCheck(False, RejectionReason.NOT_YET_VALID)
    if now > coupon.valid_until:
        return RedeemCheck(False, RejectionReason.EXPIRED_COUPON)
    if coupon.cap_reached:
        return RedeemCheck(False, RejectionReason.CAP_REACHED)
    if prior_count >= coupon.usage_limit_per_user:
        return RedeemCheck(False, RejectionReason.ALREADY_REDEEMED)
    return RedeemCheck(True)


async def prior_redemptions(db: AsyncSession, account_id: int, coupon_id: int) -> int:
    result = await db.execute(
        select(CouponUsage.redemption_count).where(
            CouponUsage.account_id == account_id,
            CouponUsage.coupon_id == coupon_id,
        )
    )
    return int(result.scalar_one_or_none() or 0)


async def is_redeemable(
    db: AsyncSession,
    coupon: Coupon,
    account_id: int,
    now: datetime | None = None,
) -> RedeemCheck:
    now = now or datetime.now(timezone.utc)
    count = await prior_redemptions(db, account_id, coupon.id)
    return check_redeemable(coupon, count, now)


def _currently_valid(now: datetime) -> tuple[Any, ...]:
    return (
        Coupon.is_active.is_(True),
        Coupon.valid_from <= now,
        Coupon.valid_until >= now,
        or_(
            Coupon.usage_limit_total.is_(None),
            Coupon.total_redemptions < Coupon.usage_limit_total,
        ),
    )


async def get_coupon(db: AsyncSession, coupon_id: int, *, include_inactive: bool = False) -> Coupon:
    """Load a coupon.

    Raises:
        NotFoundError: If missing, or inactive unless ``include_inactive``.
    """
    result = await db.execute(select(Coupon).where(Coupon.id == coupon_id))
    coupon = result.scalar_one_or_none()
    if coupon is None or (not include_inactive and not coupon.is_active):
        raise NotFoundError(f"Coupon {coupon_id} not found")
    return coupon


async def available_for(
    db: AsyncSession,
    account_id: int,
    balance: int,
    now: datetime | None = None,
    *,
    category: CouponCategory | None = None,
    min_points: int | None = None,
    max_points: int | None = None,
    featured_only: bool = False,
) -> list[Coupon]:
    """Coupons the account could redeem right now with ``balance`` points.

    Ordered featured first, then cheapest first.
    """
    now = now or datetime.now(timezone.utc)
    usage = (
        select(CouponUsage.coupon_id, CouponUsage.redemption_count)
        .where(CouponUsage.account_id == account_id)
        .subquery()
    )
    query = (
        select(Coupon)
        .outerjoin(usage, usage.c.coupon_id == Coupon.id)
        .where(
            *_currently_valid(now),
            Coupon.points_cost <= balance,
            or_(
                usage.c.redemption_count.is_(None),
                usage.c.redemption_count < Coupon.usage_limit_per_user,
            ),
        )
        .order_by(Coupon.is_featured.desc(), Coupon.points_cost.asc(), Coupon.id.asc())
    )
    if category is not None:
        query = query.where(Coupon.category == category.value)
    if min_points is not None:
        query = query.where(Coupon.points_cost >= min_points)
    if max_points is not None:
        query = query.where(Coupon.points_cost <= max_points)
    if featured_only:
        query = query.where(Coupon.is_featured.is_(True))

    result = await db.execute(query)
    return list(result.scalars().all())


async def featured(db: AsyncSession, limit: int = 5, now: datetime | None = None) -> list[Coupon]:
    """Currently valid featured coupons, cheapest first."""
    now = now or datetime.now(timezone.utc)
    result = await db.execute(
        select(Coupon)
        .where(*_currently_valid(now), Coupon.is_featured.is_(True))
        .order_by(Coupon.points_cost.asc(), Coupon.id.asc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def categories(db: AsyncSession, now: datetime | None = None) -> list[dict[str, Any]]:
    """Every category with the number of currently valid coupons in it."""
    now = now or datetime.now(timezone.utc)
    result = await db.execute(
        select(Coupon.category, func.count(Coupon.id))
        .where(*_currently_valid(now))
        .group_by(Coupon.category)
    )
    counts = {category: int(n) for category, n in result.all()}
    return [
        {"category": c.value, "count": counts.get(c.value, 0)}
        for c in CouponCategory
    ]


async def create_coupon(
    db: AsyncSession,
    *,
    title: str,
    description: str,
    code: str,
    discount: str,
    discount_type: DiscountType,
    points_cost: int,
    partner_name: str,
    valid_from: datetime,
    valid_until: datetime,
    discount_value: int = 0,
    category: CouponCategory = CouponCategory.GENERAL,
    partner_contact: dict[str, Any] | None = None,
    terms: list[str] | None = None,
    usage_limit_total: int | None = None,
    usage_limit_per_user: int = 1,
    is_featured: bool = False,
    now: datetime | None = None,
) -> Coupon:
    """Add a coupon to the catalog.

    Raises:
        ValueError: On an empty validity window, a malformed code or
            non-positive costs and limits.
    """
    code = code.strip().upper()
    if not COUPON_CODE_RE.match(code):
        msg = "Coupon code must contain only uppercase letters and numbers"
        raise ValueError(msg)
    if valid_until <= valid_from:
        msg = "valid_until must be after valid_from"
        raise ValueError(msg)
    if points_cost < 1:
        msg = "points_cost must be at least 1"
        raise ValueError(msg)
    if usage_limit_per_user < 1:
        msg = "usage_limit_per_user must be at least 1"
        raise ValueError(msg)
    if usage_limit_total is not None and usage_limit_total < 1:
        msg = "usage_limit_total must be at least 1 when set"
        raise ValueError(msg)
    if discount_value < 0:
        msg = "discount_value cannot be negative"
        raise ValueError(msg)

    existing = await db.execute(select(Coupon.id).where(Coupon.code == code))
    if existing.scalar_one_or_none() is not None:
        msg = f"Coupon code {code} already exists"
        raise ValueError(msg)

    now = now or datetime.now(timezone.utc)
    coupon = Coupon(
        title=title,
        description=description,
        code=code,
        discount=discount,
        discount_type=discount_type.value,
        discount_value=discount_value,
        points_cost=points_cost,
        category=category.value,
        partner_name=partner_name,
        partner_contact=partner_contact or {},
        terms=terms or [],
        valid_from=valid_from,
        valid_until=valid_until,
        usage_limit_total=usage_limit_total,
        usage_limit_per_user=usage_limit_per_user,
        is_featured=is_featured,
        is_active=True,
        total_redemptions=0,
        unique_users=0,
        created_at=now,
        updated_at=now,
    )
    db.add(coupon)
    await db.flush()
    logger.info("Coupon %s created (%s, %d points)", coupon.id, code, points_cost)
    return coupon


async def deactivate_coupon(db: AsyncSession, coupon_id: int, now: datetime | None = None) -> Coupon:
    """Withdraw a coupon. Existing redemptions stay valid until they expire."""
    coupon = await get_coupon(db, coupon_id, include_inactive=True)
    if coupon.is_active:
        coupon.is_active = False
        coupon.updated_at = now or datetime.now(timezone.utc)
        await db.flush()
        logger.info("Coupon %s deactivated", coupon_id)
    return coupon


def redemption_hint(coupon: Coupon, prior_count: int, balance: int, now: datetime) -> RedeemCheck:
    """Eligibility including the balance, as shown on the coupon detail view."""
    check = check_redeemable(coupon, prior_count, now)
    if check.ok and balance < coupon.points_cost:
        return RedeemCheck(False, RejectionReason.INSUFFICIENT_POINTS)
    return check
