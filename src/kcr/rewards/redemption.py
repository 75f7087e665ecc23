"""Coupon redemption: the only path that exchanges points for a coupon.

One redemption is one database transaction:

1. validate coupon, account and caps (nothing written on rejection)
2. debit the account (guarded, never negative)
3. bump the per-account usage row (guarded, serialises the per-account cap)
4. bump coupon stats (guarded, serialises the global cap)
5. insert the Redemption with a fresh code

Any failure rolls the whole unit back. A lost race surfaces as
``ConcurrencyConflictError`` and the whole redemption is retried.

Redemptions expire lazily: reads and ``mark_used`` materialise ``expired``
once ``expires_at`` has passed.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from kcr.accounts.service import get_account
from kcr.config import get_settings
from kcr.db.models import Coupon, CouponUsage, Reason, Redemption, RedemptionStatus, ReferenceType
from kcr.errors import (
    AlreadyUsedError,
    ConcurrencyConflictError,
    InsufficientBalanceError,
    NotFoundError,
    RedemptionExpiredError,
    RedemptionRejectedError,
    RejectionReason,
)
from kcr.points import ledger
from kcr.points.ledger import Reference
from kcr.redis_client import publish
from kcr.rewards.catalog import get_coupon, is_redeemable
from kcr.rewards.codes import generate_unique_redemption_code, is_valid_code, normalize_code

logger = logging.getLogger(__name__)

REDEMPTIONS_CHANNEL = "pubsub:redemptions"


async def _bump_usage(db: AsyncSession, account_id: int, coupon: Coupon, now: datetime) -> bool:
    """Count one more redemption of ``coupon`` by the account.

    Returns True when this is the account's first redemption of the coupon.
    """
    result = await db.execute(
        update(CouponUsage)
        .where(
            CouponUsage.account_id == account_id,
            CouponUsage.coupon_id == coupon.id,
            CouponUsage.redemption_count < coupon.usage_limit_per_user,
        )
        .values(redemption_count=CouponUsage.redemption_count + 1, last_redeemed_at=now)
        .returning(CouponUsage.redemption_count)
        .execution_options(synchronize_session=False)
    )
    if result.scalar_one_or_none() is not None:
        return False

    existing = await db.execute(
        select(CouponUsage.redemption_count).where(
            CouponUsage.account_id == account_id,
            CouponUsage.coupon_id == coupon.id,
        )
    )
    if existing.scalar_one_or_none() is not None:
        raise RedemptionRejectedError(RejectionReason.ALREADY_REDEEMED)

    db.add(CouponUsage(
        account_id=account_id,
        coupon_id=coupon.id,
        redemption_count=1,
        first_redeemed_at=now,
        last_redeemed_at=now,
    ))
    try:
        await db.flush()
    except IntegrityError as e:
        msg = f"Concurrent first redemption of coupon {coupon.id} by account {account_id}"
        raise ConcurrencyConflictError(msg) from e
    return True


async def _bump_coupon_stats(db: AsyncSession, coupon: Coupon, first_for_account: bool, now: datetime) -> None:
    """Increment redemption counters unless the global cap is already reached."""
    result = await db.execute(
        update(Coupon)
        .where(
            Coupon.id == coupon.id,
            Coupon.is_active.is_(True),
            or_(
                Coupon.usage_limit_total.is_(None),
                Coupon.total_redemptions < Coupon.usage_limit_total,
            ),
        )
        .values(
            total_redemptions=Coupon.total_redemptions + 1,
            unique_users=Coupon.unique_users + (1 if first_for_account else 0),
            updated_at=now,
        )
        .returning(Coupon.total_redemptions, Coupon.unique_users)
        .execution_options(synchronize_session=False)
    )
    row = result.one_or_none()
    if row is None:
        raise RedemptionRejectedError(RejectionReason.CAP_REACHED)

    set_committed_value(coupon, "total_redemptions", row[0])
    set_committed_value(coupon, "unique_users", row[1])
    set_committed_value(coupon, "updated_at", now)


async def _redeem_once(db: AsyncSession, account_id: int, coupon_id: int, now: datetime) -> Redemption:
    coupon = await get_coupon(db, coupon_id)
    await get_account(db, account_id)

    check = await is_redeemable(db, coupon, account_id, now)
    if not check.ok:
        raise RedemptionRejectedError(check.reason)  # type: ignore[arg-type]

    try:
        entry = await ledger.debit(
            db,
            account_id,
            coupon.points_cost,
            Reason.COUPON_REDEEMED,
            Reference(ReferenceType.COUPON, coupon.id),
            description=f"Redeemed: {coupon.title}"[:200],
            now=now,
        )
    except InsufficientBalanceError as e:
        raise RedemptionRejectedError(RejectionReason.INSUFFICIENT_POINTS) from e

    first = await _bump_usage(db, account_id, coupon, now)
    await _bump_coupon_stats(db, coupon, first, now)

    redemption = Redemption(
        coupon=coupon,
        coupon_id=coupon.id,
        account_id=account_id,
        ledger_entry_id=entry.id,
        points_spent=coupon.points_cost,
        code=await generate_unique_redemption_code(db),
        status=RedemptionStatus.ACTIVE.value,
        redeemed_at=now,
        expires_at=now + timedelta(days=get_settings().redemption_ttl_days),
        usage_details={},
    )
    db.add(redemption)
    try:
        await db.flush()
    except IntegrityError as e:
        msg = "Redemption code collision"
        raise ConcurrencyConflictError(msg) from e
    return redemption


async def redeem(
    db: AsyncSession,
    account_id: int,
    coupon_id: int,
    now: datetime | None = None,
    *,
    redis: Any = None,  # noqa: ANN401
) -> Redemption:
    """Exchange points for a coupon and commit.

    Raises:
        NotFoundError: Coupon or account missing or inactive.
        RedemptionRejectedError: Coupon not redeemable or balance too low.
        ConcurrencyConflictError: Lost every retry to concurrent writers.
    """
    now = now or datetime.now(timezone.utc)
    max_attempts = get_settings().redemption_max_attempts

    for attempt in range(1, max_attempts + 1):
        try:
            redemption = await _redeem_once(db, account_id, coupon_id, now)
            await db.commit()
        except ConcurrencyConflictError:
            await db.rollback()
            if attempt >= max_attempts:
                raise
            logger.warning(
                "Redemption of coupon %s by account %s conflicted (attempt %d/%d), retrying",
                coupon_id, account_id, attempt, max_attempts,
            )
            continue
        except Exception:
            await db.rollback()
            raise
        break

    logger.info(
        "Account %s redeemed coupon %s for %d points (redemption %s)",
        account_id, coupon_id, redemption.points_spent, redemption.id,
    )
    await publish(redis, REDEMPTIONS_CHANNEL, {
        "type": "redemption_committed",
        "redemption_id": redemption.id,
        "account_id": account_id,
        "coupon_id": coupon_id,
        "points_spent": redemption.points_spent,
        "redeemed_at": redemption.redeemed_at.isoformat(),
    })
    return redemption


async def refresh_expiration(db: AsyncSession, redemption: Redemption, now: datetime | None = None) -> Redemption:
    """Materialise ``expired`` on an active redemption past ``expires_at``.

    Flushes but does not commit.
    """
    now = now or datetime.now(timezone.utc)
    if redemption.status != RedemptionStatus.ACTIVE.value or now <= redemption.expires_at:
        return redemption

    await db.execute(
        update(Redemption)
        .where(Redemption.id == redemption.id, Redemption.status == RedemptionStatus.ACTIVE.value)
        .values(status=RedemptionStatus.EXPIRED.value)
        .execution_options(synchronize_session=False)
    )
    set_committed_value(redemption, "status", RedemptionStatus.EXPIRED.value)
    logger.info("Redemption %s expired", redemption.id)
    return redemption


async def _find_by_code(db: AsyncSession, code: str) -> Redemption:
    code = normalize_code(code)
    if not is_valid_code(code):
        raise NotFoundError("Redemption code not found")
    result = await db.execute(
        select(Redemption)
        .where(Redemption.code == code)
        .execution_options(populate_existing=True)
    )
    redemption = result.scalar_one_or_none()
    if redemption is None:
        raise NotFoundError("Redemption code not found")
    return redemption


async def get_redemption_by_code(
    db: AsyncSession,
    code: str,
    account_id: int | None = None,
    now: datetime | None = None,
) -> Redemption:
    """Look up a redemption, optionally scoped to its owner.

    Raises:
        NotFoundError: Unknown code, or owned by a different account.
    """
    redemption = await _find_by_code(db, code)
    if account_id is not None and redemption.account_id != account_id:
        raise NotFoundError("Redemption code not found")

    previous = redemption.status
    await refresh_expiration(db, redemption, now)
    if redemption.status != previous:
        await db.commit()
    return redemption


async def mark_used(
    db: AsyncSession,
    code: str,
    usage_details: dict[str, Any] | None = None,
    now: datetime | None = None,
    *,
    partner_name: str | None = None,
) -> Redemption:
    """Record that a partner honoured a redemption.

    Raises:
        NotFoundError: Unknown code, or a coupon of a different partner.
        AlreadyUsedError: Already marked used.
        RedemptionExpiredError: Past ``expires_at`` (status is committed as
            ``expired`` first).
    """
    now = now or datetime.now(timezone.utc)
    redemption = await _find_by_code(db, code)
    coupon_partner = redemption.coupon.partner_name
    if partner_name is not None and partner_name != coupon_partner:
        raise NotFoundError("Redemption code not found")

    if redemption.status == RedemptionStatus.USED.value:
        raise AlreadyUsedError("Coupon has already been used")

    await refresh_expiration(db, redemption, now)
    if redemption.status == RedemptionStatus.EXPIRED.value:
        await db.commit()
        raise RedemptionExpiredError("Redemption has expired")

    details = dict(redemption.usage_details or {})
    details.update({k: v for k, v in (usage_details or {}).items() if v is not None})
    details["partner"] = coupon_partner

    result = await db.execute(
        update(Redemption)
        .where(Redemption.id == redemption.id, Redemption.status == RedemptionStatus.ACTIVE.value)
        .values(status=RedemptionStatus.USED.value, used_at=now, usage_details=details)
        .returning(Redemption.id)
        .execution_options(synchronize_session=False)
    )
    if result.scalar_one_or_none() is None:
        # Another partner call won the race.
        await db.rollback()
        raise AlreadyUsedError("Coupon has already been used")

    set_committed_value(redemption, "status", RedemptionStatus.USED.value)
    set_committed_value(redemption, "used_at", now)
    set_committed_value(redemption, "usage_details", details)
    await db.commit()

    logger.info("Redemption %s marked used (partner=%s)", redemption.id, details.get("partner"))
    return redemption


async def list_redemptions(
    db: AsyncSession,
    account_id: int,
    status: RedemptionStatus | None = None,
    page: int = 1,
    limit: int = 20,
    now: datetime | None = None,
) -> tuple[list[Redemption], int]:
    """Page through an account's redemptions, newest first.

    Returns:
        Tuple of (redemptions, total matching).
    """
    now = now or datetime.now(timezone.utc)
    page = max(1, page)
    limit = max(1, min(limit, 100))

    await db.execute(
        update(Redemption)
        .where(
            Redemption.account_id == account_id,
            Redemption.status == RedemptionStatus.ACTIVE.value,
            Redemption.expires_at < now,
        )
        .values(status=RedemptionStatus.EXPIRED.value)
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    filters = [Redemption.account_id == account_id]
    if status is not None:
        filters.append(Redemption.status == status.value)

    total = await db.execute(select(func.count(Redemption.id)).where(*filters))
    result = await db.execute(
        select(Redemption)
        .where(*filters)
        .order_by(Redemption.redeemed_at.desc(), Redemption.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all()), int(total.scalar_one())
