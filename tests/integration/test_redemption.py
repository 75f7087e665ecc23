"""Redemption transactions: atomicity, caps, retries and lazy expiry."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from kcr.database import get_session_factory
from kcr.db.models import Coupon, CouponUsage, LedgerEntry, Reason, Redemption, RedemptionStatus
from kcr.errors import (
    AlreadyUsedError,
    ConcurrencyConflictError,
    NotFoundError,
    RedemptionExpiredError,
    RedemptionRejectedError,
    RejectionReason,
)
from kcr.points import ledger
from kcr.rewards import redemption as redemption_module
from kcr.rewards.codes import CODE_CHARSET
from kcr.rewards.redemption import (
    REDEMPTIONS_CHANNEL,
    get_redemption_by_code,
    list_redemptions,
    mark_used,
    redeem,
)


async def _count(db, model, *where) -> int:
    result = await db.execute(select(func.count()).select_from(model).where(*where))
    return int(result.scalar_one())


class TestRedeem:
    """The happy path and every rejection."""

    async def test_redeem_debits_and_records(self, db_session, make_account, make_coupon):
        account = await make_account(balance=100)
        coupon = await make_coupon(points_cost=30)
        now = datetime.now(timezone.utc)

        r = await redeem(db_session, account.id, coupon.id, now)

        assert r.status == RedemptionStatus.ACTIVE.value
        assert r.points_spent == 30
        assert len(r.code) == 8
        assert all(c in CODE_CHARSET for c in r.code)
        assert r.expires_at == now + timedelta(days=30)
        assert await ledger.balance(db_session, account.id) == 70
        assert await ledger.verify_balance(db_session, account.id)

        entry = await db_session.get(LedgerEntry, r.ledger_entry_id)
        assert entry.amount == -30
        assert entry.reason == Reason.COUPON_REDEEMED.value
        assert entry.reference_id == str(coupon.id)

        await db_session.refresh(coupon)
        assert coupon.total_redemptions == 1
        assert coupon.unique_users == 1

    async def test_insufficient_points_writes_nothing(self, db_session, make_account, make_coupon):
        account_id = (await make_account(balance=10)).id
        coupon_id = (await make_coupon(points_cost=30)).id

        with pytest.raises(RedemptionRejectedError) as exc:
            await redeem(db_session, account_id, coupon_id)

        assert exc.value.reason == RejectionReason.INSUFFICIENT_POINTS
        assert await ledger.balance(db_session, account_id) == 10
        assert await _count(db_session, CouponUsage) == 0
        assert await _count(db_session, Redemption) == 0

    async def test_per_account_cap(self, db_session, make_account, make_coupon):
        account_id = (await make_account(balance=100)).id
        coupon_id = (await make_coupon(points_cost=10)).id
        await redeem(db_session, account_id, coupon_id)

        with pytest.raises(RedemptionRejectedError) as exc:
            await redeem(db_session, account_id, coupon_id)

        assert exc.value.reason == RejectionReason.ALREADY_REDEEMED
        assert await ledger.balance(db_session, account_id) == 90

    async def test_repeat_redemptions_within_limit(self, db_session, make_account, make_coupon):
        account = await make_account(balance=100)
        coupon = await make_coupon(points_cost=10, usage_limit_per_user=2)
        first = await redeem(db_session, account.id, coupon.id)
        second = await redeem(db_session, account.id, coupon.id)

        assert first.code != second.code
        await db_session.refresh(coupon)
        assert coupon.total_redemptions == 2
        assert coupon.unique_users == 1
        count = await db_session.execute(
            select(CouponUsage.redemption_count).where(CouponUsage.account_id == account.id)
        )
        assert count.scalar_one() == 2

    async def test_global_cap(self, db_session, make_account, make_coupon):
        first_id = (await make_account(balance=100)).id
        second_id = (await make_account(balance=100)).id
        coupon_id = (await make_coupon(points_cost=10, usage_limit_total=1)).id
        await redeem(db_session, first_id, coupon_id)

        with pytest.raises(RedemptionRejectedError) as exc:
            await redeem(db_session, second_id, coupon_id)
        assert exc.value.reason == RejectionReason.CAP_REACHED
        assert await ledger.balance(db_session, second_id) == 100

    async def test_expired_and_future_coupons(self, db_session, make_account, make_coupon):
        account_id = (await make_account(balance=100)).id
        coupon_id = (await make_coupon()).id
        now = datetime.now(timezone.utc)

        with pytest.raises(RedemptionRejectedError) as exc:
            await redeem(db_session, account_id, coupon_id, now + timedelta(days=60))
        assert exc.value.reason == RejectionReason.EXPIRED_COUPON

        with pytest.raises(RedemptionRejectedError) as exc:
            await redeem(db_session, account_id, coupon_id, now - timedelta(days=5))
        assert exc.value.reason == RejectionReason.NOT_YET_VALID

    async def test_unknown_coupon_or_account(self, db_session, make_account, make_coupon):
        account_id = (await make_account(balance=100)).id
        coupon_id = (await make_coupon()).id
        with pytest.raises(NotFoundError):
            await redeem(db_session, account_id, 9999)
        with pytest.raises(NotFoundError):
            await redeem(db_session, 9999, coupon_id)


class TestAtomicity:
    """A failure at any step leaves no trace."""

    async def test_failure_after_debit_rolls_everything_back(
        self, db_session, make_account, make_coupon, monkeypatch,
    ):
        account_id = (await make_account(balance=100)).id
        coupon_id = (await make_coupon(points_cost=30)).id

        async def broken(db):
            raise RuntimeError("code generator down")

        monkeypatch.setattr(redemption_module, "generate_unique_redemption_code", broken)

        with pytest.raises(RuntimeError):
            await redeem(db_session, account_id, coupon_id)

        assert await ledger.balance(db_session, account_id) == 100
        assert await _count(db_session, LedgerEntry, LedgerEntry.reason == Reason.COUPON_REDEEMED.value) == 0
        assert await _count(db_session, CouponUsage) == 0
        assert await _count(db_session, Redemption) == 0
        stats = await db_session.execute(
            select(Coupon.total_redemptions, Coupon.unique_users).where(Coupon.id == coupon_id)
        )
        assert tuple(stats.one()) == (0, 0)

    async def test_conflict_is_retried(self, db_session, make_account, make_coupon, monkeypatch):
        account_id = (await make_account(balance=100)).id
        coupon_id = (await make_coupon(points_cost=30)).id
        real = redemption_module.generate_unique_redemption_code
        calls = []

        async def flaky(db):
            calls.append(1)
            if len(calls) == 1:
                raise ConcurrencyConflictError("lost a race")
            return await real(db)

        monkeypatch.setattr(redemption_module, "generate_unique_redemption_code", flaky)

        r = await redeem(db_session, account_id, coupon_id)

        assert len(calls) == 2
        assert r.id is not None
        assert await ledger.balance(db_session, account_id) == 70
        assert await _count(db_session, Redemption) == 1

    async def test_conflict_retries_are_bounded(self, db_session, make_account, make_coupon, monkeypatch):
        account_id = (await make_account(balance=100)).id
        coupon_id = (await make_coupon(points_cost=30)).id
        calls = []

        async def always_conflicts(db):
            calls.append(1)
            raise ConcurrencyConflictError("lost a race")

        monkeypatch.setattr(redemption_module, "generate_unique_redemption_code", always_conflicts)

        with pytest.raises(ConcurrencyConflictError):
            await redeem(db_session, account_id, coupon_id)

        assert len(calls) == 3
        assert await ledger.balance(db_session, account_id) == 100


class TestConcurrency:
    async def test_last_slot_goes_to_exactly_one_account(self, db_session, make_account, make_coupon):
        first = await make_account(balance=100)
        second = await make_account(balance=100)
        coupon = await make_coupon(points_cost=10, usage_limit_total=1)
        factory = get_session_factory()

        async with factory() as s1, factory() as s2:
            results = await asyncio.gather(
                redeem(s1, first.id, coupon.id),
                redeem(s2, second.id, coupon.id),
                return_exceptions=True,
            )

        succeeded = [r for r in results if isinstance(r, Redemption)]
        rejected = [r for r in results if isinstance(r, RedemptionRejectedError)]
        assert len(succeeded) == 1
        assert len(rejected) == 1
        assert rejected[0].reason == RejectionReason.CAP_REACHED

        balances = sorted([
            await ledger.balance(db_session, first.id),
            await ledger.balance(db_session, second.id),
        ])
        assert balances == [90, 100]
        assert await _count(db_session, Redemption) == 1

    async def test_parallel_redemptions_cannot_overdraw(self, db_session, make_account, make_coupon):
        account_id = (await make_account(balance=30)).id
        first = await make_coupon(points_cost=30)
        second = await make_coupon(points_cost=30)
        factory = get_session_factory()

        async with factory() as s1, factory() as s2:
            results = await asyncio.gather(
                redeem(s1, account_id, first.id),
                redeem(s2, account_id, second.id),
                return_exceptions=True,
            )

        succeeded = [r for r in results if isinstance(r, Redemption)]
        rejected = [r for r in results if isinstance(r, RedemptionRejectedError)]
        assert len(succeeded) == 1
        assert [e.reason for e in rejected] == [RejectionReason.INSUFFICIENT_POINTS]

        assert await ledger.balance(db_session, account_id) == 0
        assert await ledger.verify_balance(db_session, account_id)
        assert await _count(db_session, Redemption) == 1
        assert await _count(db_session, LedgerEntry, LedgerEntry.reason == Reason.COUPON_REDEEMED.value) == 1

    async def test_parallel_redemptions_respect_per_account_limit(self, db_session, make_account, make_coupon):
        account_id = (await make_account(balance=100)).id
        coupon_id = (await make_coupon(points_cost=10, usage_limit_per_user=1)).id
        factory = get_session_factory()

        async with factory() as s1, factory() as s2, factory() as s3:
            results = await asyncio.gather(
                redeem(s1, account_id, coupon_id),
                redeem(s2, account_id, coupon_id),
                redeem(s3, account_id, coupon_id),
                return_exceptions=True,
            )

        succeeded = [r for r in results if isinstance(r, Redemption)]
        rejected = [r for r in results if isinstance(r, RedemptionRejectedError)]
        assert len(succeeded) == 1
        assert [e.reason for e in rejected] == [RejectionReason.ALREADY_REDEEMED] * 2

        assert await ledger.balance(db_session, account_id) == 90
        assert await ledger.verify_balance(db_session, account_id)
        usage = await db_session.execute(
            select(CouponUsage.redemption_count).where(
                CouponUsage.account_id == account_id, CouponUsage.coupon_id == coupon_id,
            )
        )
        assert usage.scalar_one() == 1


class TestPublish:
    async def test_commit_is_announced(self, db_session, make_account, make_coupon, mock_redis):
        account = await make_account(balance=100)
        coupon = await make_coupon(points_cost=30)

        r = await redeem(db_session, account.id, coupon.id, redis=mock_redis)

        mock_redis.publish.assert_awaited_once()
        channel, body = mock_redis.publish.await_args.args
        assert channel == REDEMPTIONS_CHANNEL
        assert f'"redemption_id": {r.id}' in body

    async def test_publish_failure_does_not_undo_redemption(
        self, db_session, make_account, make_coupon, mock_redis,
    ):
        account = await make_account(balance=100)
        coupon = await make_coupon(points_cost=30)
        mock_redis.publish.side_effect = ConnectionError("redis down")

        await redeem(db_session, account.id, coupon.id, redis=mock_redis)
        assert await ledger.balance(db_session, account.id) == 70


class TestRedemptionLifecycle:
    """Lookup, partner use and lazy expiry."""

    async def test_lookup_is_case_insensitive_and_owner_scoped(self, db_session, make_account, make_coupon):
        owner = await make_account(balance=100)
        other = await make_account()
        coupon = await make_coupon()
        r = await redeem(db_session, owner.id, coupon.id)

        found = await get_redemption_by_code(db_session, r.code.lower(), owner.id)
        assert found.id == r.id
        with pytest.raises(NotFoundError):
            await get_redemption_by_code(db_session, r.code, other.id)
        with pytest.raises(NotFoundError):
            await get_redemption_by_code(db_session, "ZZZZZZZZ")

    async def test_mark_used_once(self, db_session, make_account, make_coupon):
        account = await make_account(balance=100)
        coupon = await make_coupon()
        r = await redeem(db_session, account.id, coupon.id)

        used = await mark_used(
            db_session, r.code, {"location": "Kochi", "notes": None}, partner_name="Backwater Cruises",
        )
        assert used.status == RedemptionStatus.USED.value
        assert used.used_at is not None
        assert used.usage_details == {"location": "Kochi", "partner": "Backwater Cruises"}

        with pytest.raises(AlreadyUsedError):
            await mark_used(db_session, r.code)

    async def test_mark_used_is_scoped_to_the_coupon_partner(self, db_session, make_account, make_coupon):
        account = await make_account(balance=100)
        coupon = await make_coupon(partner_name="Backwater Cruises")
        r = await redeem(db_session, account.id, coupon.id)
        redemption_id, code = r.id, r.code

        with pytest.raises(NotFoundError):
            await mark_used(db_session, code, partner_name="Munnar Spice House")

        stored = await db_session.execute(
            select(Redemption.status, Redemption.used_at).where(Redemption.id == redemption_id)
        )
        assert stored.one() == (RedemptionStatus.ACTIVE.value, None)

        used = await mark_used(db_session, code, {"partner": "Someone Else"}, partner_name="Backwater Cruises")
        assert used.usage_details == {"partner": "Backwater Cruises"}

    @pytest.mark.parametrize("code", ["AB-12", "", "   "])
    async def test_malformed_codes_are_not_found(self, db_session, code):
        with pytest.raises(NotFoundError):
            await get_redemption_by_code(db_session, code)
        with pytest.raises(NotFoundError):
            await mark_used(db_session, code)

    async def test_expiry_is_materialised_on_read(self, db_session, make_account, make_coupon):
        account = await make_account(balance=100)
        coupon = await make_coupon()
        now = datetime.now(timezone.utc)
        r = await redeem(db_session, account.id, coupon.id, now)

        later = now + timedelta(days=31)
        found = await get_redemption_by_code(db_session, r.code, now=later)
        assert found.status == RedemptionStatus.EXPIRED.value

        stored = await db_session.execute(select(Redemption.status).where(Redemption.id == r.id))
        assert stored.scalar_one() == RedemptionStatus.EXPIRED.value

    async def test_mark_used_after_expiry(self, db_session, make_account, make_coupon):
        account = await make_account(balance=100)
        coupon = await make_coupon()
        now = datetime.now(timezone.utc)
        r = await redeem(db_session, account.id, coupon.id, now)

        with pytest.raises(RedemptionExpiredError):
            await mark_used(db_session, r.code, now=now + timedelta(days=31))

        stored = await db_session.execute(select(Redemption.status).where(Redemption.id == r.id))
        assert stored.scalar_one() == RedemptionStatus.EXPIRED.value
        # Points are not refunded on expiry.
        assert await ledger.balance(db_session, account.id) == 70

    async def test_list_newest_first_with_status_filter(self, db_session, make_account, make_coupon):
        account = await make_account(balance=100)
        now = datetime.now(timezone.utc)
        old = await redeem(db_session, account.id, (await make_coupon(points_cost=10)).id, now - timedelta(hours=2))
        new = await redeem(db_session, account.id, (await make_coupon(points_cost=10)).id, now)
        await mark_used(db_session, old.code, now=now)

        items, total = await list_redemptions(db_session, account.id, now=now)
        assert total == 2
        assert [r.id for r in items] == [new.id, old.id]

        items, total = await list_redemptions(db_session, account.id, RedemptionStatus.USED, now=now)
        assert total == 1
        assert items[0].id == old.id

        items, total = await list_redemptions(db_session, account.id, page=2, limit=1, now=now)
        assert total == 2
        assert [r.id for r in items] == [old.id]

    async def test_list_expires_stale_redemptions(self, db_session, make_account, make_coupon):
        account = await make_account(balance=100)
        now = datetime.now(timezone.utc)
        await redeem(db_session, account.id, (await make_coupon()).id, now)

        items, _ = await list_redemptions(
            db_session, account.id, RedemptionStatus.EXPIRED, now=now + timedelta(days=31),
        )
        assert len(items) == 1
