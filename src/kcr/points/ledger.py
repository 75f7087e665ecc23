"""Points ledger: append-only point movements and the balances derived from them.

Rules:
- ``accounts.balance`` changes only through ``grant``/``debit`` here
- every change appends exactly one ``LedgerEntry`` with the resulting balance
- a debit that would go negative is rejected whole (guarded UPDATE)
- entries are never deleted; corrections void an entry and append a reversal

Functions flush but never commit, so a caller can compose a debit with other
writes (see ``kcr.rewards.redemption``) in a single transaction.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import NamedTuple

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from kcr.accounts.service import get_account
from kcr.db.models import Account, AccountStatus, EntryKind, LedgerEntry, Reason, ReferenceType
from kcr.errors import ConcurrencyConflictError, InsufficientBalanceError, NotFoundError
from kcr.points.pagination import apply_cursor, encode_cursor

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


class Reference(NamedTuple):
    """The entity that caused a point movement."""

    type: ReferenceType
    id: object


class HistoryFilters(NamedTuple):
    reasons: tuple[Reason, ...] = ()
    kind: EntryKind | None = None
    since: datetime | None = None
    until: datetime | None = None
    include_voided: bool = False


async def find_by_idempotency_key(db: AsyncSession, key: str) -> LedgerEntry | None:
    result = await db.execute(select(LedgerEntry).where(LedgerEntry.idempotency_key == key))
    return result.scalar_one_or_none()


async def _apply(
    db: AsyncSession,
    account_id: int,
    amount: int,
    reason: Reason,
    reference: Reference | None,
    description: str | None,
    idempotency_key: str | None,
    now: datetime | None,
) -> LedgerEntry:
    """Move ``amount`` points (signed) and append the matching entry."""
    if idempotency_key is not None:
        existing = await find_by_idempotency_key(db, idempotency_key)
        if existing is not None:
            logger.debug("Duplicate ledger write ignored (key=%s)", idempotency_key)
            return existing

    account = await get_account(db, account_id)
    now = now or datetime.now(timezone.utc)

    stmt = update(Account).where(
        Account.id == account_id,
        Account.status == AccountStatus.ACTIVE.value,
    )
    if amount < 0:
        stmt = stmt.where(Account.balance >= -amount)
    stmt = (
        stmt.values(balance=Account.balance + amount, updated_at=now)
        .returning(Account.balance)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    new_balance = result.scalar_one_or_none()

    if new_balance is None:
        if amount < 0:
            current = await balance(db, account_id)
            raise InsufficientBalanceError(account_id, -amount, current)
        raise NotFoundError(f"Account {account_id} not found")

    # Keep the loaded Account in step with the row without dirtying it.
    set_committed_value(account, "balance", new_balance)
    set_committed_value(account, "updated_at", now)

    entry = LedgerEntry(
        account_id=account_id,
        amount=amount,
        kind=(EntryKind.EARNED if amount > 0 else EntryKind.SPENT).value,
        reason=reason.value,
        reference_type=reference.type.value if reference else None,
        reference_id=str(reference.id) if reference else None,
        description=description,
        balance_after=new_balance,
        idempotency_key=idempotency_key,
        created_at=now,
    )
    db.add(entry)
    try:
        await db.flush()
    except IntegrityError as e:
        # Same idempotency key written by a concurrent transaction.
        msg = f"Concurrent ledger write for account {account_id}"
        raise ConcurrencyConflictError(msg) from e

    logger.info(
        "Ledger %s %+d for account %s (reason=%s, balance=%d)",
        entry.kind, amount, account_id, reason.value, new_balance,
    )
    return entry


async def grant(
    db: AsyncSession,
    account_id: int,
    amount: int,
    reason: Reason,
    reference: Reference | None = None,
    *,
    description: str | None = None,
    idempotency_key: str | None = None,
    now: datetime | None = None,
) -> LedgerEntry:
    """Add points to an account.

    Raises:
        ValueError: If ``amount`` is not positive.
        NotFoundError: If the account is missing or deactivated.
    """
    if amount <= 0:
        msg = f"Grant amount must be positive, got {amount}"
        raise ValueError(msg)
    return await _apply(db, account_id, amount, reason, reference, description, idempotency_key, now)


async def debit(
    db: AsyncSession,
    account_id: int,
    amount: int,
    reason: Reason,
    reference: Reference | None = None,
    *,
    description: str | None = None,
    idempotency_key: str | None = None,
    now: datetime | None = None,
) -> LedgerEntry:
    """Remove points from an account; the stored entry amount is negative.

    Raises:
        ValueError: If ``amount`` is not positive.
        NotFoundError: If the account is missing or deactivated.
        InsufficientBalanceError: If the balance cannot cover ``amount``.
    """
    if amount <= 0:
        msg = f"Debit amount must be positive, got {amount}"
        raise ValueError(msg)
    return await _apply(db, account_id, -amount, reason, reference, description, idempotency_key, now)


async def balance(db: AsyncSession, account_id: int) -> int:
    """Current balance, read from the row (not the identity map)."""
    result = await db.execute(select(Account.balance).where(Account.id == account_id))
    value = result.scalar_one_or_none()
    if value is None:
        raise NotFoundError(f"Account {account_id} not found")
    return int(value)


async def ledger_sum(db: AsyncSession, account_id: int) -> int:
    """Sum of every entry ever written for the account, voided ones included."""
    result = await db.execute(
        select(func.coalesce(func.sum(LedgerEntry.amount), 0)).where(LedgerEntry.account_id == account_id)
    )
    return int(result.scalar_one())


async def verify_balance(db: AsyncSession, account_id: int) -> bool:
    """True when the stored balance equals the ledger sum."""
    return await balance(db, account_id) == await ledger_sum(db, account_id)


async def history(
    db: AsyncSession,
    account_id: int,
    filters: HistoryFilters | None = None,
    limit: int = 50,
    cursor: str | None = None,
) -> tuple[list[LedgerEntry], str | None]:
    """Fetch a page of ledger entries, newest first.

    Returns:
        Tuple of (entries, next_cursor or None).

    Raises:
        ValueError: If ``cursor`` is malformed.
    """
    filters = filters or HistoryFilters()
    limit = max(1, min(limit, MAX_PAGE_SIZE))

    query = (
        select(LedgerEntry)
        .where(LedgerEntry.account_id == account_id)
        .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
    )
    if not filters.include_voided:
        query = query.where(LedgerEntry.is_active.is_(True))
    if filters.reasons:
        query = query.where(LedgerEntry.reason.in_([r.value for r in filters.reasons]))
    if filters.kind is not None:
        query = query.where(LedgerEntry.kind == filters.kind.value)
    if filters.since is not None:
        query = query.where(LedgerEntry.created_at >= filters.since)
    if filters.until is not None:
        query = query.where(LedgerEntry.created_at <= filters.until)

    query = apply_cursor(query, cursor).limit(limit + 1)

    result = await db.execute(query)
    rows = list(result.scalars().all())

    items = rows[:limit]
    next_cursor = None
    if len(rows) > limit and items:
        last = items[-1]
        next_cursor = encode_cursor(last.created_at, last.id)
    return items, next_cursor


async def summary(
    db: AsyncSession,
    account_id: int,
    days: int = 30,
    now: datetime | None = None,
) -> dict:
    """Earned/spent totals and per-reason breakdown over the last ``days``."""
    now = now or datetime.now(timezone.utc)
    since = now - timedelta(days=days)
    window = (
        LedgerEntry.account_id == account_id,
        LedgerEntry.is_active.is_(True),
        LedgerEntry.created_at >= since,
    )

    totals = await db.execute(
        select(
            func.coalesce(func.sum(case((LedgerEntry.amount > 0, LedgerEntry.amount), else_=0)), 0),
            func.coalesce(func.sum(case((LedgerEntry.amount < 0, -LedgerEntry.amount), else_=0)), 0),
            func.count(LedgerEntry.id),
        ).where(*window)
    )
    earned, spent, count = totals.one()

    by_reason = await db.execute(
        select(LedgerEntry.reason, func.sum(LedgerEntry.amount), func.count(LedgerEntry.id))
        .where(*window)
        .group_by(LedgerEntry.reason)
        .order_by(LedgerEntry.reason)
    )

    return {
        "days": days,
        "total_earned": int(earned),
        "total_spent": int(spent),
        "transaction_count": int(count),
        "by_reason": [
            {"reason": reason, "points": int(points), "count": int(n)}
            for reason, points, n in by_reason.all()
        ],
    }


async def leaderboard(
    db: AsyncSession,
    limit: int = 10,
    days: int = 30,
    now: datetime | None = None,
) -> list[dict]:
    """Accounts ranked by points earned in the last ``days``."""
    now = now or datetime.now(timezone.utc)
    since = now - timedelta(days=days)
    earned = func.sum(LedgerEntry.amount).label("earned")

    result = await db.execute(
        select(Account.id, Account.username, Account.balance, earned)
        .join(LedgerEntry, LedgerEntry.account_id == Account.id)
        .where(
            LedgerEntry.kind == EntryKind.EARNED.value,
            LedgerEntry.is_active.is_(True),
            LedgerEntry.created_at >= since,
            Account.status == AccountStatus.ACTIVE.value,
        )
        .group_by(Account.id, Account.username, Account.balance)
        .order_by(earned.desc(), Account.id.asc())
        .limit(limit)
    )
    return [
        {
            "rank": i,
            "account_id": row.id,
            "username": row.username,
            "balance": int(row.balance),
            "earned_in_period": int(row.earned),
        }
        for i, row in enumerate(result.all(), start=1)
    ]


async def adjust(
    db: AsyncSession,
    account_id: int,
    amount: int,
    note: str,
    now: datetime | None = None,
) -> LedgerEntry:
    """Admin correction: positive amounts grant, negative amounts debit."""
    if amount == 0:
        msg = "Adjustment amount cannot be zero"
        raise ValueError(msg)
    if amount > 0:
        return await grant(db, account_id, amount, Reason.ADMIN_ADJUSTMENT, description=note, now=now)
    return await debit(db, account_id, -amount, Reason.ADMIN_ADJUSTMENT, description=note, now=now)


async def void_entry(
    db: AsyncSession,
    entry_id: int,
    note: str,
    now: datetime | None = None,
) -> LedgerEntry:
    """Soft-deactivate an entry and append its reversal.

    Returns the reversal entry. The voided entry stays in the table, so the
    balance keeps matching the sum of all entries.
    """
    result = await db.execute(select(LedgerEntry).where(LedgerEntry.id == entry_id))
    entry = result.scalar_one_or_none()
    if entry is None or not entry.is_active:
        raise NotFoundError(f"Ledger entry {entry_id} not found")
    if entry.reason == Reason.COUPON_REDEEMED.value:
        # Refunding a redemption would leave a Redemption without its debit.
        msg = "Coupon redemption debits cannot be voided"
        raise ValueError(msg)

    reversal = await _apply(
        db,
        entry.account_id,
        -entry.amount,
        Reason.ADMIN_ADJUSTMENT,
        Reference(ReferenceType.LEDGER_ENTRY, entry.id),
        f"Reversal of entry {entry.id}: {note}"[:200],
        f"void:{entry.id}",
        now,
    )
    entry.is_active = False
    await db.flush()
    return reversal
