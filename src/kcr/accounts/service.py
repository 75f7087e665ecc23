"""Account directory adapter.

Accounts are owned by the user-management side of the app; this service
only tracks the point-bearing identity and its lifecycle
(active <-> deactivated). Balances are never written here.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from kcr.db.models import Account, AccountStatus
from kcr.errors import NotFoundError

logger = logging.getLogger(__name__)


async def get_account(db: AsyncSession, account_id: int, *, include_inactive: bool = False) -> Account:
    """Load an account.

    Raises:
        NotFoundError: If missing, or deactivated unless ``include_inactive``.
    """
    result = await db.execute(select(Account).where(Account.id == account_id))
    account = result.scalar_one_or_none()
    if account is None or (not include_inactive and not account.is_active):
        raise NotFoundError(f"Account {account_id} not found")
    return account


async def create_account(
    db: AsyncSession,
    username: str,
    *,
    welcome_bonus: bool = True,
    now: datetime | None = None,
) -> Account:
    """Register an account (balance 0) and apply the welcome bonus."""
    from kcr.points.events import AccountRegistered, apply_event

    now = now or datetime.now(timezone.utc)
    account = Account(username=username, balance=0, created_at=now, updated_at=now)
    db.add(account)
    await db.flush()

    if welcome_bonus:
        await apply_event(db, AccountRegistered(account_id=account.id), now=now)

    logger.info("Account %s registered (%s)", account.id, username)
    return account


async def deactivate_account(db: AsyncSession, account_id: int, now: datetime | None = None) -> Account:
    """Move an account to ``deactivated``. History and balance are retained."""
    account = await get_account(db, account_id)
    account.status = AccountStatus.DEACTIVATED.value
    account.deactivated_at = now or datetime.now(timezone.utc)
    account.updated_at = account.deactivated_at
    await db.flush()
    return account


async def reactivate_account(db: AsyncSession, account_id: int, now: datetime | None = None) -> Account:
    """Move a deactivated account back to ``active``."""
    account = await get_account(db, account_id, include_inactive=True)
    if account.is_active:
        return account
    account.status = AccountStatus.ACTIVE.value
    account.deactivated_at = None
    account.updated_at = now or datetime.now(timezone.utc)
    await db.flush()
    return account
