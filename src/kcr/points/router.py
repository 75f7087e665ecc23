"""Points API endpoints."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from kcr.auth.dependencies import get_current_account
from kcr.database import get_session
from kcr.db.models import Account, EntryKind, LedgerEntry, Reason
from kcr.points import ledger
from kcr.points.awards import opportunities
from kcr.points.ledger import HistoryFilters
from kcr.points.schemas import (
    BalanceResponse,
    HistoryResponse,
    LeaderboardEntry,
    LeaderboardResponse,
    LedgerEntryResponse,
    OpportunitiesResponse,
    OpportunityResponse,
    ReasonTotal,
    SummaryResponse,
)

router = APIRouter(prefix="/api/v1/points", tags=["Points"])


def _entry_response(entry: LedgerEntry) -> LedgerEntryResponse:
    return LedgerEntryResponse(
        id=entry.id,
        amount=entry.amount,
        kind=entry.kind,
        reason=entry.reason,
        reference_type=entry.reference_type,
        reference_id=entry.reference_id,
        description=entry.description,
        balance_after=entry.balance_after,
        is_active=entry.is_active,
        display=entry.display,
        created_at=entry.created_at,
    )


@router.get("/balance", response_model=BalanceResponse)
async def get_balance(
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_session),
):
    """Current point balance."""
    return BalanceResponse(account_id=account.id, balance=await ledger.balance(db, account.id))


@router.get("/history", response_model=HistoryResponse)
async def get_history(
    reason: list[Reason] = Query(default=[]),
    kind: EntryKind | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    include_voided: bool = False,
    limit: int = Query(default=20, ge=1, le=ledger.MAX_PAGE_SIZE),
    cursor: str | None = None,
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_session),
):
    """Ledger entries, newest first, cursor-paginated."""
    filters = HistoryFilters(
        reasons=tuple(reason),
        kind=kind,
        since=since,
        until=until,
        include_voided=include_voided,
    )
    try:
        entries, next_cursor = await ledger.history(db, account.id, filters, limit=limit, cursor=cursor)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e

    return HistoryResponse(
        entries=[_entry_response(e) for e in entries],
        next_cursor=next_cursor,
        has_more=next_cursor is not None,
    )


@router.get("/summary", response_model=SummaryResponse)
async def get_summary(
    days: int = Query(default=30, ge=1, le=365),
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_session),
):
    """Earned/spent totals over the last ``days``."""
    data = await ledger.summary(db, account.id, days=days)
    return SummaryResponse(
        balance=await ledger.balance(db, account.id),
        days=data["days"],
        total_earned=data["total_earned"],
        total_spent=data["total_spent"],
        transaction_count=data["transaction_count"],
        by_reason=[ReasonTotal(**r) for r in data["by_reason"]],
    )


@router.get("/opportunities", response_model=OpportunitiesResponse)
async def get_opportunities():
    """Ways to earn points (public)."""
    return OpportunitiesResponse(opportunities=[OpportunityResponse(**o) for o in opportunities()])


@router.get("/leaderboard", response_model=LeaderboardResponse)
async def get_leaderboard(
    days: int = Query(default=30, ge=1, le=365),
    limit: int = Query(default=10, ge=1, le=100),
    db: AsyncSession = Depends(get_session),
):
    """Top earners over the last ``days`` (public)."""
    rows = await ledger.leaderboard(db, limit=limit, days=days)
    return LeaderboardResponse(days=days, entries=[LeaderboardEntry(**r) for r in rows])
