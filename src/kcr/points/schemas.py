"""Pydantic response models for points endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class BalanceResponse(BaseModel):
    account_id: int
    balance: int


class LedgerEntryResponse(BaseModel):
    id: int
    amount: int
    kind: str
    reason: str
    reference_type: str | None = None
    reference_id: str | None = None
    description: str | None = None
    balance_after: int
    is_active: bool
    display: str
    created_at: datetime


class HistoryResponse(BaseModel):
    entries: list[LedgerEntryResponse]
    next_cursor: str | None = None
    has_more: bool


class ReasonTotal(BaseModel):
    reason: str
    points: int
    count: int


class SummaryResponse(BaseModel):
    balance: int
    days: int
    total_earned: int
    total_spent: int
    transaction_count: int
    by_reason: list[ReasonTotal]


class OpportunityResponse(BaseModel):
    reason: str
    action: str
    points: int
    description: str


class OpportunitiesResponse(BaseModel):
    opportunities: list[OpportunityResponse]


class LeaderboardEntry(BaseModel):
    rank: int
    account_id: int
    username: str
    balance: int
    earned_in_period: int


class LeaderboardResponse(BaseModel):
    days: int
    entries: list[LeaderboardEntry]
