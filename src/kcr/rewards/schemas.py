"""Pydantic request/response models for rewards and admin endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from kcr.db.models import CouponCategory, DiscountType


# --- Coupons ---


class CouponResponse(BaseModel):
    id: int
    title: str
    description: str
    discount: str
    discount_type: str
    discount_value: int
    points_cost: int
    category: str
    partner_name: str
    partner_contact: dict = {}
    terms: list[str] = []
    valid_from: datetime
    valid_until: datetime
    days_remaining: int
    usage_limit_total: int | None = None
    usage_limit_per_user: int
    total_redemptions: int
    usage_percentage: int
    is_valid: bool
    is_featured: bool


class CouponDetailResponse(CouponResponse):
    can_redeem: bool
    redemption_reason: str | None = None
    has_enough_points: bool


class AvailableCouponsResponse(BaseModel):
    coupons: list[CouponResponse]
    balance: int


class FeaturedCouponsResponse(BaseModel):
    coupons: list[CouponResponse]


class CategoryCount(BaseModel):
    category: str
    count: int


class CategoriesResponse(BaseModel):
    categories: list[CategoryCount]


# --- Redemptions ---


class RedemptionCouponSummary(BaseModel):
    id: int
    title: str
    description: str
    discount: str
    partner_name: str
    terms: list[str] = []


class RedemptionResponse(BaseModel):
    id: int
    code: str
    status: str
    points_spent: int
    redeemed_at: datetime
    expires_at: datetime
    used_at: datetime | None = None
    usage_details: dict = {}
    coupon: RedemptionCouponSummary


class RedeemResponse(BaseModel):
    redemption: RedemptionResponse
    balance: int


class RedemptionListResponse(BaseModel):
    redemptions: list[RedemptionResponse]
    total: int
    page: int
    limit: int


class MarkUsedRequest(BaseModel):
    location: str | None = Field(default=None, max_length=200)
    transaction_id: str | None = Field(default=None, max_length=100)
    notes: str | None = Field(default=None, max_length=500)


# --- Admin ---


class CreateCouponRequest(BaseModel):
    title: str = Field(min_length=1, max_length=100)
    description: str = Field(min_length=1, max_length=500)
    code: str = Field(min_length=1, max_length=32)
    discount: str = Field(min_length=1, max_length=50)
    discount_type: DiscountType
    discount_value: int = Field(default=0, ge=0)
    points_cost: int = Field(ge=1)
    category: CouponCategory = CouponCategory.GENERAL
    partner_name: str = Field(min_length=1, max_length=128)
    partner_contact: dict = {}
    terms: list[str] = []
    valid_from: datetime
    valid_until: datetime
    usage_limit_total: int | None = Field(default=None, ge=1)
    usage_limit_per_user: int = Field(default=1, ge=1)
    is_featured: bool = False


class AdminCouponResponse(CouponResponse):
    code: str
    is_active: bool
    unique_users: int


class AdjustPointsRequest(BaseModel):
    account_id: int
    amount: int
    note: str = Field(min_length=1, max_length=200)


class VoidEntryRequest(BaseModel):
    note: str = Field(min_length=1, max_length=150)


class LedgerWriteResponse(BaseModel):
    entry_id: int
    account_id: int
    amount: int
    reason: str
    balance_after: int


class IssuePartnerKeyRequest(BaseModel):
    partner_name: str = Field(min_length=1, max_length=128)


class PartnerKeyResponse(BaseModel):
    id: int
    partner_name: str
    key_prefix: str
    api_key: str


class AccountStatusResponse(BaseModel):
    id: int
    username: str
    status: str
    balance: int
    deactivated_at: datetime | None = None
