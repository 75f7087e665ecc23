"""ORM models for accounts, the points ledger, coupons and redemptions.

Enumerated columns are stored as short strings; the allowed values live in
the ``str`` enums below so services and schemas share one definition.
"""

from __future__ import annotations

import enum
import math
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from kcr.db.base import Base
from kcr.db.types import JSONType, UTCDateTime


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class AccountStatus(str, enum.Enum):
    ACTIVE = "active"
    DEACTIVATED = "deactivated"


class Reason(str, enum.Enum):
    """Why points moved."""

    WELCOME_BONUS = "welcome_bonus"
    DAILY_LOGIN = "daily_login"
    POST_CREATED = "post_created"
    POST_LIKED = "post_liked"
    COMMENT_POSTED = "comment_posted"
    FOLLOW = "follow"
    FOLLOWED = "followed"
    COUPON_REDEEMED = "coupon_redeemed"
    CHECK_IN = "check_in"
    ADMIN_ADJUSTMENT = "admin_adjustment"


class EntryKind(str, enum.Enum):
    EARNED = "earned"
    SPENT = "spent"


class ReferenceType(str, enum.Enum):
    POST = "post"
    COMMENT = "comment"
    COUPON = "coupon"
    USER = "user"
    PLACE = "place"
    LEDGER_ENTRY = "ledger_entry"


class DiscountType(str, enum.Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"
    FREEBIE = "freebie"


class CouponCategory(str, enum.Enum):
    ACCOMMODATION = "accommodation"
    DINING = "dining"
    TRANSPORTATION = "transportation"
    ACTIVITIES = "activities"
    SHOPPING = "shopping"
    TOURS = "tours"
    GENERAL = "general"


class RedemptionStatus(str, enum.Enum):
    ACTIVE = "active"
    USED = "used"
    EXPIRED = "expired"


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


class Account(Base):
    """A point-bearing identity. ``balance`` is written only by the ledger."""

    __tablename__ = "accounts"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_accounts_balance_non_negative"),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=AccountStatus.ACTIVE.value)
    balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    deactivated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE.value


# ---------------------------------------------------------------------------
# Points ledger
# ---------------------------------------------------------------------------


class LedgerEntry(Base):
    """Immutable record of one point movement."""

    __tablename__ = "ledger_entries"
    __table_args__ = (
        CheckConstraint("amount <> 0", name="ck_ledger_entries_amount_non_zero"),
        CheckConstraint("balance_after >= 0", name="ck_ledger_entries_balance_after"),
        Index("ix_ledger_entries_account_created", "account_id", "created_at"),
        Index("ix_ledger_entries_reason_created", "reason", "created_at"),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("accounts.id"), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    reason: Mapped[str] = mapped_column(String(32), nullable=False)
    reference_type: Mapped[str | None] = mapped_column(String(16), nullable=True)
    reference_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    description: Mapped[str | None] = mapped_column(String(200), nullable=True)
    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)
    idempotency_key: Mapped[str | None] = mapped_column(String(128), unique=True, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    @property
    def display(self) -> str:
        sign = "+" if self.amount > 0 else ""
        return f"{sign}{self.amount} points - {self.description or self.reason}"


# ---------------------------------------------------------------------------
# Coupons
# ---------------------------------------------------------------------------


class Coupon(Base):
    """A redeemable offer from a partner."""

    __tablename__ = "coupons"
    __table_args__ = (
        CheckConstraint("valid_until > valid_from", name="ck_coupons_validity_window"),
        CheckConstraint("points_cost >= 1", name="ck_coupons_points_cost"),
        CheckConstraint("usage_limit_per_user >= 1", name="ck_coupons_per_user_limit"),
        CheckConstraint(
            "usage_limit_total IS NULL OR total_redemptions <= usage_limit_total",
            name="ck_coupons_total_cap",
        ),
        Index("ix_coupons_active_cost", "is_active", "points_cost"),
        Index("ix_coupons_active_until", "is_active", "valid_until"),
        Index("ix_coupons_category_active", "category", "is_active"),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    code: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    discount: Mapped[str] = mapped_column(String(50), nullable=False)
    discount_type: Mapped[str] = mapped_column(String(16), nullable=False)
    discount_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    points_cost: Mapped[int] = mapped_column(Integer, nullable=False)
    category: Mapped[str] = mapped_column(String(32), nullable=False, default=CouponCategory.GENERAL.value)
    partner_name: Mapped[str] = mapped_column(String(128), nullable=False)
    partner_contact: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    terms: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    valid_from: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    valid_until: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    usage_limit_total: Mapped[int | None] = mapped_column(Integer, nullable=True)
    usage_limit_per_user: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_featured: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    total_redemptions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unique_users: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    def is_currently_valid(self, now: datetime) -> bool:
        """Active, inside the validity window and below the global cap."""
        return (
            self.is_active
            and self.valid_from <= now <= self.valid_until
            and not self.cap_reached
        )

    @property
    def cap_reached(self) -> bool:
        return self.usage_limit_total is not None and self.total_redemptions >= self.usage_limit_total

    def days_remaining(self, now: datetime) -> int:
        seconds = (self.valid_until - now).total_seconds()
        return max(0, math.ceil(seconds / 86400))

    @property
    def usage_percentage(self) -> int:
        if not self.usage_limit_total:
            return 0
        return round(self.total_redemptions * 100 / self.usage_limit_total)


class CouponUsage(Base):
    """Per (account, coupon) redemption counter; serialises the per-account cap."""

    __tablename__ = "coupon_usage"

    account_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("accounts.id"), primary_key=True)
    coupon_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("coupons.id"), primary_key=True)
    redemption_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    first_redeemed_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    last_redeemed_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class Redemption(Base):
    """An account's redeemed coupon, verifiable by partners through ``code``."""

    __tablename__ = "redemptions"
    __table_args__ = (
        CheckConstraint("points_spent >= 1", name="ck_redemptions_points_spent"),
        Index("ix_redemptions_account_redeemed", "account_id", "redeemed_at"),
        Index("ix_redemptions_coupon_account", "coupon_id", "account_id"),
        Index("ix_redemptions_status_expires", "status", "expires_at"),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    coupon_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("coupons.id"), nullable=False)
    account_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("accounts.id"), nullable=False)
    ledger_entry_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("ledger_entries.id"), nullable=False)
    points_spent: Mapped[int] = mapped_column(Integer, nullable=False)
    code: Mapped[str] = mapped_column(String(16), unique=True, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=RedemptionStatus.ACTIVE.value)
    redeemed_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    used_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    usage_details: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)

    coupon: Mapped[Coupon] = relationship("Coupon", lazy="joined")


# ---------------------------------------------------------------------------
# Partner keys
# ---------------------------------------------------------------------------


class PartnerKey(Base):
    """API key a partner uses to mark redemptions as used."""

    __tablename__ = "partner_keys"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    partner_name: Mapped[str] = mapped_column(String(128), nullable=False)
    key_prefix: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    key_hash: Mapped[str] = mapped_column(Text, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    last_used_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
