"""Typed failures of the rewards core.

Every failure a caller is expected to handle (missing rows, rejected
redemptions, lifecycle violations, optimistic conflicts) is a subclass of
``RewardsError``. Each carries a stable ``code`` and the HTTP status the API
maps it to; the global handler in ``kcr.middleware.error_handler`` turns them
into JSON responses. Storage and programming errors are not wrapped.
"""

from __future__ import annotations

import enum
from typing import Any


class RejectionReason(str, enum.Enum):
    """Why a coupon cannot be redeemed right now."""

    COUPON_INACTIVE = "coupon_inactive"
    NOT_YET_VALID = "not_yet_valid"
    EXPIRED_COUPON = "expired_coupon"
    CAP_REACHED = "cap_reached"
    ALREADY_REDEEMED = "already_redeemed"
    INSUFFICIENT_POINTS = "insufficient_points"


REJECTION_MESSAGES: dict[RejectionReason, str] = {
    RejectionReason.COUPON_INACTIVE: "Coupon is no longer available",
    RejectionReason.NOT_YET_VALID: "Coupon is not valid yet",
    RejectionReason.EXPIRED_COUPON: "Coupon has expired",
    RejectionReason.CAP_REACHED: "Coupon has reached its redemption limit",
    RejectionReason.ALREADY_REDEEMED: "You have already redeemed this coupon the maximum number of times",
    RejectionReason.INSUFFICIENT_POINTS: "Insufficient points to redeem this coupon",
}


class RewardsError(Exception):
    """Base class for expected, caller-facing failures."""

    code = "rewards_error"
    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"detail": self.message, "code": self.code}


class NotFoundError(RewardsError):
    """Account, coupon or redemption is missing or inactive."""

    code = "not_found"
    status_code = 404


class InsufficientBalanceError(RewardsError):
    """A debit would take the balance below zero."""

    code = "insufficient_balance"

    def __init__(self, account_id: int, requested: int, available: int | None = None) -> None:
        super().__init__(f"Account {account_id} cannot cover a debit of {requested} points")
        self.account_id = account_id
        self.requested = requested
        self.available = available


class RedemptionRejectedError(RewardsError):
    """The redemption was refused before anything was written."""

    code = "redemption_rejected"

    def __init__(self, reason: RejectionReason) -> None:
        super().__init__(REJECTION_MESSAGES[reason])
        self.reason = reason

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "reason": self.reason.value}


class AlreadyUsedError(RewardsError):
    code = "already_used"
    status_code = 409


class RedemptionExpiredError(RewardsError):
    code = "redemption_expired"
    status_code = 410


class ConcurrencyConflictError(RewardsError):
    """A concurrent writer won a race; retry the whole operation."""

    code = "concurrency_conflict"
    status_code = 409
