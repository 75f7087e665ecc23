"""Fixed point awards for community actions.

These values are shown to users in the "ways to earn" list and MUST match
the copy in the mobile app's Coupons screen.
"""

from __future__ import annotations

from kcr.db.models import Reason

AWARD_AMOUNTS: dict[Reason, int] = {
    Reason.WELCOME_BONUS: 10,
    Reason.DAILY_LOGIN: 1,
    Reason.POST_CREATED: 5,
    Reason.POST_LIKED: 2,
    Reason.COMMENT_POSTED: 3,
    Reason.FOLLOW: 5,
    Reason.FOLLOWED: 10,
    Reason.CHECK_IN: 10,
}

_OPPORTUNITY_COPY: list[tuple[Reason, str, str]] = [
    (Reason.WELCOME_BONUS, "Sign up", "Welcome bonus for new users"),
    (Reason.DAILY_LOGIN, "Daily login", "Open the app once a day"),
    (Reason.POST_CREATED, "Create post", "Share your travel experiences"),
    (Reason.POST_LIKED, "Get a like", "Someone likes one of your posts"),
    (Reason.COMMENT_POSTED, "Comment on post", "Join the conversation"),
    (Reason.FOLLOW, "Follow user", "Connect with other travelers"),
    (Reason.FOLLOWED, "Get followed", "Build your travel network"),
    (Reason.CHECK_IN, "Check-in at location", "Share your travel location"),
]


def award_for(reason: Reason) -> int:
    """Points granted for an action.

    Raises:
        KeyError: If the reason is not a fixed community award.
    """
    return AWARD_AMOUNTS[reason]


def opportunities() -> list[dict]:
    """Ways to earn points, in display order."""
    return [
        {
            "reason": reason.value,
            "action": action,
            "points": AWARD_AMOUNTS[reason],
            "description": description,
        }
        for reason, action, description in _OPPORTUNITY_COPY
    ]
