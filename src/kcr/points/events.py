"""Point-earning domain events.

Community features (posts, likes, comments, follows, check-ins) live outside
this service. They announce what happened as explicit events; the ledger
turns each event into fixed grants. Every grant carries an idempotency key
derived from the event, so redelivered events never pay twice.

Unfollowing does not reverse the follow/followed grants, and following the
same account again does not pay again.
"""

from __future__ import annotations

import dataclasses
import logging
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from kcr.db.models import LedgerEntry, Reason, ReferenceType
from kcr.points import ledger
from kcr.points.awards import award_for
from kcr.points.ledger import Reference

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class AccountRegistered:
    account_id: int


@dataclasses.dataclass(frozen=True)
class DailyLogin:
    account_id: int
    day: date


@dataclasses.dataclass(frozen=True)
class PostCreated:
    post_id: str
    author_id: int


@dataclasses.dataclass(frozen=True)
class PostLiked:
    post_id: str
    actor_id: int
    author_id: int


@dataclasses.dataclass(frozen=True)
class CommentPosted:
    comment_id: str
    post_id: str
    author_id: int


@dataclasses.dataclass(frozen=True)
class Followed:
    follower_id: int
    followee_id: int


@dataclasses.dataclass(frozen=True)
class CheckedIn:
    account_id: int
    place_id: str
    day: date


PointsEvent = AccountRegistered | DailyLogin | PostCreated | PostLiked | CommentPosted | Followed | CheckedIn

EVENT_TYPES: dict[str, type] = {
    "account_registered": AccountRegistered,
    "daily_login": DailyLogin,
    "post_created": PostCreated,
    "post_liked": PostLiked,
    "comment_posted": CommentPosted,
    "followed": Followed,
    "checked_in": CheckedIn,
}


def parse_event(name: str, payload: dict[str, Any]) -> PointsEvent:
    """Build an event from its stream name and JSON payload.

    Raises:
        ValueError: On unknown event names or missing/invalid fields.
    """
    event_type = EVENT_TYPES.get(name)
    if event_type is None:
        msg = f"Unknown points event: {name!r}"
        raise ValueError(msg)

    kwargs: dict[str, Any] = {}
    for field in dataclasses.fields(event_type):
        if field.name not in payload:
            msg = f"{name} event is missing '{field.name}'"
            raise ValueError(msg)
        value = payload[field.name]
        if field.type == "date" and isinstance(value, str):
            value = date.fromisoformat(value)
        elif field.type == "int":
            value = int(value)
        elif field.type == "str":
            value = str(value)
        kwargs[field.name] = value
    return event_type(**kwargs)


async def _grant_once(
    db: AsyncSession,
    account_id: int,
    reason: Reason,
    reference: Reference | None,
    key: str,
    description: str,
    now: datetime,
) -> LedgerEntry | None:
    """Grant the fixed award for ``reason`` unless ``key`` was already paid."""
    if await ledger.find_by_idempotency_key(db, key) is not None:
        return None
    return await ledger.grant(
        db,
        account_id,
        award_for(reason),
        reason,
        reference,
        description=description,
        idempotency_key=key,
        now=now,
    )


async def apply_event(
    db: AsyncSession,
    event: PointsEvent,
    now: datetime | None = None,
) -> list[LedgerEntry]:
    """Apply the grants an event earns. Returns only newly written entries.

    Flushes but does not commit.
    """
    now = now or datetime.now(timezone.utc)
    grants: list[tuple[int, Reason, Reference | None, str, str]] = []

    match event:
        case AccountRegistered(account_id=account_id):
            grants.append((account_id, Reason.WELCOME_BONUS, None, f"welcome:{account_id}", "Welcome bonus"))
        case DailyLogin(account_id=account_id, day=day):
            grants.append((
                account_id, Reason.DAILY_LOGIN, None,
                f"daily_login:{account_id}:{day.isoformat()}", "Daily login bonus",
            ))
        case PostCreated(post_id=post_id, author_id=author_id):
            grants.append((
                author_id, Reason.POST_CREATED, Reference(ReferenceType.POST, post_id),
                f"post_created:{post_id}", "Post created",
            ))
        case PostLiked(post_id=post_id, actor_id=actor_id, author_id=author_id):
            if actor_id != author_id:
                grants.append((
                    author_id, Reason.POST_LIKED, Reference(ReferenceType.POST, post_id),
                    f"post_liked:{post_id}:{actor_id}", "Your post was liked",
                ))
        case CommentPosted(comment_id=comment_id, author_id=author_id):
            grants.append((
                author_id, Reason.COMMENT_POSTED, Reference(ReferenceType.COMMENT, comment_id),
                f"comment_posted:{comment_id}", "Comment posted",
            ))
        case Followed(follower_id=follower_id, followee_id=followee_id):
            if follower_id != followee_id:
                grants.append((
                    follower_id, Reason.FOLLOW, Reference(ReferenceType.USER, followee_id),
                    f"follow:{follower_id}:{followee_id}", "Followed a traveler",
                ))
                grants.append((
                    followee_id, Reason.FOLLOWED, Reference(ReferenceType.USER, follower_id),
                    f"followed:{follower_id}:{followee_id}", "Gained a follower",
                ))
        case CheckedIn(account_id=account_id, place_id=place_id, day=day):
            grants.append((
                account_id, Reason.CHECK_IN, Reference(ReferenceType.PLACE, place_id),
                f"check_in:{account_id}:{place_id}:{day.isoformat()}", "Checked in",
            ))
        case _:
            msg = f"Unsupported points event: {event!r}"
            raise TypeError(msg)

    written: list[LedgerEntry] = []
    for account_id, reason, reference, key, description in grants:
        entry = await _grant_once(db, account_id, reason, reference, key, description, now)
        if entry is not None:
            written.append(entry)

    if not written:
        logger.debug("Event %s produced no new grants", type(event).__name__)
    return written
