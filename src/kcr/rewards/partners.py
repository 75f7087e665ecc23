"""Partner keys for the redemption verification endpoint."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from kcr.auth.api_keys import generate_api_key, key_prefix, looks_like_partner_key, verify_api_key
from kcr.db.models import PartnerKey

logger = logging.getLogger(__name__)


async def issue_partner_key(db: AsyncSession, partner_name: str) -> tuple[str, PartnerKey]:
    """Create a key for a partner. The plain key is returned only here."""
    full_key, prefix, key_hash = generate_api_key()
    record = PartnerKey(
        partner_name=partner_name,
        key_prefix=prefix,
        key_hash=key_hash,
        is_active=True,
        created_at=datetime.now(timezone.utc),
    )
    db.add(record)
    await db.flush()
    logger.info("Issued partner key %s for %s", prefix, partner_name)
    return full_key, record


async def authenticate_partner(db: AsyncSession, full_key: str) -> PartnerKey | None:
    """Resolve a presented key to its active PartnerKey, or None."""
    if not looks_like_partner_key(full_key):
        return None
    result = await db.execute(
        select(PartnerKey).where(
            PartnerKey.key_prefix == key_prefix(full_key),
            PartnerKey.is_active.is_(True),
        )
    )
    for record in result.scalars().all():
        if verify_api_key(full_key, record.key_hash):
            record.last_used_at = datetime.now(timezone.utc)
            await db.flush()
            return record
    return None
