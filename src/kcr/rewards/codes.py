"""Redemption code generation.

Codes are fixed-length alphanumeric (A-Z, 0-9), generated server-side with
a cryptographic random source. Partners type them in, so lookups are
case-insensitive.
"""

from __future__ import annotations

import secrets
import string

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from kcr.config import get_settings
from kcr.db.models import Redemption

CODE_CHARSET = string.ascii_uppercase + string.digits  # A-Z, 0-9
MAX_GENERATION_ATTEMPTS = 10


def generate_redemption_code(length: int | None = None) -> str:
    """Generate a cryptographically random redemption code."""
    length = length or get_settings().redemption_code_length
    return "".join(secrets.choice(CODE_CHARSET) for _ in range(length))


def normalize_code(code: str) -> str:
    """Normalize a code to uppercase for case-insensitive lookup."""
    return code.strip().upper()


def is_valid_code(code: str) -> bool:
    return bool(code) and all(c in CODE_CHARSET for c in code)


async def generate_unique_redemption_code(db: AsyncSession) -> str:
    """Generate a redemption code that doesn't already exist in the database.

    The unique constraint on ``redemptions.code`` still guards the insert; a
    collision between this check and the flush surfaces as a conflict the
    redemption retry loop handles.
    """
    for _ in range(MAX_GENERATION_ATTEMPTS):
        code = generate_redemption_code()
        existing = await db.execute(select(Redemption.id).where(Redemption.code == code))
        if existing.scalar_one_or_none() is None:
            return code
    msg = f"Failed to generate unique redemption code after {MAX_GENERATION_ATTEMPTS} attempts"
    raise RuntimeError(msg)
