"""Cursor-based pagination for ledger history.

Uses keyset pagination (not OFFSET) so pages stay stable while new entries
are appended. The cursor encodes (created_at, id) as base64 JSON.
"""

from __future__ import annotations

import base64
import json
from datetime import datetime

from sqlalchemy import Select, and_, or_

from kcr.db.models import LedgerEntry


def encode_cursor(created_at: datetime, entry_id: int) -> str:
    """Encode a cursor from the last entry of a page."""
    payload = {"ts": created_at.isoformat(), "id": entry_id}
    return base64.urlsafe_b64encode(json.dumps(payload).encode()).decode()


def decode_cursor(cursor: str) -> tuple[datetime, int]:
    """Decode a cursor into (created_at, id).

    Raises:
        ValueError: If cursor is malformed.
    """
    try:
        raw = base64.urlsafe_b64decode(cursor.encode())
        data = json.loads(raw)
        return datetime.fromisoformat(data["ts"]), int(data["id"])
    except Exception as e:
        msg = f"Invalid cursor: {e}"
        raise ValueError(msg) from e


def apply_cursor(query: Select, cursor: str | None) -> Select:  # type: ignore[type-arg]
    """Apply keyset cursor to a ledger query.

    Assumes the query is already ordered by (created_at DESC, id DESC).
    """
    if cursor is None:
        return query

    cursor_ts, cursor_id = decode_cursor(cursor)
    return query.where(
        or_(
            LedgerEntry.created_at < cursor_ts,
            and_(LedgerEntry.created_at == cursor_ts, LedgerEntry.id < cursor_id),
        )
    )
