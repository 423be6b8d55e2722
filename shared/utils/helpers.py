"""
shared/utils/helpers.py
Small shared helpers: clocks, human-readable numbers, OTPs, pagination.
"""

import math
import secrets
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy import func, select


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on the way back)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _reference_number(prefix: str) -> str:
    # 5 random digits keep collisions unlikely within a single day
    stamp = utcnow().strftime("%Y%m%d")
    return f"{prefix}-{stamp}-{secrets.randbelow(100000):05d}"


def generate_booking_number() -> str:
    """e.g. BK-20261019-04217"""
    return _reference_number("BK")


def generate_invoice_number() -> str:
    """e.g. INV-20261019-88310"""
    return _reference_number("INV")


def generate_otp(length: int = 6) -> str:
    """Numeric one-time code, zero-padded to `length` digits."""
    return f"{secrets.randbelow(10 ** length):0{length}d}"


def to_paise(amount) -> int:
    """Convert a rupee amount to integer paise, rounding half-up (500.00 → 50000)."""
    paise = (Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(paise)


def pagination_meta(page: int, limit: int, total: int) -> dict:
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": math.ceil(total / limit) if limit else 0,
    }


async def paginate(db, query, page: int, limit: int) -> tuple[list, dict]:
    """Run `query` for one page. Returns (rows, pagination meta)."""
    total = await db.scalar(
        select(func.count()).select_from(query.order_by(None).subquery())
    )
    result = await db.execute(query.offset((page - 1) * limit).limit(limit))
    return list(result.scalars().all()), pagination_meta(page, limit, total or 0)
