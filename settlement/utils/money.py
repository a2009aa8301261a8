from __future__ import annotations

import secrets
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Optional

TWOPLACES = Decimal("0.01")
ZERO = Decimal("0.00")
MAX_ABS_AMOUNT = Decimal("999999999999.99")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """SQLite devuelve datetimes naive aunque la columna sea timezone=True."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def safe_str(v: Any, max_len: int) -> str:
    s = "" if v is None else str(v)
    s = s.replace("\x00", "").strip()
    if len(s) > max_len:
        s = s[:max_len]
    return s


def to_decimal(v: Any, *, allow_negative: bool = True) -> Decimal:
    """Decimal exacto, sin redondear. Rechaza NaN/Infinity y floats basura."""
    if v is None or v == "":
        raise ValueError("amount is required")
    try:
        if isinstance(v, Decimal):
            d = v
        else:
            d = Decimal(str(v).strip().replace(",", "."))
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"Invalid decimal value: {v!r}") from e

    if d.is_nan() or d.is_infinite():
        raise ValueError("amount cannot be NaN/Infinity")
    if not allow_negative and d < 0:
        raise ValueError("amount cannot be negative")
    return d


def to_money(v: Any, *, allow_negative: bool = True) -> Decimal:
    d = to_decimal(v, allow_negative=allow_negative).quantize(TWOPLACES, rounding=ROUND_HALF_UP)
    if abs(d) > MAX_ABS_AMOUNT:
        raise ValueError("amount out of allowed range")
    return d


def gen_public_id(prefix: str) -> str:
    return f"{prefix}_{secrets.token_urlsafe(12)}"


def gen_account_number() -> str:
    # MYD + 10 dígitos, como el número de cuenta digital visible al vendedor
    return "MYD" + "".join(secrets.choice("0123456789") for _ in range(10))


__all__ = [
    "TWOPLACES",
    "ZERO",
    "utcnow",
    "as_utc",
    "safe_str",
    "to_decimal",
    "to_money",
    "gen_public_id",
    "gen_account_number",
]
