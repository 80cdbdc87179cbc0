# utils.py
import calendar
import re
from datetime import date
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

CENT = Decimal("0.01")
# cents must fit a signed 64-bit column
MAX_AMOUNT = Decimal("1e15")
DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def parse_amount(value) -> Decimal | None:
    """Decimal with two places, or None when the value is not a finite number below MAX_AMOUNT."""
    if value is None or isinstance(value, bool):
        return None
    try:
        d = Decimal(str(value).strip())
        if not d.is_finite() or abs(d) >= MAX_AMOUNT:
            return None
        return d.quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        return None


def to_cents(amount) -> int:
    d = parse_amount(amount)
    if d is None:
        raise ValueError(f"Invalid amount: {amount!r}")
    return int(d * 100)


def from_cents(cents) -> Decimal:
    return (Decimal(int(cents or 0)) / 100).quantize(CENT)


def money_fields(row: dict, *fields: str) -> dict:
    """Rename `<field>_cents` columns to `<field>` as Decimal."""
    out = dict(row)
    for f in fields:
        key = f"{f}_cents"
        if key in out:
            out[f] = from_cents(out.pop(key))
    return out


def month_bounds(year: int, month: int) -> tuple[str, str]:
    if not 1 <= int(month) <= 12:
        raise ValueError("Month must be between 1 and 12.")
    last = calendar.monthrange(int(year), int(month))[1]
    return f"{int(year):04d}-{int(month):02d}-01", f"{int(year):04d}-{int(month):02d}-{last:02d}"


def parse_date(value) -> str | None:
    """`YYYY-MM-DD` string for a valid calendar date, else None."""
    raw = str(value or "").strip()[:10]
    if not DATE_RE.match(raw):
        return None
    try:
        return date.fromisoformat(raw).isoformat()
    except ValueError:
        return None
