# trustwork/utils.py
import uuid
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation

from .errors import ValidationError

CENT = Decimal("0.01")


def utcnow() -> datetime:
    # Naive UTC, matching how every DateTime column is stored.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return uuid.uuid4().hex


def iso(dt):
    return dt.isoformat() if dt else None


def as_int(value, field, default=None):
    """Coerce a request value to int; junk is a VALIDATION error on ``field``."""
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError.field(field, "invalid", f"{field} must be a whole number")


def money(value) -> Decimal:
    """Coerce to a Decimal quantized to cents. Raises ValueError on junk."""
    if isinstance(value, float):
        value = repr(value)
    try:
        return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, TypeError) as e:
        raise ValueError(f"not a monetary amount: {value!r}") from e


def money_str(value):
    return None if value is None else str(money(value))


def parse_dt(val):
    if not val:
        return None
    if isinstance(val, datetime):
        return val
    try:
        dt = datetime.fromisoformat(str(val))
    except ValueError:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt
